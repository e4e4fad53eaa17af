"""Stepping VM: state update application, value conversions and operators."""

from __future__ import annotations

import ast
import math
import re
from typing import Any

from .errors import SandboxError
from .vm_types import (
    UNDEFINED,
    FunctionRef,
    HeapObject,
    HeapRef,
    HostNamespace,
    StackFrame,
    StateUpdate,
    VMState,
)
from . import constants

_FUNC_RE = re.compile(constants.FUNC_REF_PATTERN)
_MAX_SAFE_INTEGER = 2**53


def apply_update(vm: VMState, update: StateUpdate):
    """Mechanically apply a StateUpdate to the VM."""
    frame = vm.current_frame

    # New objects
    for obj in update.new_objects:
        vm.heap[obj.addr] = HeapObject(type_hint=obj.type_hint)

    # Register writes: always to the CURRENT (caller's) frame
    for reg, val in update.register_writes.items():
        frame.registers[reg] = val

    # Heap writes
    for hw in update.heap_writes:
        obj = vm.heap.setdefault(hw.obj_addr, HeapObject())
        obj.fields[hw.field] = hw.value
        if obj.is_array and hw.field.isdigit():
            obj.fields["length"] = max(obj.fields.get("length", 0), int(hw.field) + 1)

    # Call push: push BEFORE var_writes so parameter bindings go to the
    # new frame when dispatching a function call
    if update.call_push:
        vm.call_stack.append(
            StackFrame(
                function_name=update.call_push.function_name,
                return_label=update.call_push.return_label,
            )
        )

    # Variable writes: go to the CURRENT frame (which is the new frame
    # if call_push just fired, i.e. parameter bindings)
    target_frame = vm.current_frame
    for var, val in update.var_writes.items():
        target_frame.local_vars[var] = val

    for var, val in update.global_writes.items():
        vm.global_frame.local_vars[var] = val

    if update.loop_trap is not None:
        vm.loop_trap = update.loop_trap

    # Call pop
    if update.call_pop and len(vm.call_stack) > 1:
        vm.call_stack.pop()


# ── Helpers ──────────────────────────────────────────────────────


def _resolve_reg(vm: VMState, operand: Any) -> Any:
    """Resolve a register name to its value, or return the operand as-is."""
    if isinstance(operand, str) and operand.startswith("%"):
        frame = vm.current_frame
        return frame.registers.get(operand, UNDEFINED)
    return operand


def _parse_const(raw: str) -> Any:
    """Parse a JavaScript literal string into a VM value."""
    if raw == "undefined":
        return UNDEFINED
    if raw == "null":
        return None
    if raw == "true":
        return True
    if raw == "false":
        return False
    m = _FUNC_RE.fullmatch(raw)
    if m:
        return FunctionRef(name=m.group(1), label=m.group(2))
    try:
        return int(raw, 0)
    except (ValueError, TypeError):
        pass
    try:
        return _normalize_number(float(raw))
    except (ValueError, TypeError):
        pass
    # String literal: strip quotes and decode escapes
    if len(raw) >= 2 and raw[0] in ('"', "'") and raw[-1] == raw[0]:
        try:
            return ast.literal_eval(raw)
        except (ValueError, SyntaxError):
            return raw[1:-1]
    return raw


def _normalize_number(value: float) -> int | float:
    """Collapse integral floats to ints so ``6 / 3`` prints as ``2``."""
    if math.isfinite(value) and value.is_integer() and abs(value) < _MAX_SAFE_INTEGER:
        return int(value)
    return value


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any, vm: VMState | None = None) -> int | float:
    """JavaScript ``ToNumber``."""
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        try:
            return int(text, 0) if text[:2].lower() in ("0x", "0o", "0b") else int(text)
        except ValueError:
            pass
        try:
            return _normalize_number(float(text))
        except ValueError:
            return math.nan
    if isinstance(value, HeapRef) and vm is not None:
        return to_number(to_js_string(value, vm))
    return math.nan


def _format_number(value: int | float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    value = _normalize_number(value)
    if isinstance(value, int):
        return str(value)
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        text = f"{mantissa}e{'+' if not exponent.startswith('-') else '-'}{exponent.lstrip('+-').lstrip('0') or '0'}"
    return text


def to_js_string(value: Any, vm: VMState | None = None) -> str:
    """JavaScript ``ToString``."""
    if isinstance(value, str):
        return value
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return _format_number(value)
    if isinstance(value, HeapRef):
        obj = vm.heap.get(value.addr) if vm is not None else None
        if obj is None:
            return "[object Object]"
        if obj.is_array:
            return ",".join(
                "" if v is None or v is UNDEFINED else to_js_string(v, vm)
                for v in obj.elements()
            )
        if obj.type_hint == "Error":
            return f"Error: {to_js_string(obj.fields.get('message', ''), vm)}"
        return "[object Object]"
    if isinstance(value, FunctionRef):
        return f"function {value.name}() {{ [code] }}"
    if isinstance(value, HostNamespace):
        return f"[object {value.name}]"
    return str(value)


def truthy(value: Any) -> bool:
    """JavaScript ``ToBoolean``."""
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def typeof(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, FunctionRef) or callable(value):
        return "function"
    return "object"


def strict_equals(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def loose_equals(a: Any, b: Any, vm: VMState | None = None) -> bool:
    nullish = (None, UNDEFINED)
    if a in nullish or b in nullish:
        return a in nullish and b in nullish
    if (is_number(a) and is_number(b)) or type(a) is type(b):
        return strict_equals(a, b)
    if isinstance(a, bool) or isinstance(b, bool):
        return loose_equals(to_number(a), to_number(b), vm)
    if isinstance(a, HeapRef) or isinstance(b, HeapRef):
        if isinstance(a, HeapRef) and isinstance(b, HeapRef):
            return a == b
        prim_a = to_js_string(a, vm) if isinstance(a, HeapRef) else a
        prim_b = to_js_string(b, vm) if isinstance(b, HeapRef) else b
        return loose_equals(prim_a, prim_b, vm)
    if isinstance(a, str) or isinstance(b, str):
        return to_number(a) == to_number(b)
    return False


def to_int32(value: Any) -> int:
    num = to_number(value)
    if not math.isfinite(num):
        return 0
    n = int(num) & 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def property_key(value: Any, vm: VMState | None = None) -> str:
    """Convert an index or key value into the string used in ``HeapObject.fields``."""
    if is_number(value):
        return _format_number(value)
    return to_js_string(value, vm)


# ── Operators ────────────────────────────────────────────────────


def _add(a: Any, b: Any, vm: VMState | None) -> Any:
    if isinstance(a, HeapRef) or isinstance(b, HeapRef):
        a = to_js_string(a, vm) if isinstance(a, HeapRef) else a
        b = to_js_string(b, vm) if isinstance(b, HeapRef) else b
    if isinstance(a, str) or isinstance(b, str):
        return to_js_string(a, vm) + to_js_string(b, vm)
    total = to_number(a, vm) + to_number(b, vm)
    return _normalize_number(total) if isinstance(total, float) else total


def _divide(a: Any, b: Any) -> Any:
    x, y = to_number(a), to_number(b)
    if y == 0:
        if x == 0 or math.isnan(x):
            return math.nan
        return math.inf if (x > 0) == (math.copysign(1, y) > 0) else -math.inf
    return _normalize_number(x / y)


def _modulo(a: Any, b: Any) -> Any:
    x, y = to_number(a), to_number(b)
    if y == 0 or math.isnan(x) or math.isnan(y) or math.isinf(x):
        return math.nan
    if math.isinf(y):
        return x
    return _normalize_number(math.fmod(x, y))


def _power(a: Any, b: Any) -> Any:
    x, y = to_number(a), to_number(b)
    try:
        result = x**y
    except ZeroDivisionError:
        return math.inf
    except OverflowError:
        return math.inf
    if isinstance(result, complex):
        return math.nan
    return _normalize_number(float(result)) if isinstance(result, float) else result


def _compare(a: Any, b: Any, vm: VMState | None, op) -> bool:
    if isinstance(a, HeapRef):
        a = to_js_string(a, vm)
    if isinstance(b, HeapRef):
        b = to_js_string(b, vm)
    if isinstance(a, str) and isinstance(b, str):
        return op(a, b)
    x, y = to_number(a), to_number(b)
    if math.isnan(x) or math.isnan(y):
        return False
    return op(x, y)


def _arith(fn):
    def apply(a: Any, b: Any, vm: VMState | None) -> Any:
        result = fn(to_number(a, vm), to_number(b, vm))
        return _normalize_number(result) if isinstance(result, float) else result

    return apply


def _unsigned_shift(a: Any, b: Any, vm: VMState | None) -> int:
    return (to_int32(a) & 0xFFFFFFFF) >> (to_int32(b) & 0x1F)


class Operators:
    """Binary and unary operator evaluation with JavaScript semantics."""

    BINOP_TABLE: dict[str, Any] = {
        "+": _add,
        "-": _arith(lambda a, b: a - b),
        "*": _arith(lambda a, b: a * b),
        "/": lambda a, b, vm: _divide(a, b),
        "%": lambda a, b, vm: _modulo(a, b),
        "**": lambda a, b, vm: _power(a, b),
        "==": loose_equals,
        "!=": lambda a, b, vm: not loose_equals(a, b, vm),
        "===": lambda a, b, vm: strict_equals(a, b),
        "!==": lambda a, b, vm: not strict_equals(a, b),
        "<": lambda a, b, vm: _compare(a, b, vm, lambda x, y: x < y),
        ">": lambda a, b, vm: _compare(a, b, vm, lambda x, y: x > y),
        "<=": lambda a, b, vm: _compare(a, b, vm, lambda x, y: x <= y),
        ">=": lambda a, b, vm: _compare(a, b, vm, lambda x, y: x >= y),
        "&&": lambda a, b, vm: b if truthy(a) else a,
        "||": lambda a, b, vm: a if truthy(a) else b,
        "??": lambda a, b, vm: b if a is None or a is UNDEFINED else a,
        "&": lambda a, b, vm: to_int32(to_int32(a) & to_int32(b)),
        "|": lambda a, b, vm: to_int32(to_int32(a) | to_int32(b)),
        "^": lambda a, b, vm: to_int32(to_int32(a) ^ to_int32(b)),
        "<<": lambda a, b, vm: to_int32(to_int32(a) << (to_int32(b) & 0x1F)),
        ">>": lambda a, b, vm: to_int32(a) >> (to_int32(b) & 0x1F),
        ">>>": _unsigned_shift,
    }

    @classmethod
    def eval_binop(cls, op: str, lhs: Any, rhs: Any, vm: VMState | None = None) -> Any:
        fn = cls.BINOP_TABLE.get(op)
        if fn is None:
            raise SandboxError(f"Unsupported operator: {op}")
        return fn(lhs, rhs, vm)

    @classmethod
    def eval_unop(cls, op: str, operand: Any, vm: VMState | None = None) -> Any:
        if op == "-":
            num = to_number(operand, vm)
            return -num if num != 0 else (0 if isinstance(num, int) else -0.0)
        if op == "+":
            return to_number(operand, vm)
        if op == "!":
            return not truthy(operand)
        if op == "~":
            return to_int32(~to_int32(operand))
        if op == "typeof":
            return typeof(operand)
        if op == "void":
            return UNDEFINED
        raise SandboxError(f"Unsupported operator: {op}")
