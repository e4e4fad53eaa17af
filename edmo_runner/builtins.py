"""Built-in function implementations for the sandboxed interpreter."""

from __future__ import annotations

import logging
import math
import random
import re
from typing import Any

from .errors import SandboxError
from .vm import (
    _normalize_number,
    is_number,
    property_key,
    strict_equals,
    to_js_string,
    to_number,
    truthy,
)
from .vm_types import UNDEFINED, HeapObject, HeapRef, HostNamespace, VMState

logger = logging.getLogger(__name__)


def _arg(args: list[Any], i: int) -> Any:
    return args[i] if i < len(args) else UNDEFINED


def _math(fn):
    def builtin(args: list[Any], vm: VMState) -> Any:
        try:
            result = fn(*(to_number(a, vm) for a in args))
        except (ValueError, OverflowError):
            return math.nan
        return _normalize_number(result) if isinstance(result, float) else result

    return builtin


def _js_round(x: float) -> Any:
    if not math.isfinite(x):
        return x
    return math.floor(x + 0.5)


def _js_min(*xs: float) -> Any:
    if any(math.isnan(x) for x in xs):
        return math.nan
    return min(xs) if xs else math.inf


def _js_max(*xs: float) -> Any:
    if any(math.isnan(x) for x in xs):
        return math.nan
    return max(xs) if xs else -math.inf


def _js_sqrt(x: float) -> float:
    return math.sqrt(x) if x >= 0 else math.nan


def _js_log(x: float) -> float:
    if x == 0:
        return -math.inf
    return math.log(x) if x > 0 else math.nan


def _js_pow(x: float, y: float) -> float:
    try:
        return math.pow(x, y)
    except ZeroDivisionError:
        return math.inf


def _js_floor(x: float) -> Any:
    return math.floor(x) if math.isfinite(x) else x


def _js_ceil(x: float) -> Any:
    return math.ceil(x) if math.isfinite(x) else x


def _js_trunc(x: float) -> Any:
    return math.trunc(x) if math.isfinite(x) else x


def _js_sign(x: float) -> Any:
    if math.isnan(x):
        return x
    return (x > 0) - (x < 0)


# ── Global functions ─────────────────────────────────────────────


def _builtin_parse_int(args: list[Any], vm: VMState) -> Any:
    text = to_js_string(_arg(args, 0), vm).strip()
    radix = args[1] if len(args) > 1 and args[1] is not UNDEFINED else 10
    radix = int(to_number(radix)) or 10
    if radix == 16 and text.lower().startswith(("0x", "-0x", "+0x")):
        text = text.replace("0x", "", 1).replace("0X", "", 1)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"[:radix]
    m = re.match(rf"[+-]?[{digits}]+", text, re.IGNORECASE)
    if not m:
        return math.nan
    return int(m.group(0), radix)


def _builtin_parse_float(args: list[Any], vm: VMState) -> Any:
    text = to_js_string(_arg(args, 0), vm).strip()
    if text.startswith(("Infinity", "+Infinity")):
        return math.inf
    if text.startswith("-Infinity"):
        return -math.inf
    m = re.match(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", text)
    if not m:
        return math.nan
    return _normalize_number(float(m.group(0)))


def _builtin_is_nan(args: list[Any], vm: VMState) -> Any:
    return math.isnan(to_number(_arg(args, 0), vm))


def _builtin_string(args: list[Any], vm: VMState) -> Any:
    return to_js_string(args[0], vm) if args else ""


def _builtin_number(args: list[Any], vm: VMState) -> Any:
    return to_number(args[0], vm) if args else 0


def _builtin_boolean(args: list[Any], vm: VMState) -> Any:
    return truthy(_arg(args, 0))


def _builtin_error(args: list[Any], vm: VMState) -> Any:
    message = to_js_string(args[0], vm) if args and args[0] is not UNDEFINED else ""
    return vm.allocate_object("Error", message=message)


def _builtin_array(args: list[Any], vm: VMState) -> Any:
    if len(args) == 1 and is_number(args[0]):
        return vm.allocate_array([UNDEFINED] * int(args[0]))
    return vm.allocate_array(list(args))


def _builtin_keys(args: list[Any], vm: VMState) -> Any:
    """Enumerable keys for ``for-in``: indices of arrays, field names of objects."""
    target = _arg(args, 0)
    if isinstance(target, HeapRef) and target.addr in vm.heap:
        obj = vm.heap[target.addr]
        if obj.is_array:
            return vm.allocate_array([str(i) for i in range(obj.fields["length"])])
        return vm.allocate_array(list(obj.fields))
    if isinstance(target, str):
        return vm.allocate_array([str(i) for i in range(len(target))])
    return vm.allocate_array([])


# ── Namespace functions ──────────────────────────────────────────


def _console_log(args: list[Any], vm: VMState) -> Any:
    logger.info("console: %s", " ".join(to_js_string(a, vm) for a in args))
    return UNDEFINED


def _math_random(args: list[Any], vm: VMState) -> Any:
    return random.random()


# ── Method tables ────────────────────────────────────────────────


def _array_push(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    length = obj.fields["length"]
    for i, value in enumerate(args):
        obj.fields[str(length + i)] = value
    obj.fields["length"] = length + len(args)
    return obj.fields["length"]


def _array_pop(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    length = obj.fields["length"]
    if length == 0:
        return UNDEFINED
    obj.fields["length"] = length - 1
    return obj.fields.pop(str(length - 1), UNDEFINED)


def _set_elements(obj: HeapObject, values: list[Any]):
    for key in [k for k in obj.fields if k.isdigit()]:
        del obj.fields[key]
    obj.fields.update({str(i): v for i, v in enumerate(values)})
    obj.fields["length"] = len(values)


def _array_shift(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    values = obj.elements()
    if not values:
        return UNDEFINED
    _set_elements(obj, values[1:])
    return values[0]


def _array_unshift(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    _set_elements(obj, list(args) + obj.elements())
    return obj.fields["length"]


def _array_index_of(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    target = _arg(args, 0)
    return next(
        (i for i, v in enumerate(obj.elements()) if strict_equals(v, target)), -1
    )


def _array_last_index_of(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    target = _arg(args, 0)
    values = obj.elements()
    return next(
        (i for i in range(len(values) - 1, -1, -1) if strict_equals(values[i], target)),
        -1,
    )


def _array_includes(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    return _array_index_of(obj, args, vm) != -1


def _array_join(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    sep = "," if _arg(args, 0) is UNDEFINED else to_js_string(args[0], vm)
    return sep.join(
        "" if v is None or v is UNDEFINED else to_js_string(v, vm)
        for v in obj.elements()
    )


def _slice_bounds(length: int, args: list[Any]) -> tuple[int, int]:
    def clamp(value: Any, default: int) -> int:
        if value is UNDEFINED:
            return default
        n = int(to_number(value))
        return max(length + n, 0) if n < 0 else min(n, length)

    return clamp(_arg(args, 0), 0), clamp(_arg(args, 1), length)


def _array_slice(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    values = obj.elements()
    start, end = _slice_bounds(len(values), args)
    return vm.allocate_array(values[start:end])


def _array_splice(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    values = obj.elements()
    start, _ = _slice_bounds(len(values), args[:1])
    count = (
        len(values) - start
        if len(args) < 2
        else max(0, min(int(to_number(args[1])), len(values) - start))
    )
    removed = values[start : start + count]
    _set_elements(obj, values[:start] + list(args[2:]) + values[start + count :])
    return vm.allocate_array(removed)


def _array_concat(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    values = obj.elements()
    for arg in args:
        other = vm.heap.get(arg.addr) if isinstance(arg, HeapRef) else None
        if other is not None and other.is_array:
            values.extend(other.elements())
        else:
            values.append(arg)
    return vm.allocate_array(values)


def _array_reverse(obj: HeapObject, args: list[Any], vm: VMState) -> Any:
    _set_elements(obj, list(reversed(obj.elements())))
    return UNDEFINED


def _string_char_at(s: str, args: list[Any], vm: VMState) -> Any:
    i = int(to_number(_arg(args, 0))) if args else 0
    return s[i] if 0 <= i < len(s) else ""


def _string_index_of(s: str, args: list[Any], vm: VMState) -> Any:
    return s.find(to_js_string(_arg(args, 0), vm))


def _string_last_index_of(s: str, args: list[Any], vm: VMState) -> Any:
    return s.rfind(to_js_string(_arg(args, 0), vm))


def _string_slice(s: str, args: list[Any], vm: VMState) -> Any:
    start, end = _slice_bounds(len(s), args)
    return s[start:end]


def _string_substring(s: str, args: list[Any], vm: VMState) -> Any:
    def clamp(value: Any, default: int) -> int:
        if value is UNDEFINED:
            return default
        n = to_number(value)
        return 0 if math.isnan(n) else int(max(0, min(n, len(s))))

    start, end = clamp(_arg(args, 0), 0), clamp(_arg(args, 1), len(s))
    return s[min(start, end) : max(start, end)]


def _string_split(s: str, args: list[Any], vm: VMState) -> Any:
    if _arg(args, 0) is UNDEFINED:
        return vm.allocate_array([s])
    sep = to_js_string(args[0], vm)
    parts = list(s) if sep == "" else s.split(sep)
    return vm.allocate_array(parts)


def _string_replace(s: str, args: list[Any], vm: VMState) -> Any:
    return s.replace(
        to_js_string(_arg(args, 0), vm), to_js_string(_arg(args, 1), vm), 1
    )


def _string_repeat(s: str, args: list[Any], vm: VMState) -> Any:
    count = int(to_number(_arg(args, 0)))
    if count < 0:
        raise SandboxError("RangeError: Invalid count value")
    return s * count


def _number_to_fixed(n: Any, args: list[Any], vm: VMState) -> Any:
    digits = int(to_number(args[0])) if args else 0
    return f"{to_number(n):.{digits}f}"


def _number_to_string(n: Any, args: list[Any], vm: VMState) -> Any:
    return to_js_string(n, vm)


class Builtins:
    """Tables of built-in globals, namespace members and value methods."""

    TABLE: dict[str, Any] = {
        "parseInt": _builtin_parse_int,
        "parseFloat": _builtin_parse_float,
        "isNaN": _builtin_is_nan,
        "String": _builtin_string,
        "Number": _builtin_number,
        "Boolean": _builtin_boolean,
        "Error": _builtin_error,
        "Array": _builtin_array,
        "__keys": _builtin_keys,
    }

    GLOBAL_VALUES: dict[str, Any] = {
        "NaN": math.nan,
        "Infinity": math.inf,
        "undefined": UNDEFINED,
    }

    NAMESPACES: dict[str, HostNamespace] = {
        name: HostNamespace(name) for name in ("Math", "console", "window")
    }

    NAMESPACE_VALUES: dict[str, dict[str, Any]] = {
        "Math": {
            "PI": math.pi,
            "E": math.e,
            "SQRT2": math.sqrt(2),
            "LN2": math.log(2),
            "LN10": math.log(10),
        },
    }

    NAMESPACE_FUNCTIONS: dict[str, dict[str, Any]] = {
        "Math": {
            "floor": _math(_js_floor),
            "ceil": _math(_js_ceil),
            "round": _math(_js_round),
            "trunc": _math(_js_trunc),
            "sign": _math(_js_sign),
            "abs": _math(abs),
            "sqrt": _math(_js_sqrt),
            "pow": _math(_js_pow),
            "min": _math(_js_min),
            "max": _math(_js_max),
            "sin": _math(math.sin),
            "cos": _math(math.cos),
            "tan": _math(math.tan),
            "asin": _math(math.asin),
            "acos": _math(math.acos),
            "atan": _math(math.atan),
            "atan2": _math(math.atan2),
            "log": _math(_js_log),
            "exp": _math(math.exp),
            "random": _math_random,
        },
        "console": {
            "log": _console_log,
            "info": _console_log,
            "warn": _console_log,
            "error": _console_log,
        },
    }

    ARRAY_METHODS: dict[str, Any] = {
        "push": _array_push,
        "pop": _array_pop,
        "shift": _array_shift,
        "unshift": _array_unshift,
        "indexOf": _array_index_of,
        "lastIndexOf": _array_last_index_of,
        "includes": _array_includes,
        "join": _array_join,
        "slice": _array_slice,
        "splice": _array_splice,
        "concat": _array_concat,
        "reverse": _array_reverse,
    }

    STRING_METHODS: dict[str, Any] = {
        "toUpperCase": lambda s, args, vm: s.upper(),
        "toLowerCase": lambda s, args, vm: s.lower(),
        "trim": lambda s, args, vm: s.strip(),
        "charAt": _string_char_at,
        "indexOf": _string_index_of,
        "lastIndexOf": _string_last_index_of,
        "includes": lambda s, args, vm: to_js_string(_arg(args, 0), vm) in s,
        "startsWith": lambda s, args, vm: s.startswith(to_js_string(_arg(args, 0), vm)),
        "endsWith": lambda s, args, vm: s.endswith(to_js_string(_arg(args, 0), vm)),
        "slice": _string_slice,
        "substring": _string_substring,
        "split": _string_split,
        "replace": _string_replace,
        "repeat": _string_repeat,
        "toString": lambda s, args, vm: s,
    }

    NUMBER_METHODS: dict[str, Any] = {
        "toFixed": _number_to_fixed,
        "toString": _number_to_string,
    }


def load_property(value: Any, name: str, vm: VMState) -> Any:
    """Read ``value.name`` / ``value[name]`` for any VM value."""
    if isinstance(value, HostNamespace):
        namespace_values = Builtins.NAMESPACE_VALUES.get(value.name, {})
        if name in namespace_values:
            return namespace_values[name]
        raise SandboxError(f"{value.name}.{name} is not available in the sandbox")
    if isinstance(value, HeapRef):
        obj = vm.heap.get(value.addr)
        if obj is None:
            return UNDEFINED
        return obj.fields.get(name, UNDEFINED)
    if isinstance(value, str):
        if name == "length":
            return len(value)
        if name.isdigit():
            i = int(name)
            return value[i] if i < len(value) else UNDEFINED
        return UNDEFINED
    if value is None or value is UNDEFINED:
        raise SandboxError(
            f"TypeError: Cannot read properties of {to_js_string(value)} "
            f"(reading '{name}')"
        )
    return UNDEFINED


def store_property(target: Any, key: Any, value: Any, vm: VMState) -> tuple[str, str]:
    """Resolve the heap address and field name for ``target[key] = value``."""
    if not isinstance(target, HeapRef) or target.addr not in vm.heap:
        raise SandboxError(
            f"TypeError: Cannot set properties of {to_js_string(target, vm)}"
        )
    return target.addr, property_key(key, vm)
