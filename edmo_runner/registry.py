"""Function registry and local execution of IR instructions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .builtins import Builtins, load_property, store_property
from .cfg import CFG
from .errors import InfiniteLoopError, SandboxError
from .ir import IRInstruction, Opcode
from .vm import (
    Operators,
    _parse_const,
    _resolve_reg,
    property_key,
    to_js_string,
    truthy,
)
from .vm_types import (
    UNDEFINED,
    ExecutionResult,
    FunctionRef,
    HeapRef,
    HeapWrite,
    HostNamespace,
    NewObject,
    StackFramePush,
    StateUpdate,
    VMState,
)
from . import constants

logger = logging.getLogger(__name__)

# Host methods reachable through ``window.<name>(...)``
_WINDOW_CAPABILITIES = frozenset({constants.CAP_ALERT, constants.CAP_PROMPT})


# ── Registry ─────────────────────────────────────────────────────


@dataclass
class FunctionRegistry:
    # func_label → ordered list of parameter names
    func_params: dict[str, list[str]] = field(default_factory=dict)


def _scan_func_params(cfg: CFG) -> dict[str, list[str]]:
    """Extract parameter names from function blocks in the CFG."""
    result: dict[str, list[str]] = {}
    for label in cfg.function_labels():
        block = cfg.blocks[label]
        params = [
            str(inst.operands[0])[len(constants.PARAM_PREFIX) :]
            for inst in block.instructions
            if inst.opcode == Opcode.SYMBOLIC
            and inst.operands
            and str(inst.operands[0]).startswith(constants.PARAM_PREFIX)
        ]
        result[label] = params
    return result


def build_registry(instructions: list[IRInstruction], cfg: CFG) -> FunctionRegistry:
    """Scan the CFG to build the function registry."""
    registry = FunctionRegistry(func_params=_scan_func_params(cfg))
    logger.debug("Registry: %d functions", len(registry.func_params))
    return registry


# ── Local execution ──────────────────────────────────────────────


def _handle_const(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    raw = inst.operands[0] if inst.operands else "undefined"
    val = _parse_const(raw)
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: val},
        )
    )


def _handle_load_var(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    name = inst.operands[0]
    for scope in (vm.current_frame.local_vars, vm.global_frame.local_vars):
        if name in scope:
            val = scope[name]
            break
    else:
        if name in Builtins.GLOBAL_VALUES:
            val = Builtins.GLOBAL_VALUES[name]
        elif name in Builtins.NAMESPACES:
            val = Builtins.NAMESPACES[name]
        else:
            raise SandboxError(f"ReferenceError: {name} is not defined")
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: val},
        )
    )


def _handle_declare_var(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    name = inst.operands[0]
    if len(inst.operands) < 2:
        if name in vm.current_frame.local_vars:
            return ExecutionResult.success(StateUpdate())
        val = UNDEFINED
    else:
        val = _resolve_reg(vm, inst.operands[1])
    return ExecutionResult.success(
        StateUpdate(
            var_writes={name: val},
        )
    )


def _handle_store_var(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    name = inst.operands[0]
    val = _resolve_reg(vm, inst.operands[1])
    # Assigning an undeclared name creates a global (sloppy mode)
    if name in vm.current_frame.local_vars:
        update = StateUpdate(var_writes={name: val})
    else:
        update = StateUpdate(global_writes={name: val})
    return ExecutionResult.success(update)


def _handle_branch(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    return ExecutionResult.success(
        StateUpdate(
            next_label=inst.label,
        )
    )


def _handle_branch_if(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    cond_val = _resolve_reg(vm, inst.operands[0])
    true_label, false_label = [t.strip() for t in inst.label.split(",")]
    taken = truthy(cond_val)
    target = true_label if taken else false_label
    return ExecutionResult.success(
        StateUpdate(
            next_label=target,
        )
    )


def _handle_symbolic(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    hint = inst.operands[0] if inst.operands else ""
    frame = vm.current_frame
    if isinstance(hint, str) and hint.startswith(constants.PARAM_PREFIX):
        param_name = hint[len(constants.PARAM_PREFIX) :]
        val = frame.local_vars.get(param_name, UNDEFINED)
        return ExecutionResult.success(
            StateUpdate(
                register_writes={inst.result_reg: val},
            )
        )
    node_type = str(hint).removeprefix(constants.UNSUPPORTED_PREFIX)
    raise SandboxError(f"Unsupported syntax: {node_type} ({inst.source_location})")


def _handle_new_object(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    type_hint = inst.operands[0] if inst.operands else "object"
    addr = vm.fresh_addr(constants.OBJ_ADDR_PREFIX)
    return ExecutionResult.success(
        StateUpdate(
            new_objects=[NewObject(addr=addr, type_hint=type_hint)],
            register_writes={inst.result_reg: HeapRef(addr)},
        )
    )


def _handle_new_array(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    addr = vm.fresh_addr(constants.ARR_ADDR_PREFIX)
    return ExecutionResult.success(
        StateUpdate(
            new_objects=[NewObject(addr=addr, type_hint="array")],
            heap_writes=[HeapWrite(obj_addr=addr, field="length", value=0)],
            register_writes={inst.result_reg: HeapRef(addr)},
        )
    )


def _handle_store_field(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    obj_val = _resolve_reg(vm, inst.operands[0])
    field_name = inst.operands[1]
    val = _resolve_reg(vm, inst.operands[2])
    addr, key = store_property(obj_val, field_name, val, vm)
    return ExecutionResult.success(
        StateUpdate(
            heap_writes=[HeapWrite(obj_addr=addr, field=key, value=val)],
        )
    )


def _handle_load_field(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    obj_val = _resolve_reg(vm, inst.operands[0])
    field_name = inst.operands[1]
    val = load_property(obj_val, field_name, vm)
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: val},
        )
    )


def _handle_store_index(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    obj_val = _resolve_reg(vm, inst.operands[0])
    idx = _resolve_reg(vm, inst.operands[1])
    val = _resolve_reg(vm, inst.operands[2])
    addr, key = store_property(obj_val, idx, val, vm)
    return ExecutionResult.success(
        StateUpdate(
            heap_writes=[HeapWrite(obj_addr=addr, field=key, value=val)],
        )
    )


def _handle_load_index(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    obj_val = _resolve_reg(vm, inst.operands[0])
    idx = _resolve_reg(vm, inst.operands[1])
    key = property_key(idx, vm)
    val = load_property(obj_val, key, vm)
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: val},
        )
    )


def _handle_return(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    val = _resolve_reg(vm, inst.operands[0]) if inst.operands else UNDEFINED
    return ExecutionResult.success(
        StateUpdate(
            return_value=val,
            call_pop=True,
        )
    )


def _handle_throw(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    val = _resolve_reg(vm, inst.operands[0]) if inst.operands else UNDEFINED
    if isinstance(val, HeapRef) and val.addr in vm.heap:
        obj = vm.heap[val.addr]
        if obj.type_hint == "Error":
            raise SandboxError(to_js_string(obj.fields.get("message", ""), vm))
    raise SandboxError(f"Uncaught {to_js_string(val, vm)}")


def _handle_binop(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    oper = inst.operands[0]
    lhs = _resolve_reg(vm, inst.operands[1])
    rhs = _resolve_reg(vm, inst.operands[2])
    result = Operators.eval_binop(oper, lhs, rhs, vm)
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: result},
        )
    )


def _handle_unop(inst: IRInstruction, vm: VMState, **kwargs: Any) -> ExecutionResult:
    oper = inst.operands[0]
    operand = _resolve_reg(vm, inst.operands[1])
    result = Operators.eval_unop(oper, operand, vm)
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: result},
        )
    )


def _handle_loop_trap(
    inst: IRInstruction, vm: VMState, **kwargs: Any
) -> ExecutionResult:
    remaining = vm.loop_trap - 1
    if remaining < 0:
        raise InfiniteLoopError(vm.loop_trap_limit)
    return ExecutionResult.success(StateUpdate(loop_trap=remaining))


# ── Calls ────────────────────────────────────────────────────────


def _dispatch_user_function(
    func: FunctionRef,
    args: list[Any],
    vm: VMState,
    cfg: CFG,
    registry: FunctionRegistry,
    current_label: str,
) -> ExecutionResult:
    if func.label not in cfg.blocks:
        raise SandboxError(f"TypeError: {func.name} is not a function")
    if len(vm.call_stack) >= constants.MAX_CALL_DEPTH:
        raise SandboxError("RangeError: Maximum call stack size exceeded")
    params = registry.func_params.get(func.label, [])
    new_vars = {
        param: args[i] if i < len(args) else UNDEFINED for i, param in enumerate(params)
    }
    return ExecutionResult.success(
        StateUpdate(
            call_push=StackFramePush(function_name=func.name, return_label=current_label),
            next_label=func.label,
            var_writes=new_vars,
        )
    )


def _call_capability(
    name: str,
    args: list[Any],
    inst: IRInstruction,
    vm: VMState,
    capabilities: dict[str, Callable],
    async_capabilities: frozenset[str],
) -> ExecutionResult:
    # Host code sees arrays and objects by their string form
    args = [to_js_string(a, vm) if isinstance(a, HeapRef) else a for a in args]
    if name in async_capabilities:
        return ExecutionResult.success(
            StateUpdate(
                async_capability=name,
                async_args=args,
                blocked_reg=inst.result_reg,
            )
        )
    result = capabilities[name](*args)
    # A cancelled prompt is null; every other capability returns undefined
    if result is None and name != constants.CAP_PROMPT:
        result = UNDEFINED
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: result},
        )
    )


def _builtin_result(
    inst: IRInstruction, result: Any
) -> ExecutionResult:
    return ExecutionResult.success(
        StateUpdate(
            register_writes={inst.result_reg: result},
        )
    )


def _handle_call_function(
    inst: IRInstruction,
    vm: VMState,
    cfg: CFG,
    registry: FunctionRegistry,
    current_label: str,
    capabilities: dict[str, Callable],
    async_capabilities: frozenset[str],
    **kwargs: Any,
) -> ExecutionResult:
    func_name = inst.operands[0]
    args = [_resolve_reg(vm, a) for a in inst.operands[1:]]

    # 1. User-defined function via scope chain
    for scope in (vm.current_frame.local_vars, vm.global_frame.local_vars):
        if func_name in scope:
            func_val = scope[func_name]
            if not isinstance(func_val, FunctionRef):
                raise SandboxError(f"TypeError: {func_name} is not a function")
            return _dispatch_user_function(
                func_val, args, vm, cfg, registry, current_label
            )

    # 2. Host capabilities
    if func_name in capabilities:
        return _call_capability(
            func_name, args, inst, vm, capabilities, async_capabilities
        )

    # 3. Builtins
    if func_name in Builtins.TABLE:
        return _builtin_result(inst, Builtins.TABLE[func_name](args, vm))

    raise SandboxError(f"ReferenceError: {func_name} is not defined")


def _handle_call_method(
    inst: IRInstruction,
    vm: VMState,
    cfg: CFG,
    registry: FunctionRegistry,
    current_label: str,
    capabilities: dict[str, Callable],
    async_capabilities: frozenset[str],
    **kwargs: Any,
) -> ExecutionResult:
    obj_val = _resolve_reg(vm, inst.operands[0])
    method_name = inst.operands[1]
    args = [_resolve_reg(vm, a) for a in inst.operands[2:]]

    if isinstance(obj_val, HostNamespace):
        if obj_val.name == "window" and method_name in _WINDOW_CAPABILITIES:
            return _call_capability(
                method_name, args, inst, vm, capabilities, async_capabilities
            )
        fn = Builtins.NAMESPACE_FUNCTIONS.get(obj_val.name, {}).get(method_name)
        if fn is None:
            raise SandboxError(f"TypeError: {obj_val.name}.{method_name} is not a function")
        return _builtin_result(inst, fn(args, vm))

    if isinstance(obj_val, HeapRef) and obj_val.addr in vm.heap:
        obj = vm.heap[obj_val.addr]
        if obj.is_array and method_name in Builtins.ARRAY_METHODS:
            result = Builtins.ARRAY_METHODS[method_name](obj, args, vm)
            return _builtin_result(inst, result)
        member = obj.fields.get(method_name)
        if isinstance(member, FunctionRef):
            return _dispatch_user_function(member, args, vm, cfg, registry, current_label)

    if isinstance(obj_val, str) and method_name in Builtins.STRING_METHODS:
        result = Builtins.STRING_METHODS[method_name](obj_val, args, vm)
        return _builtin_result(inst, result)

    if isinstance(obj_val, (int, float)) and method_name in Builtins.NUMBER_METHODS:
        result = Builtins.NUMBER_METHODS[method_name](obj_val, args, vm)
        return _builtin_result(inst, result)

    raise SandboxError(
        f"TypeError: {to_js_string(obj_val, vm)}.{method_name} is not a function"
    )


def _handle_call_unknown(
    inst: IRInstruction,
    vm: VMState,
    cfg: CFG,
    registry: FunctionRegistry,
    current_label: str,
    **kwargs: Any,
) -> ExecutionResult:
    target = _resolve_reg(vm, inst.operands[0])
    args = [_resolve_reg(vm, a) for a in inst.operands[1:]]
    if not isinstance(target, FunctionRef):
        raise SandboxError(f"TypeError: {to_js_string(target, vm)} is not a function")
    return _dispatch_user_function(target, args, vm, cfg, registry, current_label)


class LocalExecutor:
    """Dispatches IR instructions to handler functions for local execution."""

    DISPATCH: dict[Opcode, Any] = {
        Opcode.CONST: _handle_const,
        Opcode.LOAD_VAR: _handle_load_var,
        Opcode.DECLARE_VAR: _handle_declare_var,
        Opcode.STORE_VAR: _handle_store_var,
        Opcode.BRANCH: _handle_branch,
        Opcode.SYMBOLIC: _handle_symbolic,
        Opcode.NEW_OBJECT: _handle_new_object,
        Opcode.NEW_ARRAY: _handle_new_array,
        Opcode.STORE_FIELD: _handle_store_field,
        Opcode.LOAD_FIELD: _handle_load_field,
        Opcode.STORE_INDEX: _handle_store_index,
        Opcode.LOAD_INDEX: _handle_load_index,
        Opcode.RETURN: _handle_return,
        Opcode.THROW: _handle_throw,
        Opcode.BRANCH_IF: _handle_branch_if,
        Opcode.BINOP: _handle_binop,
        Opcode.UNOP: _handle_unop,
        Opcode.LOOP_TRAP: _handle_loop_trap,
        Opcode.CALL_FUNCTION: _handle_call_function,
        Opcode.CALL_METHOD: _handle_call_method,
        Opcode.CALL_UNKNOWN: _handle_call_unknown,
    }

    @classmethod
    def execute(
        cls,
        inst: IRInstruction,
        vm: VMState,
        cfg: CFG,
        registry: FunctionRegistry,
        current_label: str = "",
        ip: int = 0,
        capabilities: dict[str, Callable] | None = None,
        async_capabilities: frozenset[str] = frozenset(),
    ) -> ExecutionResult:
        handler = cls.DISPATCH.get(inst.opcode)
        if not handler:
            return ExecutionResult.not_handled()
        return handler(
            inst=inst,
            vm=vm,
            cfg=cfg,
            registry=registry,
            current_label=current_label,
            ip=ip,
            capabilities=capabilities or {},
            async_capabilities=async_capabilities,
        )
