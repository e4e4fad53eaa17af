"""Stepping VM: data types (pure data, no business logic)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from . import constants

# ── JavaScript values ────────────────────────────────────────────


class _Undefined:
    """The JavaScript ``undefined`` value; ``None`` plays ``null``."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Undefined:
        return self

    def __deepcopy__(self, memo) -> _Undefined:
        return self


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class HeapRef:
    """Reference to an array or object living on the VM heap."""

    addr: str

    def __str__(self) -> str:
        return self.addr


@dataclass(frozen=True)
class FunctionRef:
    """A user-defined function: its name and the CFG label of its body."""

    name: str
    label: str

    def __str__(self) -> str:
        return constants.FUNC_REF_TEMPLATE.format(name=self.name, label=self.label)


@dataclass(frozen=True)
class HostNamespace:
    """A host-provided global object such as ``Math`` or ``console``."""

    name: str


# ── Data types ───────────────────────────────────────────────────


@dataclass
class HeapObject:
    type_hint: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def is_array(self) -> bool:
        return self.type_hint == "array"

    def elements(self) -> list[Any]:
        return [
            self.fields.get(str(i), UNDEFINED) for i in range(self.fields.get("length", 0))
        ]


@dataclass
class StackFrame:
    function_name: str
    registers: dict[str, Any] = field(default_factory=dict)
    local_vars: dict[str, Any] = field(default_factory=dict)
    return_label: str | None = None
    return_ip: int | None = None  # ip to resume at in caller block
    result_reg: str | None = None  # caller's register for return value


@dataclass
class VMState:
    heap: dict[str, HeapObject] = field(default_factory=dict)
    call_stack: list[StackFrame] = field(default_factory=list)
    addr_counter: int = 0
    loop_trap: int = constants.LOOP_TRAP_LIMIT
    loop_trap_limit: int = constants.LOOP_TRAP_LIMIT

    def fresh_addr(self, prefix: str) -> str:
        addr = f"{prefix}{self.addr_counter}"
        self.addr_counter += 1
        return addr

    def allocate_array(self, values: list[Any]) -> HeapRef:
        addr = self.fresh_addr(constants.ARR_ADDR_PREFIX)
        fields = {str(i): v for i, v in enumerate(values)}
        fields["length"] = len(values)
        self.heap[addr] = HeapObject(type_hint="array", fields=fields)
        return HeapRef(addr)

    def allocate_object(self, type_hint: str = "object", **fields: Any) -> HeapRef:
        addr = self.fresh_addr(constants.OBJ_ADDR_PREFIX)
        self.heap[addr] = HeapObject(type_hint=type_hint, fields=dict(fields))
        return HeapRef(addr)

    @property
    def current_frame(self) -> StackFrame:
        return self.call_stack[-1]

    @property
    def global_frame(self) -> StackFrame:
        return self.call_stack[0]


# ── StateUpdate schema ───────────────────────────────────────────


class HeapWrite(BaseModel):
    obj_addr: str
    field: str
    value: Any


class NewObject(BaseModel):
    addr: str
    type_hint: str | None = None


class StackFramePush(BaseModel):
    function_name: str
    return_label: str | None = None


class StateUpdate(BaseModel):
    register_writes: dict[str, Any] = {}
    var_writes: dict[str, Any] = {}
    global_writes: dict[str, Any] = {}
    heap_writes: list[HeapWrite] = []
    new_objects: list[NewObject] = []
    next_label: str | None = None
    call_push: StackFramePush | None = None
    call_pop: bool = False
    return_value: Any = UNDEFINED
    async_capability: str | None = None
    async_args: list[Any] = []
    blocked_reg: str | None = None
    loop_trap: int | None = None


# ── ExecutionResult ──────────────────────────────────────────────


@dataclass
class ExecutionResult:
    """Result of attempting local instruction execution."""

    handled: bool
    update: StateUpdate = field(default_factory=StateUpdate)

    @classmethod
    def not_handled(cls) -> ExecutionResult:
        return cls(handled=False)

    @classmethod
    def success(cls, update: StateUpdate) -> ExecutionResult:
        return cls(handled=True, update=update)
