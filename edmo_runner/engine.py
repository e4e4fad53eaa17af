"""Stepping execution engine: one instance per running Program."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from .capabilities import CapabilityTable
from .cfg import CFG
from .errors import CapabilityBindingError, ProgramAborted, RunnerError, SandboxError
from .ir import IRInstruction, Opcode
from .registry import LocalExecutor
from .run_types import ExecutionStats, RunnerConfig, StepOutcome
from .vm import apply_update
from .vm_types import UNDEFINED, StackFrame, StateUpdate, VMState
from . import constants

if TYPE_CHECKING:
    from .api import CompiledProgram

logger = logging.getLogger(__name__)


def _validate_bindings(bindings: dict[str, Callable]):
    missing = [
        name
        for name in constants.REQUIRED_CAPABILITIES
        if not callable(bindings.get(name))
    ]
    if missing:
        raise CapabilityBindingError(
            f"Capability table is missing: {', '.join(missing)}"
        )


class ExecutionEngine:
    """Executes a compiled Program one IR instruction at a time.

    The engine never touches the host directly: every side effect goes
    through the capability table handed to the constructor. Asynchronous
    capabilities block the engine until their ``resume`` callback fires.
    """

    def __init__(
        self,
        compiled: CompiledProgram,
        capabilities: CapabilityTable,
        config: RunnerConfig = RunnerConfig(),
    ):
        bindings = capabilities.bindings()
        _validate_bindings(bindings)
        self.cfg: CFG = compiled.cfg
        self.registry = compiled.registry
        self.config = config
        self.stats = ExecutionStats()
        self._async_capabilities = frozenset(capabilities.ASYNC_CAPABILITIES)
        self._bindings = {
            name: self._counted(name, fn) for name, fn in bindings.items()
        }
        self.vm = VMState(
            loop_trap=config.loop_trap_limit, loop_trap_limit=config.loop_trap_limit
        )
        self.vm.call_stack.append(StackFrame(function_name=constants.MAIN_FRAME_NAME))
        self.current_label = self.cfg.entry
        self.ip = 0
        self._blocked = False
        self._blocked_reg: str | None = None
        self._done = not self.cfg.blocks
        self._cancelled = False

    def _counted(self, name: str, fn: Callable) -> Callable:
        def call(*args: Any) -> Any:
            self.stats.capability_calls += 1
            if name == constants.CAP_HIGHLIGHT_BLOCK:
                self.stats.highlights += 1
            return fn(*args)

        return call

    # ── queries ──────────────────────────────────────────────────

    @property
    def is_blocked(self) -> bool:
        return self._blocked

    @property
    def is_done(self) -> bool:
        return self._done

    # ── stepping ─────────────────────────────────────────────────

    def _next_instruction(self) -> IRInstruction | None:
        """Fall through exhausted blocks; None once the entry chain ends."""
        while True:
            block = self.cfg.blocks[self.current_label]
            if self.ip < len(block.instructions):
                return block.instructions[self.ip]
            if not block.successors:
                return None
            self.current_label = block.successors[0]
            self.ip = 0

    def step(self) -> StepOutcome:
        """Execute exactly one IR instruction."""
        if self._cancelled:
            raise ProgramAborted("Program was cancelled")
        if self._done:
            return StepOutcome.DONE
        if self._blocked:
            return StepOutcome.BLOCKED

        instruction = self._next_instruction()
        if instruction is None:
            self._finish()
            return StepOutcome.DONE

        if instruction.opcode == Opcode.LABEL:
            self.ip += 1
            return StepOutcome.MORE

        try:
            result = LocalExecutor.execute(
                instruction,
                self.vm,
                cfg=self.cfg,
                registry=self.registry,
                current_label=self.current_label,
                ip=self.ip,
                capabilities=self._bindings,
                async_capabilities=self._async_capabilities,
            )
        except RunnerError:
            self._done = True
            raise
        except Exception as exc:
            self._done = True
            raise SandboxError(str(exc) or type(exc).__name__) from exc

        if not result.handled:
            self._done = True
            raise SandboxError(f"Unsupported instruction: {instruction.opcode.value}")

        self.stats.steps += 1
        update = result.update

        if update.async_capability:
            return self._start_async(update)

        return self._advance(instruction, update)

    def _advance(self, instruction: IRInstruction, update: StateUpdate) -> StepOutcome:
        is_return = instruction.opcode == Opcode.RETURN
        return_frame = self.vm.current_frame if is_return else None
        returns_from_main = is_return and len(self.vm.call_stack) == 1

        if update.call_push is not None and update.next_label is not None:
            self._setup_call(instruction, update)
        else:
            apply_update(self.vm, update)

        if is_return:
            if returns_from_main:
                self._finish()
                return StepOutcome.DONE
            caller_frame = self.vm.current_frame
            if return_frame.result_reg:
                caller_frame.registers[return_frame.result_reg] = update.return_value
            self.current_label = return_frame.return_label
            self.ip = return_frame.return_ip or 0
        elif update.next_label and update.next_label in self.cfg.blocks:
            self.current_label = update.next_label
            self.ip = 0
        else:
            self.ip += 1
        return StepOutcome.MORE

    def _setup_call(self, instruction: IRInstruction, update: StateUpdate):
        """Record where the new frame returns to after call_push + dispatch."""
        return_label = self.current_label
        return_ip = self.ip + 1
        apply_update(self.vm, update)
        new_frame = self.vm.current_frame
        new_frame.return_label = return_label
        new_frame.return_ip = return_ip
        new_frame.result_reg = instruction.result_reg

    def _start_async(self, update: StateUpdate) -> StepOutcome:
        name = update.async_capability
        self._blocked = True
        self._blocked_reg = update.blocked_reg
        self.ip += 1
        logger.debug("Engine blocked on %s(%s)", name, update.async_args)
        try:
            self._bindings[name](self.resume, *update.async_args)
        except RunnerError:
            self._done = True
            raise
        except Exception as exc:
            self._done = True
            raise SandboxError(str(exc) or type(exc).__name__) from exc
        # The capability may have completed synchronously
        return StepOutcome.BLOCKED if self._blocked else StepOutcome.MORE

    def resume(self, value: Any = UNDEFINED):
        """Unblock after an asynchronous capability completes."""
        if not self._blocked or self._done:
            logger.debug("Ignoring resume on an engine that is not blocked")
            return
        self._blocked = False
        if self._blocked_reg:
            self.vm.current_frame.registers[self._blocked_reg] = value
        self._blocked_reg = None

    def cancel(self):
        """Stop for good; later steps raise ProgramAborted and resume is a no-op."""
        self._cancelled = True
        self._done = True
        self._blocked = False

    def _finish(self):
        self._done = True
        self.stats.final_heap_objects = len(self.vm.heap)
