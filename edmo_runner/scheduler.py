"""Program scheduler: drives every running Program cooperatively on one asyncio loop.

Each Program is advanced in batches from loop callbacks: a batch ends when
the Program completes, blocks on ``sleep``, exhausts its per-tick budget
(continuous mode) or reaches the next highlighted statement (step mode).
Guard trips, sandbox errors and cancellation all end at the Program
boundary; nothing raised by generated code escapes ``_drive``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .api import compile_program
from .capabilities import ProgramCapabilities
from .collaborators import BlockHighlighter, Dialogs, EventSink, Simulation
from .engine import ExecutionEngine
from .errors import GuardFailure, ProgramAborted, SandboxError
from .events import EventKind, GuardNotice, RunEvent
from .instrument import Instrumentation
from .program import Program, ProgramState, new_program_id
from .robot_link import RobotLink
from .run_types import ExecutionMode, RunnerConfig, StepOutcome
from .workspace import Workspace
from . import constants

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Program finished"
HALT_MESSAGE = "Halting execution"


class Scheduler:
    """Owns the Program registries; one instance per independent runner."""

    def __init__(
        self,
        simulation: Simulation,
        highlighter: BlockHighlighter,
        events: EventSink,
        dialogs: Dialogs,
        robot_link: RobotLink | None = None,
        config: RunnerConfig = RunnerConfig(),
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.simulation = simulation
        self.highlighter = highlighter
        self.events = events
        self.dialogs = dialogs
        self.robot_link = robot_link
        self.config = config
        self.mode = ExecutionMode.CONTINUOUS
        self._loop = loop
        self._programs: dict[str, Program] = {}
        self._highlights: dict[str, str | None] = {}
        self._waiting: dict[str, bool] = {}
        self._highlight_hit: dict[str, bool] = {}
        self._success_reported = False
        self._idle_waiters: list[asyncio.Future] = []
        self._robot_tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop if self._loop is not None else asyncio.get_running_loop()

    # ── queries ──────────────────────────────────────────────────

    @property
    def programs(self) -> dict[str, Program]:
        return dict(self._programs)

    def is_running(self) -> bool:
        return bool(self._programs)

    def is_paused(self) -> bool:
        return any(p.paused_for_step for p in self._programs.values())

    def is_waiting_on_async(self) -> bool:
        return any(self._waiting.values())

    async def wait_until_idle(self):
        """Resolve once no Program remains registered."""
        if not self._programs:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    # ── run / step ───────────────────────────────────────────────

    def run(
        self, workspace: Workspace, mode: ExecutionMode = ExecutionMode.CONTINUOUS
    ) -> list[str]:
        """Start one Program per entry block; returns the new Program ids."""
        if not workspace.entries:
            return []

        self._cancel_all()
        self.mode = mode
        self._success_reported = False
        instrumentation = Instrumentation(
            loop_trap=True, statement_prefix=self.config.instrument_statements
        )

        started: list[Program] = []
        for entry in workspace.entries:
            program = Program(
                program_id=new_program_id(), entry_id=entry.id, source=entry.source
            )
            try:
                compiled = compile_program(entry.source, instrumentation, entry.id)
            except SandboxError as exc:
                logger.error("Entry %s does not compile: %s", entry.id, exc)
                self.events.report(
                    RunEvent(kind=EventKind.ERROR, message=str(exc), program_id=None)
                )
                continue
            program.engine = ExecutionEngine(
                compiled, ProgramCapabilities(program.program_id, self), self.config
            )
            self._programs[program.program_id] = program
            self._waiting[program.program_id] = False
            started.append(program)

        logger.info("Run started: %d programs in %s mode", len(started), mode.value)
        for program in started:
            program.state = ProgramState.RUNNING
            if self.config.timeout_seconds is not None:
                program.deadline_handle = self.loop.call_later(
                    self.config.timeout_seconds, self._on_deadline, program.program_id
                )
        for program in started:
            self._drive(program.program_id)
        self._reconcile()
        return [p.program_id for p in started]

    def step_forward(self) -> bool:
        """Advance every step-paused Program by one visible statement."""
        if self.mode != ExecutionMode.STEP:
            return False
        paused = [p for p in self._programs.values() if p.paused_for_step]
        if not paused:
            return False
        for program in paused:
            program.paused_for_step = False
            program.state = ProgramState.RUNNING
        for program in paused:
            self._drive(program.program_id)
        return True

    # ── cancellation ─────────────────────────────────────────────

    def stop(self, reset_actuators: bool = False):
        """Cancel every Program; a no-op when nothing is running."""
        if not self._programs:
            return
        self.events.report(RunEvent(kind=EventKind.INFO, message=HALT_MESSAGE))
        self._cancel_all()
        if reset_actuators:
            self.reset_actuators()

    def abort(self, program_id: str) -> bool:
        program = self._programs.get(program_id)
        if program is None:
            return False
        logger.info("Aborting program %s", program_id)
        self._teardown(program, ProgramState.ABORTED)
        return True

    def reset_actuators(self):
        """Stop every oscillator and return each limb to neutral."""
        for index in range(self.simulation.limb_count()):
            self.simulation.stop_oscillator(index)
            self.simulation.rotate_limb(
                index, constants.NEUTRAL_DEGREES, self.config.rotation_duration
            )
            self.mirror_to_robot(
                constants.ROBOT_CMD_SET_ARM_ANGLE,
                {"index": index, "degrees": constants.NEUTRAL_DEGREES},
            )

    def _cancel_all(self):
        for program in list(self._programs.values()):
            self._teardown(program, ProgramState.ABORTED)

    # ── capability hooks ─────────────────────────────────────────

    def start_sleep(self, program_id: str, seconds: float, resume: Callable[..., None]):
        program = self._programs.get(program_id)
        if program is None:
            return
        logger.debug("[%s] sleep(%ss)", program_id, seconds)
        self._waiting[program_id] = True
        program.waiting_on_async = True
        program.state = ProgramState.SUSPENDED_ASYNC
        program.sleep_handle = self.loop.call_later(
            seconds, self._on_sleep_done, program_id, resume
        )

    def on_highlight(self, program_id: str, block_id: str | None):
        program = self._programs.get(program_id)
        if program is None:
            return
        previous = self._highlights.get(program_id)
        if previous:
            self.highlighter.unhighlight(previous)
        if block_id:
            self.highlighter.highlight(block_id)
        self._highlights[program_id] = block_id
        program.highlighted_block = block_id
        if self.mode == ExecutionMode.STEP:
            self._highlight_hit[program_id] = True

    def mirror_to_robot(self, kind: str, payload: dict[str, Any]):
        link = self.robot_link
        if link is None or not link.is_connected():
            return
        task = self.loop.create_task(link.send_command(kind, payload))
        self._robot_tasks.add(task)
        task.add_done_callback(self._robot_tasks.discard)

    # ── driving ──────────────────────────────────────────────────

    def _drive(self, program_id: str):
        program = self._programs.get(program_id)
        if program is None or program.is_finished:
            return
        program.drive_handle = None
        if self._waiting.get(program_id) or program.paused_for_step:
            return

        try:
            if self.mode == ExecutionMode.STEP:
                outcome = self._run_visible_step(program)
            else:
                outcome = self._run_batch(program)
        except ProgramAborted:
            return
        except GuardFailure as exc:
            self._on_guard(program, exc)
            return
        except SandboxError as exc:
            self._on_error(program, exc)
            return

        if program.is_finished or program_id not in self._programs:
            return
        if outcome == StepOutcome.DONE:
            self._complete(program)
        elif outcome == StepOutcome.BLOCKED:
            logger.debug("[%s] waiting on async capability", program_id)
        elif self.mode == ExecutionMode.STEP:
            program.paused_for_step = True
            program.state = ProgramState.SUSPENDED_STEP
        else:
            program.drive_handle = self.loop.call_later(
                self.config.reschedule_delay, self._drive, program_id
            )

    def _run_batch(self, program: Program) -> StepOutcome:
        outcome = StepOutcome.MORE
        for _ in range(self.config.steps_per_tick):
            outcome = program.engine.step()
            if outcome != StepOutcome.MORE:
                break
        return outcome

    def _run_visible_step(self, program: Program) -> StepOutcome:
        """Run until the next highlight call, completion or the safety ceiling."""
        self._highlight_hit[program.program_id] = False
        outcome = StepOutcome.MORE
        for _ in range(self.config.step_safety_limit):
            outcome = program.engine.step()
            if outcome != StepOutcome.MORE or self._highlight_hit.get(program.program_id):
                return outcome
        logger.warning(
            "[%s] %d operations without reaching a highlighted statement",
            program.program_id,
            self.config.step_safety_limit,
        )
        return outcome

    def _on_sleep_done(self, program_id: str, resume: Callable[..., None]):
        program = self._programs.get(program_id)
        if program is None or program.is_finished:
            return
        program.sleep_handle = None
        self._waiting[program_id] = False
        program.waiting_on_async = False
        program.state = ProgramState.RUNNING
        resume()
        self._drive(program_id)

    def _on_deadline(self, program_id: str):
        program = self._programs.get(program_id)
        if program is None:
            return
        program.deadline_handle = None
        self._on_guard(program, GuardFailure(constants.REASON_TIMEOUT))

    # ── terminal outcomes ────────────────────────────────────────

    def _complete(self, program: Program):
        logger.info(
            "Program %s completed in %d steps",
            program.program_id,
            program.engine.stats.steps,
        )
        self._teardown(program, ProgramState.COMPLETED)
        if not self._success_reported:
            self._success_reported = True
            self.events.report(
                RunEvent(
                    kind=EventKind.SUCCESS,
                    message=SUCCESS_MESSAGE,
                    program_id=program.program_id,
                )
            )

    def _on_guard(self, program: Program, exc: GuardFailure):
        limit = exc.limit if exc.reason == constants.REASON_ITERATIONS else None
        logger.warning("Program %s stopped by guard: %s", program.program_id, exc)
        self._teardown(program, ProgramState.ABORTED)
        self.events.report(
            RunEvent(
                kind=EventKind.INFINITE_LOOP,
                message=str(exc),
                program_id=program.program_id,
                guard=GuardNotice(reason=exc.reason, limit=limit),
            )
        )

    def _on_error(self, program: Program, exc: SandboxError):
        logger.error("Program %s failed: %s", program.program_id, exc)
        self._teardown(program, ProgramState.FAILED)
        self.events.report(
            RunEvent(kind=EventKind.ERROR, message=str(exc), program_id=program.program_id)
        )

    def _teardown(self, program: Program, state: ProgramState):
        program_id = program.program_id
        program.cancel_timers()
        if program.engine is not None and state != ProgramState.COMPLETED:
            program.engine.cancel()
        highlighted = self._highlights.pop(program_id, None)
        if highlighted:
            self.highlighter.unhighlight(highlighted)
        self._waiting.pop(program_id, None)
        self._highlight_hit.pop(program_id, None)
        self._programs.pop(program_id, None)
        program.state = state
        program.highlighted_block = None
        program.waiting_on_async = False
        program.paused_for_step = False
        self._reconcile()

    def _reconcile(self):
        if self._programs:
            return
        self._waiting.clear()
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
