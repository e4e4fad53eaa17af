"""Program: one independently scheduled logical thread of generated code."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .engine import ExecutionEngine


class ProgramState(Enum):
    CREATED = "created"
    RUNNING = "running"
    SUSPENDED_ASYNC = "suspended_async"
    SUSPENDED_STEP = "suspended_step"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {ProgramState.COMPLETED, ProgramState.FAILED, ProgramState.ABORTED}
)


def new_program_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Program:
    program_id: str
    entry_id: str
    source: str
    engine: ExecutionEngine | None = None
    state: ProgramState = ProgramState.CREATED
    highlighted_block: str | None = None
    waiting_on_async: bool = False
    paused_for_step: bool = False
    sleep_handle: asyncio.TimerHandle | None = None
    deadline_handle: asyncio.TimerHandle | None = None
    drive_handle: asyncio.Handle | None = field(default=None, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    def cancel_timers(self):
        for handle in (self.sleep_handle, self.deadline_handle, self.drive_handle):
            if handle is not None:
                handle.cancel()
        self.sleep_handle = None
        self.deadline_handle = None
        self.drive_handle = None
