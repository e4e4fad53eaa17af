"""Result/event surface: what the scheduler reports to collaborators."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class EventKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    INFINITE_LOOP = "infinite_loop"


class GuardNotice(BaseModel):
    """Why a guard stopped a Program; ``limit`` only accompanies ``iterations``."""

    reason: str
    limit: int | None = None


class RunEvent(BaseModel):
    kind: EventKind
    message: str
    program_id: str | None = None
    guard: GuardNotice | None = None
