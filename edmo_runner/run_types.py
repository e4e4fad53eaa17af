"""Run pipeline data types (pure data, no business logic)."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from . import constants


class ExecutionMode(Enum):
    """Whether Programs auto-advance or pause at every highlighted statement."""

    CONTINUOUS = "continuous"
    STEP = "step"


class Dialect(Enum):
    """Target of instrumentation: the in-process interpreter or a native JS runtime."""

    INTERPRETER = "interpreter"
    NATIVE = "native"


class StepOutcome(Enum):
    """Result of advancing an engine by one instruction."""

    MORE = "more"
    BLOCKED = "blocked"
    DONE = "done"


@dataclass(frozen=True)
class RunnerConfig:
    """Groups scheduler, guard and actuator configuration."""

    loop_trap_limit: int = constants.LOOP_TRAP_LIMIT
    native_loop_limit: int = constants.NATIVE_LOOP_LIMIT
    step_safety_limit: int = constants.STEP_SAFETY_LIMIT
    steps_per_tick: int = constants.STEPS_PER_TICK
    reschedule_delay: float = constants.RESCHEDULE_DELAY
    timeout_seconds: float | None = None
    rotation_duration: float = constants.ROTATION_DURATION
    instrument_statements: bool = True


@dataclass
class ExecutionStats:
    """Execution metrics for one Program."""

    steps: int = 0
    highlights: int = 0
    capability_calls: int = 0
    final_heap_objects: int = 0
