"""Collaborator interfaces the core calls into, plus in-process reference versions."""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from .events import EventKind, RunEvent
from . import constants

logger = logging.getLogger(__name__)


# ── Interfaces ───────────────────────────────────────────────────


class Simulation(ABC):
    """The (simulated or mirrored) robot body: a row of movable limbs."""

    @abstractmethod
    def rotate_limb(self, index: int, degrees: float, duration: float): ...

    @abstractmethod
    def set_oscillator(
        self,
        index: int,
        frequency: float,
        amplitude: float,
        offset: float,
        phase_shift: float,
        phase: float = 0.0,
    ): ...

    @abstractmethod
    def stop_oscillator(self, index: int): ...

    @abstractmethod
    def limb_count(self) -> int: ...


class BlockHighlighter(ABC):
    @abstractmethod
    def highlight(self, block_id: str): ...

    @abstractmethod
    def unhighlight(self, block_id: str): ...


class EventSink(ABC):
    @abstractmethod
    def report(self, event: RunEvent): ...


class Dialogs(ABC):
    @abstractmethod
    def alert(self, message: str): ...

    @abstractmethod
    def prompt(self, message: str, default: str | None = None) -> str | None: ...


# ── Limb model ───────────────────────────────────────────────────


def _ease_in_out_cubic(t: float) -> float:
    return 4 * t**3 if t < 0.5 else 1 - (-2 * t + 2) ** 3 / 2


def _clamp_limb(degrees: float) -> float:
    return max(constants.MIN_LIMB_DEGREES, min(constants.MAX_LIMB_DEGREES, degrees))


@dataclass
class Oscillator:
    frequency: float
    amplitude: float
    offset: float
    phase_shift: float
    phase: float
    started_at: float

    def angle_at(self, now: float) -> float:
        """``amplitude·sin(2π·f·t + phaseShift + phase) + offset``, mapped from 0..180 to -90..90."""
        t = now - self.started_at
        raw = (
            self.amplitude
            * math.sin(2 * math.pi * self.frequency * t + self.phase_shift + self.phase)
            + self.offset
        )
        return _clamp_limb(raw - constants.OSCILLATOR_ANGLE_SHIFT)


@dataclass
class Limb:
    start_degrees: float = constants.NEUTRAL_DEGREES
    target_degrees: float = constants.NEUTRAL_DEGREES
    started_at: float = 0.0
    duration: float = 0.0
    oscillator: Oscillator | None = None

    def angle_at(self, now: float) -> float:
        if self.oscillator is not None:
            return self.oscillator.angle_at(now)
        if self.duration <= 0:
            return self.target_degrees
        t = min(1.0, max(0.0, (now - self.started_at) / self.duration))
        eased = _ease_in_out_cubic(t)
        return self.start_degrees + (self.target_degrees - self.start_degrees) * eased


@dataclass
class LimbBank(Simulation):
    """In-memory limb model; the last write to a limb wins."""

    count: int = 4
    clock: Callable[[], float] = time.monotonic
    limbs: list[Limb] = field(default_factory=list)

    def __post_init__(self):
        if not self.limbs:
            self.limbs = [Limb() for _ in range(self.count)]

    def _limb(self, index: int) -> Limb | None:
        if 0 <= index < len(self.limbs):
            return self.limbs[index]
        logger.warning("Limb index %d not found (have %d)", index, len(self.limbs))
        return None

    def rotate_limb(self, index: int, degrees: float, duration: float):
        limb = self._limb(index)
        if limb is None:
            return
        now = self.clock()
        limb.start_degrees = limb.angle_at(now)
        limb.oscillator = None
        limb.target_degrees = _clamp_limb(degrees)
        limb.started_at = now
        limb.duration = max(0.0, duration)

    def set_oscillator(
        self,
        index: int,
        frequency: float,
        amplitude: float,
        offset: float,
        phase_shift: float,
        phase: float = 0.0,
    ):
        limb = self._limb(index)
        if limb is None:
            return
        limb.oscillator = Oscillator(
            frequency=frequency,
            amplitude=amplitude,
            offset=offset,
            phase_shift=phase_shift,
            phase=phase,
            started_at=self.clock(),
        )
        logger.debug(
            "Oscillator started for limb %d: freq=%s amp=%s offset=%s shift=%s",
            index,
            frequency,
            amplitude,
            offset,
            phase_shift,
        )

    def stop_oscillator(self, index: int):
        limb = self._limb(index)
        if limb is None or limb.oscillator is None:
            return
        now = self.clock()
        frozen = limb.oscillator.angle_at(now)
        limb.oscillator = None
        limb.start_degrees = limb.target_degrees = frozen
        limb.duration = 0.0

    def limb_count(self) -> int:
        return len(self.limbs)

    def angle(self, index: int) -> float:
        return self.limbs[index].angle_at(self.clock())

    def is_oscillating(self, index: int) -> bool:
        return self.limbs[index].oscillator is not None


# ── Logging reference collaborators ──────────────────────────────


class LoggingHighlighter(BlockHighlighter):
    """Tracks highlighted block ids and logs every change."""

    def __init__(self):
        self.highlighted: set[str] = set()

    def highlight(self, block_id: str):
        logger.debug("Highlight %s", block_id)
        self.highlighted.add(block_id)

    def unhighlight(self, block_id: str):
        logger.debug("Unhighlight %s", block_id)
        self.highlighted.discard(block_id)


class LoggingEventSink(EventSink):
    """Records events in order and logs them at a level matching their kind."""

    _LEVELS = {
        EventKind.SUCCESS: logging.INFO,
        EventKind.INFO: logging.INFO,
        EventKind.ERROR: logging.ERROR,
        EventKind.INFINITE_LOOP: logging.WARNING,
    }

    def __init__(self):
        self.events: list[RunEvent] = []

    def report(self, event: RunEvent):
        self.events.append(event)
        logger.log(self._LEVELS[event.kind], "[%s] %s", event.kind.value, event.message)


class ConsoleDialogs(Dialogs):
    """Terminal stand-ins for the browser's alert and prompt."""

    def __init__(self, input_fn: Callable[[str], str] = input):
        self._input = input_fn

    def alert(self, message: str):
        print(message)

    def prompt(self, message: str, default: str | None = None) -> str | None:
        suffix = f" [{default}]" if default is not None else ""
        try:
            answer = self._input(f"{message}{suffix} ")
        except EOFError:
            return None
        return answer or default or ""
