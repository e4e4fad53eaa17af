"""Capability table: the only host functions generated code can reach."""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable

from .vm import is_number, to_js_string, to_number, truthy
from .vm_types import UNDEFINED
from . import constants

if TYPE_CHECKING:
    from .scheduler import Scheduler

logger = logging.getLogger(__name__)


def servo_index(value: Any) -> int:
    """Map a servo designator to a limb index.

    Numbers are used as-is; a single letter ``A``..``Z`` (any case) maps to
    0..25. Anything else falls back to 0.
    """
    if isinstance(value, bool):
        return 0
    if is_number(value):
        return int(value) if math.isfinite(value) and value >= 0 else 0
    if isinstance(value, str):
        letter = value.strip().upper()
        if len(letter) == 1 and "A" <= letter <= "Z":
            return ord(letter) - ord("A")
    return 0


def servo_letter(index: int) -> str:
    if not 0 <= index < constants.MAX_SERVO_LETTERS:
        raise ValueError(f"Servo index out of letter range: {index}")
    return chr(ord("A") + index)


def clamp_degrees(degrees: Any) -> float:
    value = to_number(degrees)
    if math.isnan(value):
        return constants.NEUTRAL_DEGREES
    return max(constants.MIN_LIMB_DEGREES, min(constants.MAX_LIMB_DEGREES, value))


def _finite(value: Any, default: float = 0.0) -> float:
    num = to_number(value)
    return num if math.isfinite(num) else default


class CapabilityTable(ABC):
    """Explicit whitelist of host functions exposed to one Program.

    Asynchronous capabilities receive a ``resume`` callback as their first
    argument and must call it exactly once when the operation completes.
    """

    ASYNC_CAPABILITIES: frozenset[str] = constants.BLOCKING_CAPABILITIES

    @abstractmethod
    def set_servo_rotation(self, servo: Any = 0, degrees: Any = 0) -> None: ...

    @abstractmethod
    def set_oscillator(
        self,
        servo: Any = 0,
        frequency: Any = 0,
        amplitude: Any = 0,
        offset: Any = 0,
        phase_shift: Any = 0,
        phase: Any = 0,
    ) -> None: ...

    @abstractmethod
    def stop_oscillator(self, servo: Any = 0) -> None: ...

    @abstractmethod
    def sleep(self, resume: Callable[..., None], seconds: Any = 0) -> None: ...

    @abstractmethod
    def alert(self, message: Any = "") -> None: ...

    @abstractmethod
    def prompt(self, message: Any = "", default: Any = UNDEFINED) -> str | None: ...

    @abstractmethod
    def highlight_block(self, block_id: Any = None) -> None: ...

    def bindings(self) -> dict[str, Callable]:
        return {
            constants.CAP_SET_SERVO_ROTATION: self.set_servo_rotation,
            constants.CAP_SET_OSCILLATOR: self.set_oscillator,
            constants.CAP_STOP_OSCILLATOR: self.stop_oscillator,
            constants.CAP_SLEEP: self.sleep,
            constants.CAP_ALERT: self.alert,
            constants.CAP_PROMPT: self.prompt,
            constants.CAP_HIGHLIGHT_BLOCK: self.highlight_block,
        }


class ProgramCapabilities(CapabilityTable):
    """Capabilities bound to one Program id, sharing the scheduler's collaborators."""

    def __init__(self, program_id: str, scheduler: Scheduler):
        self.program_id = program_id
        self._scheduler = scheduler

    def set_servo_rotation(self, servo: Any = 0, degrees: Any = 0) -> None:
        index = servo_index(servo)
        clamped = clamp_degrees(degrees)
        logger.debug(
            "[%s] setServoRotation(%s → %d, %s°)", self.program_id, servo, index, clamped
        )
        self._scheduler.simulation.rotate_limb(
            index, clamped, self._scheduler.config.rotation_duration
        )
        self._scheduler.mirror_to_robot(
            constants.ROBOT_CMD_SET_ARM_ANGLE, {"index": index, "degrees": clamped}
        )

    def set_oscillator(
        self,
        servo: Any = 0,
        frequency: Any = 0,
        amplitude: Any = 0,
        offset: Any = 0,
        phase_shift: Any = 0,
        phase: Any = 0,
    ) -> None:
        index = servo_index(servo)
        logger.debug("[%s] setOscillator(%d)", self.program_id, index)
        self._scheduler.simulation.set_oscillator(
            index,
            _finite(frequency),
            _finite(amplitude),
            _finite(offset),
            _finite(phase_shift),
            _finite(phase),
        )

    def stop_oscillator(self, servo: Any = 0) -> None:
        index = servo_index(servo)
        logger.debug("[%s] stopOscillator(%d)", self.program_id, index)
        self._scheduler.simulation.stop_oscillator(index)

    def sleep(self, resume: Callable[..., None], seconds: Any = 0) -> None:
        duration = max(0.0, _finite(seconds))
        self._scheduler.start_sleep(self.program_id, duration, resume)

    def alert(self, message: Any = "") -> None:
        self._scheduler.dialogs.alert(to_js_string(message))

    def prompt(self, message: Any = "", default: Any = UNDEFINED) -> str | None:
        default_text = None if default in (None, UNDEFINED) else to_js_string(default)
        return self._scheduler.dialogs.prompt(to_js_string(message), default_text)

    def highlight_block(self, block_id: Any = None) -> None:
        text = to_js_string(block_id) if truthy(block_id) else None
        self._scheduler.on_highlight(self.program_id, text)
