"""Shared fakes for engine and scheduler tests."""

from __future__ import annotations

import asyncio

import pytest

from edmo_runner.capabilities import CapabilityTable
from edmo_runner.collaborators import (
    BlockHighlighter,
    Dialogs,
    EventSink,
    LimbBank,
)


class RecordingCapabilities(CapabilityTable):
    """Capability table that records every call; sleep completes on demand."""

    def __init__(self, prompt_answer: str | None = "42", auto_resume: bool = False):
        self.calls: list[tuple] = []
        self.pending_resume = None
        self.prompt_answer = prompt_answer
        self.auto_resume = auto_resume

    def set_servo_rotation(self, servo=0, degrees=0):
        self.calls.append(("setServoRotation", servo, degrees))

    def set_oscillator(
        self, servo=0, frequency=0, amplitude=0, offset=0, phase_shift=0, phase=0
    ):
        self.calls.append(
            ("setOscillator", servo, frequency, amplitude, offset, phase_shift, phase)
        )

    def stop_oscillator(self, servo=0):
        self.calls.append(("stopOscillator", servo))

    def sleep(self, resume, seconds=0):
        self.calls.append(("sleep", seconds))
        if self.auto_resume:
            resume()
        else:
            self.pending_resume = resume

    def alert(self, message=""):
        self.calls.append(("alert", message))

    def prompt(self, message="", default=None):
        self.calls.append(("prompt", message))
        return self.prompt_answer

    def highlight_block(self, block_id=None):
        self.calls.append(("highlightBlock", block_id))

    def named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class RecordingHighlighter(BlockHighlighter):
    def __init__(self):
        self.highlighted: set[str] = set()
        self.history: list[tuple[str, str]] = []

    def highlight(self, block_id: str):
        self.highlighted.add(block_id)
        self.history.append(("on", block_id))

    def unhighlight(self, block_id: str):
        self.highlighted.discard(block_id)
        self.history.append(("off", block_id))


class RecordingEventSink(EventSink):
    def __init__(self):
        self.events = []

    def report(self, event):
        self.events.append(event)

    def kinds(self) -> list:
        return [e.kind for e in self.events]


class ScriptedDialogs(Dialogs):
    def __init__(self, answers: list[str | None] | None = None):
        self.alerts: list[str] = []
        self.prompts: list[tuple[str, str | None]] = []
        self._answers = list(answers or [])

    def alert(self, message: str):
        self.alerts.append(message)

    def prompt(self, message: str, default: str | None = None) -> str | None:
        self.prompts.append((message, default))
        return self._answers.pop(0) if self._answers else None


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def capabilities():
    return RecordingCapabilities()


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def highlighter():
    return RecordingHighlighter()


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def dialogs():
    return ScriptedDialogs()


@pytest.fixture
def limbs():
    return LimbBank(count=4, clock=FakeClock())
