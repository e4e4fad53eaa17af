"""Tests for servo designators and the per-Program capability table."""

from __future__ import annotations

import math

import pytest

from edmo_runner import constants
from edmo_runner.capabilities import (
    ProgramCapabilities,
    clamp_degrees,
    servo_index,
    servo_letter,
)
from edmo_runner.run_types import RunnerConfig
from edmo_runner.vm_types import UNDEFINED

from tests.unit.conftest import ScriptedDialogs


class FakeSimulation:
    def __init__(self):
        self.calls: list[tuple] = []

    def rotate_limb(self, index, degrees, duration):
        self.calls.append(("rotate", index, degrees, duration))

    def set_oscillator(self, index, frequency, amplitude, offset, phase_shift, phase=0.0):
        self.calls.append(
            ("oscillate", index, frequency, amplitude, offset, phase_shift, phase)
        )

    def stop_oscillator(self, index):
        self.calls.append(("stop", index))


class FakeScheduler:
    """Just the attributes and hooks ProgramCapabilities reaches for."""

    def __init__(self, answers=None):
        self.simulation = FakeSimulation()
        self.dialogs = ScriptedDialogs(answers)
        self.config = RunnerConfig(rotation_duration=0.25)
        self.sleeps: list[tuple] = []
        self.highlights: list[tuple] = []
        self.mirrored: list[tuple] = []

    def start_sleep(self, program_id, seconds, resume):
        self.sleeps.append((program_id, seconds, resume))

    def on_highlight(self, program_id, block_id):
        self.highlights.append((program_id, block_id))

    def mirror_to_robot(self, kind, payload):
        self.mirrored.append((kind, payload))


@pytest.fixture
def scheduler():
    return FakeScheduler(answers=["Ada"])


@pytest.fixture
def caps(scheduler):
    return ProgramCapabilities("p1", scheduler)


class TestServoIndex:
    @pytest.mark.parametrize("letter,index", [("A", 0), ("B", 1), ("Z", 25)])
    def test_letters(self, letter, index):
        assert servo_index(letter) == index

    def test_lowercase_and_whitespace(self):
        assert servo_index(" c ") == 2

    def test_letters_round_trip(self):
        assert [servo_index(servo_letter(i)) for i in range(26)] == list(range(26))

    def test_numbers_pass_through(self):
        assert servo_index(3) == 3
        assert servo_index(2.7) == 2

    @pytest.mark.parametrize(
        "value", ["AA", "", "1", "?", -1, math.nan, math.inf, True, None, UNDEFINED]
    )
    def test_malformed_designators_map_to_zero(self, value):
        assert servo_index(value) == 0

    def test_letter_out_of_range(self):
        with pytest.raises(ValueError):
            servo_letter(26)
        with pytest.raises(ValueError):
            servo_letter(-1)


class TestClampDegrees:
    def test_within_range(self):
        assert clamp_degrees(45) == 45

    def test_clamps_both_ends(self):
        assert clamp_degrees(120) == 90
        assert clamp_degrees(-200) == -90

    def test_numeric_string(self):
        assert clamp_degrees("30") == 30

    def test_nan_is_neutral(self):
        assert clamp_degrees("abc") == constants.NEUTRAL_DEGREES


class TestProgramCapabilities:
    def test_bindings_cover_required_names(self, caps):
        assert set(caps.bindings()) == set(constants.REQUIRED_CAPABILITIES)

    def test_rotation_is_clamped_and_mirrored(self, caps, scheduler):
        caps.set_servo_rotation("C", 200)

        assert scheduler.simulation.calls == [("rotate", 2, 90, 0.25)]
        assert scheduler.mirrored == [("setArmAngle", {"index": 2, "degrees": 90})]

    def test_oscillator_arguments(self, caps, scheduler):
        caps.set_oscillator("B", 1, 30, 90, 0)

        assert scheduler.simulation.calls == [("oscillate", 1, 1, 30, 90, 0, 0)]

    def test_oscillator_non_numeric_becomes_zero(self, caps, scheduler):
        caps.set_oscillator(0, "fast", 30, 90, 0, 1.5)

        assert scheduler.simulation.calls == [("oscillate", 0, 0, 30, 90, 0, 1.5)]

    def test_stop_oscillator(self, caps, scheduler):
        caps.stop_oscillator("D")

        assert scheduler.simulation.calls == [("stop", 3)]

    def test_sleep_is_non_negative(self, caps, scheduler):
        def resume():
            pass

        caps.sleep(resume, -3)
        caps.sleep(resume, "0.5")

        assert [(pid, secs) for pid, secs, _ in scheduler.sleeps] == [
            ("p1", 0),
            ("p1", 0.5),
        ]
        assert scheduler.sleeps[0][2] is resume

    def test_alert_stringifies(self, caps, scheduler):
        caps.alert(42)

        assert scheduler.dialogs.alerts == ["42"]

    def test_prompt_passes_default(self, caps, scheduler):
        assert caps.prompt("Name?", "Bob") == "Ada"
        assert scheduler.dialogs.prompts == [("Name?", "Bob")]

    def test_prompt_without_default(self, caps, scheduler):
        caps.prompt("Name?")

        assert scheduler.dialogs.prompts == [("Name?", None)]

    def test_highlight_clears_on_empty_id(self, caps, scheduler):
        caps.highlight_block("blk")
        caps.highlight_block(UNDEFINED)
        caps.highlight_block("")

        assert scheduler.highlights == [("p1", "blk"), ("p1", None), ("p1", None)]

    def test_falsy_ids_clear_highlight(self, caps, scheduler):
        caps.highlight_block(0)
        caps.highlight_block(False)
        caps.highlight_block(7)

        assert scheduler.highlights == [("p1", None), ("p1", None), ("p1", "7")]
