"""Tests for Scheduler: cooperative multi-program execution on one event loop."""

from __future__ import annotations

import asyncio
import logging

import pytest

from edmo_runner.events import EventKind
from edmo_runner.program import ProgramState
from edmo_runner.run_types import ExecutionMode, RunnerConfig
from edmo_runner.scheduler import Scheduler
from edmo_runner.workspace import EntryBlock, Workspace

from tests.unit.conftest import ScriptedDialogs


class FakeRobotLink:
    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: list[tuple] = []

    def is_connected(self) -> bool:
        return self.connected

    async def send_command(self, kind, payload) -> bool:
        self.sent.append((kind, payload))
        return True


@pytest.fixture
def make_scheduler(loop, limbs, highlighter, events, dialogs):
    def make(dialogs=dialogs, robot_link=None, **config) -> Scheduler:
        return Scheduler(
            simulation=limbs,
            highlighter=highlighter,
            events=events,
            dialogs=dialogs,
            robot_link=robot_link,
            config=RunnerConfig(**config),
            loop=loop,
        )

    return make


def _settle(loop, scheduler: Scheduler, timeout: float = 5.0):
    loop.run_until_complete(asyncio.wait_for(scheduler.wait_until_idle(), timeout))


def _spin(loop, seconds: float = 0.0):
    loop.run_until_complete(asyncio.sleep(seconds))


class TestRun:
    def test_empty_workspace_starts_nothing(self, make_scheduler, events):
        scheduler = make_scheduler()

        assert scheduler.run(Workspace()) == []
        assert not scheduler.is_running()
        assert events.events == []

    def test_single_program_completes(self, loop, make_scheduler, events, limbs, highlighter):
        scheduler = make_scheduler()
        ids = scheduler.run(Workspace.from_sources("setServoRotation('B', 45);"))
        _settle(loop, scheduler)

        assert len(ids) == 1
        assert events.kinds() == [EventKind.SUCCESS]
        assert events.events[0].program_id == ids[0]
        assert limbs.limbs[1].target_degrees == 45
        assert highlighter.highlighted == set()
        assert not scheduler.is_running()

    def test_success_reported_once_per_run(self, loop, make_scheduler, events):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("var a = 1;", "var b = 2;", "var c = 3;"))
        _settle(loop, scheduler)

        assert events.kinds() == [EventKind.SUCCESS]

    def test_long_program_yields_between_batches(self, loop, make_scheduler, events):
        scheduler = make_scheduler(steps_per_tick=10)
        scheduler.run(
            Workspace.from_sources("var n = 0; while (n < 50) { n++; }")
        )

        assert scheduler.is_running()
        _settle(loop, scheduler)
        assert events.kinds() == [EventKind.SUCCESS]

    def test_compile_error_reports_and_skips_entry(self, loop, make_scheduler, events):
        scheduler = make_scheduler()
        ids = scheduler.run(Workspace.from_sources("var = ;"))

        assert ids == []
        assert events.kinds() == [EventKind.ERROR]
        assert "SyntaxError" in events.events[0].message
        assert scheduler.programs == {}

    def test_runtime_error_reports_error(self, loop, make_scheduler, events, highlighter):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("undefinedFn();"))
        _settle(loop, scheduler)

        assert events.kinds() == [EventKind.ERROR]
        assert "undefinedFn" in events.events[0].message
        assert highlighter.highlighted == set()

    def test_dialogs(self, loop, make_scheduler):
        dialogs = ScriptedDialogs(["Ada"])
        scheduler = make_scheduler(dialogs=dialogs)
        scheduler.run(
            Workspace.from_sources("var a = prompt('Name?');\nalert('Hi ' + a);")
        )
        _settle(loop, scheduler)

        assert dialogs.prompts == [("Name?", None)]
        assert dialogs.alerts == ["Hi Ada"]

    def test_rerun_aborts_previous_programs(self, loop, make_scheduler, events):
        scheduler = make_scheduler()
        (first_id,) = scheduler.run(Workspace.from_sources("sleep(10);"))
        first = scheduler.programs[first_id]

        (second_id,) = scheduler.run(Workspace.from_sources("sleep(10);"))

        assert first.state == ProgramState.ABORTED
        assert list(scheduler.programs) == [second_id]
        assert EventKind.INFO not in events.kinds()
        scheduler.stop()

    def test_rerun_clears_previous_highlights_first(self, make_scheduler, highlighter):
        scheduler = make_scheduler()
        scheduler.run(Workspace(entries=[EntryBlock(id="first", source="sleep(10);")]))
        scheduler.run(Workspace(entries=[EntryBlock(id="second", source="sleep(10);")]))

        assert highlighter.history == [
            ("on", "first:1:0"),
            ("off", "first:1:0"),
            ("on", "second:1:0"),
        ]
        assert highlighter.highlighted == {"second:1:0"}
        scheduler.stop()


class TestSleep:
    def test_sleep_suspends_only_its_program(self, loop, make_scheduler, events, limbs):
        scheduler = make_scheduler()
        scheduler.run(
            Workspace.from_sources(
                "sleep(0.05);\nsetServoRotation(0, 10);",
                "var i = 0; while (i < 3) { setServoRotation(1, i * 10); i++; }",
            )
        )

        assert scheduler.is_waiting_on_async()
        assert events.kinds() == [EventKind.SUCCESS]
        assert limbs.limbs[1].target_degrees == 20
        assert limbs.limbs[0].target_degrees == 0

        _settle(loop, scheduler)
        assert limbs.limbs[0].target_degrees == 10
        assert events.kinds() == [EventKind.SUCCESS]

    def test_looping_program_alongside_finite_one(
        self, loop, make_scheduler, events, limbs
    ):
        scheduler = make_scheduler(loop_trap_limit=3)
        scheduler.run(
            Workspace.from_sources(
                "while (true) { setServoRotation('A', 90); sleep(0); }",
                "setServoRotation('B', 45);",
            )
        )
        _settle(loop, scheduler)

        assert sorted(events.kinds(), key=lambda k: k.value) == [
            EventKind.INFINITE_LOOP,
            EventKind.SUCCESS,
        ]
        guard = next(e for e in events.events if e.kind == EventKind.INFINITE_LOOP).guard
        assert guard.reason == "iterations"
        assert guard.limit == 3
        assert limbs.limbs[0].target_degrees == 90
        assert limbs.limbs[1].target_degrees == 45

    def test_highlight_tracks_current_statement(self, make_scheduler, highlighter):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("setServoRotation(0, 10);\nsleep(10);"))

        assert highlighter.highlighted == {"start_0:2:0"}
        assert ("off", "start_0:1:0") in highlighter.history
        scheduler.stop()
        assert highlighter.highlighted == set()

    def test_each_program_keeps_its_own_highlight(self, make_scheduler, highlighter):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("sleep(10);", "sleep(10);"))

        assert highlighter.highlighted == {"start_0:1:0", "start_1:1:0"}
        scheduler.stop()


class TestGuards:
    def test_runaway_loop_without_sleep(self, loop, make_scheduler, events):
        scheduler = make_scheduler(loop_trap_limit=10, steps_per_tick=5)
        scheduler.run(Workspace.from_sources("while (true) {}"))
        _settle(loop, scheduler)

        assert events.kinds() == [EventKind.INFINITE_LOOP]
        assert events.events[0].guard.limit == 10

    def test_wall_clock_timeout(self, loop, make_scheduler, events):
        scheduler = make_scheduler(loop_trap_limit=100_000, timeout_seconds=0.05)
        scheduler.run(Workspace.from_sources("while (true) { sleep(0.01); }"))
        _settle(loop, scheduler)

        assert events.kinds() == [EventKind.INFINITE_LOOP]
        assert events.events[0].guard.reason == "timeout"
        assert events.events[0].guard.limit is None


class TestStop:
    def test_stop_without_programs_is_silent(self, make_scheduler, events):
        scheduler = make_scheduler()
        scheduler.stop()

        assert events.events == []

    def test_stop_cancels_sleeping_program(self, loop, make_scheduler, events, limbs):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("sleep(0.01);\nsetServoRotation(0, 30);"))
        scheduler.stop()
        _spin(loop, 0.05)

        assert events.kinds() == [EventKind.INFO]
        assert events.events[0].message == "Halting execution"
        assert not scheduler.is_running()
        assert not scheduler.is_waiting_on_async()
        assert limbs.limbs[0].target_degrees == 0

    def test_stop_can_reset_actuators(self, make_scheduler, limbs):
        scheduler = make_scheduler()
        scheduler.run(
            Workspace.from_sources(
                "setOscillator('A', 1, 30, 90, 0);\nsetServoRotation('B', 60);\nsleep(10);"
            )
        )
        assert limbs.is_oscillating(0)
        assert limbs.limbs[1].target_degrees == 60

        scheduler.stop(reset_actuators=True)

        assert not limbs.is_oscillating(0)
        assert [limb.target_degrees for limb in limbs.limbs] == [0, 0, 0, 0]

    def test_abort_single_program(self, loop, make_scheduler, events):
        scheduler = make_scheduler()
        first_id, second_id = scheduler.run(
            Workspace.from_sources("sleep(0.01);\nvar x = 1;", "sleep(10);")
        )
        first = scheduler.programs[first_id]

        assert scheduler.abort(first_id)
        _spin(loop, 0.05)

        assert first.state == ProgramState.ABORTED
        assert list(scheduler.programs) == [second_id]
        assert events.events == []
        assert not scheduler.abort("missing")
        scheduler.stop()


class TestStepMode:
    SOURCE = "setServoRotation(0, 10);\nsetServoRotation(0, 20);\nsetServoRotation(0, 30);"

    def test_pauses_at_each_statement(self, make_scheduler, limbs, highlighter, events):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources(self.SOURCE), ExecutionMode.STEP)

        assert scheduler.is_paused()
        assert limbs.limbs[0].target_degrees == 0
        assert highlighter.highlighted == {"start_0:1:0"}

        assert scheduler.step_forward()
        assert limbs.limbs[0].target_degrees == 10
        assert highlighter.highlighted == {"start_0:2:0"}

        assert scheduler.step_forward()
        assert limbs.limbs[0].target_degrees == 20

        assert scheduler.step_forward()
        assert limbs.limbs[0].target_degrees == 30
        assert not scheduler.is_running()
        assert events.kinds() == [EventKind.SUCCESS]
        assert not scheduler.step_forward()

    def test_step_forward_advances_every_program_once(
        self, make_scheduler, limbs, highlighter, events
    ):
        scheduler = make_scheduler()
        scheduler.run(
            Workspace.from_sources(
                "setServoRotation(0, 10);\nsetServoRotation(0, 20);",
                "setServoRotation(1, 15);\nsetServoRotation(1, 25);",
            ),
            ExecutionMode.STEP,
        )
        assert highlighter.highlighted == {"start_0:1:0", "start_1:1:0"}

        assert scheduler.step_forward()
        assert [limbs.limbs[0].target_degrees, limbs.limbs[1].target_degrees] == [10, 15]
        assert highlighter.highlighted == {"start_0:2:0", "start_1:2:0"}
        assert scheduler.is_paused()

        assert scheduler.step_forward()
        assert [limbs.limbs[0].target_degrees, limbs.limbs[1].target_degrees] == [20, 25]
        assert not scheduler.is_running()
        assert events.kinds() == [EventKind.SUCCESS]

    def test_pauses_again_after_sleep(self, loop, make_scheduler, limbs, highlighter):
        scheduler = make_scheduler()
        scheduler.run(
            Workspace.from_sources(
                "sleep(0.01);\nsetServoRotation(0, 10);\nsetServoRotation(0, 20);"
            ),
            ExecutionMode.STEP,
        )

        assert scheduler.step_forward()
        assert scheduler.is_waiting_on_async()
        assert not scheduler.is_paused()

        _spin(loop, 0.05)
        assert scheduler.is_paused()
        assert highlighter.highlighted == {"start_0:2:0"}
        assert limbs.limbs[0].target_degrees == 0

        assert scheduler.step_forward()
        assert limbs.limbs[0].target_degrees == 10
        scheduler.stop()

    def test_step_forward_outside_step_mode(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.run(Workspace.from_sources("sleep(10);"))

        assert not scheduler.step_forward()
        scheduler.stop()

    def test_safety_limit_pauses_silent_loop(self, make_scheduler, caplog):
        scheduler = make_scheduler(step_safety_limit=50, loop_trap_limit=1_000_000)
        scheduler.run(Workspace.from_sources("while (true) {}"), ExecutionMode.STEP)

        with caplog.at_level(logging.WARNING, logger="edmo_runner.scheduler"):
            assert scheduler.step_forward()

        assert scheduler.is_paused()
        assert "without reaching a highlighted statement" in caplog.text
        scheduler.stop()


class TestRobotMirror:
    def test_rotation_is_sent_when_connected(self, loop, make_scheduler):
        link = FakeRobotLink()
        scheduler = make_scheduler(robot_link=link)
        scheduler.run(Workspace.from_sources("setServoRotation('C', 120);"))
        _spin(loop)

        assert link.sent == [("setArmAngle", {"index": 2, "degrees": 90})]

    def test_nothing_sent_when_disconnected(self, loop, make_scheduler):
        link = FakeRobotLink(connected=False)
        scheduler = make_scheduler(robot_link=link)
        scheduler.run(Workspace.from_sources("setServoRotation('C', 120);"))
        _spin(loop)

        assert link.sent == []


class TestWorkspace:
    def test_explicit_entry_ids(self, make_scheduler, highlighter):
        scheduler = make_scheduler()
        scheduler.run(Workspace(entries=[EntryBlock(id="blk_7", source="sleep(10);")]))

        assert highlighter.highlighted == {"blk_7:1:0"}
        scheduler.stop()
