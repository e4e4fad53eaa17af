"""Command-line entry point: ``edmo-runner``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .api import dump_cfg, dump_ir, instrument_native
from .collaborators import ConsoleDialogs, LimbBank, LoggingEventSink, LoggingHighlighter
from .errors import RobotLinkError, SandboxError
from .events import EventKind
from .instrument import Instrumentation
from .robot_link import RobotLink
from .run_types import ExecutionMode, RunnerConfig
from .scheduler import Scheduler
from .workspace import load_workspace
from . import constants

logger = logging.getLogger(__name__)


async def _run_workspace(args: argparse.Namespace) -> int:
    workspace = load_workspace(args.workspace)
    config = RunnerConfig(timeout_seconds=args.timeout)
    robot_link = None
    if args.robot_url:
        robot_link = RobotLink(args.robot_url)
        try:
            await robot_link.connect()
        except RobotLinkError as exc:
            logger.warning("%s; continuing with the simulation only", exc)

    events = LoggingEventSink()
    scheduler = Scheduler(
        simulation=LimbBank(count=args.limbs),
        highlighter=LoggingHighlighter(),
        events=events,
        dialogs=ConsoleDialogs(),
        robot_link=robot_link,
        config=config,
        loop=asyncio.get_running_loop(),
    )
    mode = ExecutionMode.STEP if args.step else ExecutionMode.CONTINUOUS
    scheduler.run(workspace, mode)
    if mode == ExecutionMode.STEP:
        while scheduler.is_running():
            await asyncio.sleep(0.05)
            if scheduler.is_paused():
                await asyncio.to_thread(input, "[enter] step ")
                scheduler.step_forward()
    await scheduler.wait_until_idle()

    if robot_link is not None:
        await robot_link.disconnect()
    failed = {EventKind.ERROR, EventKind.INFINITE_LOOP}
    return 1 if any(e.kind in failed for e in events.events) else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="edmo-runner", description="EDMO block-program execution core"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log at DEBUG level"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run every entry block of a workspace")
    run_p.add_argument("workspace", help="Workspace JSON file")
    run_p.add_argument("--step", action="store_true", help="Pause at every statement")
    run_p.add_argument(
        "--timeout", type=float, default=None, help="Wall-clock limit per program (s)"
    )
    run_p.add_argument("--robot-url", default=None, help="Mirror servo moves to this robot")
    run_p.add_argument(
        "--limbs", type=int, default=4, help="Number of simulated limbs (default: 4)"
    )

    ir_p = sub.add_parser("ir", help="Print the lowered IR")
    ir_p.add_argument("file", help="JavaScript source file")
    ir_p.add_argument("--no-trap", action="store_true", help="Omit loop traps")
    ir_p.add_argument(
        "--no-highlight", action="store_true", help="Omit statement highlight calls"
    )

    cfg_p = sub.add_parser("cfg", help="Print the control flow graph")
    cfg_p.add_argument("file", help="JavaScript source file")

    inst_p = sub.add_parser("instrument", help="Print native-runtime instrumented source")
    inst_p.add_argument("file", help="JavaScript source file")
    inst_p.add_argument(
        "--limit",
        type=int,
        default=constants.NATIVE_LOOP_LIMIT,
        help=f"Loop guard ceiling (default: {constants.NATIVE_LOOP_LIMIT})",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        return asyncio.run(_run_workspace(args))

    source = Path(args.file).read_text(encoding="utf-8")
    try:
        if args.command == "ir":
            instrumentation = Instrumentation(
                loop_trap=not args.no_trap, statement_prefix=not args.no_highlight
            )
            print("═══ IR ═══")
            print(dump_ir(source, instrumentation, Path(args.file).stem))
        elif args.command == "cfg":
            print("═══ CFG ═══")
            print(dump_cfg(source, entry_id=Path(args.file).stem))
        else:
            print(instrument_native(source, args.limit))
    except SandboxError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
