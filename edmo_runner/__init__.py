"""EDMO script execution core: instrument, interpret and schedule block programs."""

from .api import (  # noqa: F401
    CompiledProgram,
    compile_program,
    lower_source,
    dump_ir,
    build_cfg_from_source,
    dump_cfg,
    instrument_native,
)
from .capabilities import CapabilityTable, servo_index, servo_letter  # noqa: F401
from .engine import ExecutionEngine  # noqa: F401
from .run_types import ExecutionMode, RunnerConfig, StepOutcome  # noqa: F401
from .scheduler import Scheduler  # noqa: F401
from .workspace import EntryBlock, Workspace  # noqa: F401
