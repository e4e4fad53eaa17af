"""Composable API functions for the compile pipeline.

Each function corresponds to a CLI workflow (``ir``, ``cfg``, ``instrument``)
but is callable programmatically without argparse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tree_sitter import Node

from .cfg import CFG, build_cfg
from .errors import SandboxError
from .frontend import get_frontend
from .instrument import Instrumentation, instrument
from .ir import IRInstruction
from .parser import parse_javascript
from .registry import FunctionRegistry, build_registry
from .run_types import Dialect
from . import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledProgram:
    """Everything an ExecutionEngine needs, produced once per entry block."""

    source: str
    instructions: list[IRInstruction]
    cfg: CFG
    registry: FunctionRegistry


def _first_error(node: Node) -> Node | None:
    if node.type == "ERROR" or node.is_missing:
        return node
    return next(
        (
            found
            for child in node.children
            if child.has_error and (found := _first_error(child)) is not None
        ),
        None,
    )


def lower_source(
    source: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> list[IRInstruction]:
    """Parse and lower generated JavaScript to IR instructions.

    Args:
        source: The JavaScript source text.
        instrumentation: Which interpreter-dialect hooks to emit.
        entry_id: Prefix for the opaque statement ids passed to the
            highlight capability.

    Returns:
        A list of IR instructions.

    Raises:
        SandboxError: If the source does not parse.
    """
    logger.info("Lowering source (%d bytes, entry=%s)", len(source), entry_id or "-")
    tree = parse_javascript(source)
    if tree.root_node.has_error:
        bad = _first_error(tree.root_node) or tree.root_node
        line, col = bad.start_point
        raise SandboxError(f"SyntaxError: unexpected input at {line + 1}:{col}")
    frontend = get_frontend(constants.LANGUAGE, instrumentation, entry_id)
    return frontend.lower(tree, source.encode("utf-8"))


def dump_ir(
    source: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> str:
    """Lower source to IR and return a human-readable text dump."""
    instructions = lower_source(source, instrumentation, entry_id)
    return "\n".join(f"  {inst}" for inst in instructions)


def build_cfg_from_source(
    source: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> CFG:
    """Parse, lower and build a CFG."""
    return build_cfg(lower_source(source, instrumentation, entry_id))


def dump_cfg(
    source: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> str:
    """Build a CFG from source and return its text representation."""
    return str(build_cfg_from_source(source, instrumentation, entry_id))


def compile_program(
    source: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> CompiledProgram:
    """Parse → lower → CFG → function registry.

    Args:
        source: The JavaScript generated for one entry block.
        instrumentation: Which interpreter-dialect hooks to emit.
        entry_id: Prefix for opaque statement ids.

    Returns:
        A CompiledProgram ready to hand to an ExecutionEngine.
    """
    instructions = lower_source(source, instrumentation, entry_id)
    cfg = build_cfg(instructions)
    registry = build_registry(instructions, cfg)
    logger.info(
        "Compiled %d instructions into %d blocks, %d functions",
        len(instructions),
        len(cfg.blocks),
        len(registry.func_params),
    )
    return CompiledProgram(
        source=source, instructions=instructions, cfg=cfg, registry=registry
    )


def instrument_native(source: str, loop_limit: int = constants.NATIVE_LOOP_LIMIT) -> str:
    """Rewrite source for a native JavaScript runtime: loop guards plus async/await."""
    return instrument(source, Dialect.NATIVE, loop_limit=loop_limit)
