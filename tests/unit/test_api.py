"""Tests for the composable API functions in edmo_runner.api."""

import pytest

from edmo_runner.api import (
    CompiledProgram,
    build_cfg_from_source,
    compile_program,
    dump_cfg,
    dump_ir,
    instrument_native,
    lower_source,
)
from edmo_runner.cfg import CFG
from edmo_runner.errors import SandboxError
from edmo_runner.instrument import Instrumentation
from edmo_runner.ir import IRInstruction, Opcode

SIMPLE_SOURCE = "var x = 42;\n"

FUNCTION_SOURCE = """\
function greet(name) {
  return name;
}
greet("world");
"""


class TestLowerSource:
    def test_returns_list_of_ir_instructions(self):
        result = lower_source(SIMPLE_SOURCE)
        assert isinstance(result, list)
        assert all(isinstance(inst, IRInstruction) for inst in result)

    def test_contains_expected_opcodes(self):
        opcodes = [inst.opcode for inst in lower_source(SIMPLE_SOURCE)]
        assert Opcode.CONST in opcodes
        assert Opcode.DECLARE_VAR in opcodes

    def test_syntax_error_is_located(self):
        with pytest.raises(SandboxError, match="SyntaxError: unexpected input at"):
            lower_source("var a = 1;\nvar = ;")


class TestDumpIr:
    def test_contains_instruction_text(self):
        result = dump_ir(SIMPLE_SOURCE)
        assert "const" in result
        assert "42" in result

    def test_multiline_output(self):
        assert len(dump_ir(SIMPLE_SOURCE).strip().split("\n")) > 1

    def test_entry_id_appears_in_statement_ids(self):
        assert "start_3:1:0" in dump_ir(SIMPLE_SOURCE, entry_id="start_3")

    def test_instrumentation_can_be_switched_off(self):
        result = dump_ir(
            "while (a) { f(); }", Instrumentation(loop_trap=False, statement_prefix=False)
        )
        assert "loop_trap" not in result
        assert "highlightBlock" not in result


class TestBuildCfg:
    def test_returns_cfg(self):
        cfg = build_cfg_from_source(FUNCTION_SOURCE)
        assert isinstance(cfg, CFG)
        assert cfg.entry == "entry"

    def test_dump_cfg_lists_function_block(self):
        assert "func_greet" in dump_cfg(FUNCTION_SOURCE)


class TestCompileProgram:
    def test_bundles_pipeline_outputs(self):
        compiled = compile_program(FUNCTION_SOURCE, entry_id="start_0")

        assert isinstance(compiled, CompiledProgram)
        assert compiled.source == FUNCTION_SOURCE
        assert compiled.instructions[0].label == "entry"
        assert "entry" in compiled.cfg.blocks

    def test_registry_records_parameters(self):
        compiled = compile_program(FUNCTION_SOURCE)

        assert list(compiled.registry.func_params.values()) == [["name"]]


class TestInstrumentNative:
    def test_guards_and_awaits(self):
        result = instrument_native("while (a) { sleep(1); }", loop_limit=9)

        assert "let __loopGuard0 = 0;" in result
        assert "++__loopGuard0 > 9" in result
        assert "await sleep(1);" in result
