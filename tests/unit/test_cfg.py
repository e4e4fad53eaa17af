"""Tests for the CFG builder."""

from edmo_runner.api import build_cfg_from_source
from edmo_runner.cfg import build_cfg
from edmo_runner.instrument import Instrumentation
from edmo_runner.ir import IRInstruction, Opcode


def _make_instructions(*specs):
    """Helper: build IRInstruction list from (opcode, kwargs) tuples."""
    return [IRInstruction(opcode=op, **kw) for op, kw in specs]


class TestBuildCfgBasic:
    def test_linear_code_is_one_block(self):
        instructions = _make_instructions(
            (Opcode.LABEL, {"label": "entry"}),
            (Opcode.CONST, {"result_reg": "%0", "operands": ["42"]}),
            (Opcode.DECLARE_VAR, {"operands": ["x", "%0"]}),
        )
        cfg = build_cfg(instructions)

        assert list(cfg.blocks) == ["entry"]
        assert cfg.entry == "entry"
        assert len(cfg.blocks["entry"].instructions) == 2

    def test_label_is_not_an_instruction(self):
        instructions = _make_instructions((Opcode.LABEL, {"label": "entry"}))
        cfg = build_cfg(instructions)

        assert cfg.blocks["entry"].instructions == []

    def test_branch_if_wires_both_targets(self):
        instructions = _make_instructions(
            (Opcode.LABEL, {"label": "entry"}),
            (Opcode.CONST, {"result_reg": "%0", "operands": ["true"]}),
            (Opcode.BRANCH_IF, {"operands": ["%0"], "label": "yes,no"}),
            (Opcode.LABEL, {"label": "yes"}),
            (Opcode.BRANCH, {"label": "done"}),
            (Opcode.LABEL, {"label": "no"}),
            (Opcode.LABEL, {"label": "done"}),
        )
        cfg = build_cfg(instructions)

        assert cfg.blocks["entry"].successors == ["yes", "no"]
        assert cfg.blocks["yes"].successors == ["done"]
        assert cfg.blocks["no"].successors == ["done"]
        assert sorted(cfg.blocks["done"].predecessors) == ["no", "yes"]

    def test_return_has_no_successor(self):
        instructions = _make_instructions(
            (Opcode.LABEL, {"label": "entry"}),
            (Opcode.CONST, {"result_reg": "%0", "operands": ["1"]}),
            (Opcode.RETURN, {"operands": ["%0"]}),
            (Opcode.LABEL, {"label": "after"}),
        )
        cfg = build_cfg(instructions)

        assert cfg.blocks["entry"].successors == []

    def test_instruction_after_terminator_starts_block(self):
        instructions = _make_instructions(
            (Opcode.LABEL, {"label": "entry"}),
            (Opcode.BRANCH, {"label": "end"}),
            (Opcode.CONST, {"result_reg": "%0", "operands": ["1"]}),
            (Opcode.LABEL, {"label": "end"}),
        )
        cfg = build_cfg(instructions)

        assert "__block_2" in cfg.blocks
        assert cfg.blocks["__block_2"].successors == ["end"]


class TestBuildCfgFromSource:
    def test_loop_has_back_edge(self):
        cfg = build_cfg_from_source(
            "while (x) { f(); }", Instrumentation(statement_prefix=False)
        )
        body = next(label for label in cfg.blocks if label.startswith("while_body"))
        cond = next(label for label in cfg.blocks if label.startswith("while_cond"))

        assert cond in cfg.blocks[body].successors

    def test_function_labels(self):
        cfg = build_cfg_from_source("function f() {}\nfunction g() {}")

        assert len(cfg.function_labels()) == 2
        assert all(label.startswith("func_") for label in cfg.function_labels())

    def test_str_lists_blocks(self):
        cfg = build_cfg_from_source("var x = 1;", Instrumentation(statement_prefix=False))

        text = str(cfg)
        assert "[entry]" in text
        assert "declare_var x" in text
