"""BaseFrontend: tree-sitter AST → IR lowering infrastructure."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from ..frontend import Frontend
from ..instrument import Instrumentation
from ..ir import NO_SOURCE_LOCATION, IRInstruction, Opcode, SourceLocation
from .. import constants

logger = logging.getLogger(__name__)


class BaseFrontend(Frontend):
    """Base class for deterministic tree-sitter frontends.

    Subclasses populate ``_STMT_DISPATCH`` and ``_EXPR_DISPATCH`` tables and
    override field-name / literal constants where the grammar differs from
    the defaults.

    Two instrumentation hooks run during lowering: a ``LOOP_TRAP`` at the
    head of every loop body, and a highlight call in front of every
    statement so the host can trace and single-step execution.
    """

    # ── overridable constants ────────────────────────────────────

    FUNC_NAME_FIELD: str = "name"
    FUNC_PARAMS_FIELD: str = "parameters"
    FUNC_BODY_FIELD: str = "body"

    IF_CONDITION_FIELD: str = "condition"
    IF_CONSEQUENCE_FIELD: str = "consequence"
    IF_ALTERNATIVE_FIELD: str = "alternative"

    WHILE_CONDITION_FIELD: str = "condition"
    WHILE_BODY_FIELD: str = "body"

    LABEL_NAME_FIELD: str = "label"
    LABEL_BODY_FIELD: str = "body"

    CALL_FUNCTION_FIELD: str = "function"
    CALL_ARGUMENTS_FIELD: str = "arguments"

    ASSIGN_LEFT_FIELD: str = "left"
    ASSIGN_RIGHT_FIELD: str = "right"

    NONE_LITERAL: str = "null"
    DEFAULT_RETURN_VALUE: str = "undefined"

    BLOCK_TYPES: frozenset[str] = frozenset({"block"})
    COMMENT_TYPES: frozenset[str] = frozenset({"comment"})
    NOISE_TYPES: frozenset[str] = frozenset({"\n"})

    # Statements that never receive a highlight prefix
    UNTRACED_STMT_TYPES: frozenset[str] = frozenset()
    # Statements hoisted to the top of their scope
    HOISTED_STMT_TYPES: frozenset[str] = frozenset()
    # Statements whose handler calls ``_push_loop``
    LOOP_STMT_TYPES: frozenset[str] = frozenset()

    # ── init ─────────────────────────────────────────────────────

    def __init__(
        self,
        instrumentation: Instrumentation = Instrumentation(),
        entry_id: str = "",
    ):
        self._instrumentation = instrumentation
        self._entry_id = entry_id
        self._trace_statements = instrumentation.statement_prefix
        self._reg_counter: int = 0
        self._label_counter: int = 0
        self._instructions: list[IRInstruction] = []
        self._source: bytes = b""
        self._loop_stack: list[dict[str, str]] = []
        self._break_target_stack: list[str] = []
        # statement label -> {"break_label", "continue_label"}
        self._label_targets: dict[str, dict[str, str | None]] = {}
        self._pending_labels: list[str] = []
        self._STMT_DISPATCH: dict[str, Callable] = {}
        self._EXPR_DISPATCH: dict[str, Callable] = {}

    # ── helpers ──────────────────────────────────────────────────

    def _fresh_reg(self) -> str:
        r = f"%{self._reg_counter}"
        self._reg_counter += 1
        return r

    def _fresh_label(self, prefix: str = "L") -> str:
        lbl = f"{prefix}_{self._label_counter}"
        self._label_counter += 1
        return lbl

    def _fresh_temp(self, prefix: str) -> str:
        return f"__{prefix}_{self._fresh_label('t').split('_')[-1]}"

    def _emit(
        self,
        opcode: Opcode,
        *,
        result_reg: str = "",
        operands: list[Any] = [],
        label: str = "",
        source_location: SourceLocation = NO_SOURCE_LOCATION,
        node=None,
    ) -> IRInstruction:
        loc = (
            source_location
            if not source_location.is_unknown()
            else (self._source_loc(node) if node else NO_SOURCE_LOCATION)
        )
        inst = IRInstruction(
            opcode=opcode,
            result_reg=result_reg or None,
            operands=operands or [],
            label=label or None,
            source_location=loc,
        )
        self._instructions.append(inst)
        return inst

    def _emit_const(self, raw: str) -> str:
        reg = self._fresh_reg()
        self._emit(Opcode.CONST, result_reg=reg, operands=[raw])
        return reg

    def _node_text(self, node) -> str:
        return self._source[node.start_byte : node.end_byte].decode("utf-8")

    def _source_loc(self, node) -> SourceLocation:
        s, e = node.start_point, node.end_point
        return SourceLocation(
            start_line=s[0] + 1,
            start_col=s[1],
            end_line=e[0] + 1,
            end_col=e[1],
        )

    # ── entry point ──────────────────────────────────────────────

    def lower(self, tree, source: bytes) -> list[IRInstruction]:
        self._reg_counter = 0
        self._label_counter = 0
        self._instructions = []
        self._source = source
        self._loop_stack = []
        self._break_target_stack = []
        self._label_targets = {}
        self._pending_labels = []
        root = tree.root_node
        self._trace_statements = (
            self._instrumentation.statement_prefix
            and not self._calls_function(
                root, self._instrumentation.highlight_function
            )
        )
        self._emit(Opcode.LABEL, label=constants.CFG_ENTRY_LABEL)
        self._lower_scope(root)
        logger.debug(
            "Lowered %d bytes to %d IR instructions",
            len(source),
            len(self._instructions),
        )
        return self._instructions

    # ── instrumentation hooks ────────────────────────────────────

    def _calls_function(self, root, name: str) -> bool:
        """True when any call expression under *root* targets *name*."""
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == "call_expression":
                callee = node.child_by_field_name(self.CALL_FUNCTION_FIELD)
                if callee is not None and callee.type == "identifier":
                    if self._node_text(callee) == name:
                        return True
            stack.extend(node.children)
        return False

    def _statement_id(self, node) -> str:
        line, col = node.start_point[0] + 1, node.start_point[1]
        if self._entry_id:
            return f"{self._entry_id}:{line}:{col}"
        return f"{line}:{col}"

    def _emit_statement_prefix(self, node):
        id_reg = self._emit_const(json.dumps(self._statement_id(node)))
        self._emit(
            Opcode.CALL_FUNCTION,
            result_reg=self._fresh_reg(),
            operands=[self._instrumentation.highlight_function, id_reg],
            node=node,
        )

    def _emit_loop_trap(self, node):
        if self._instrumentation.loop_trap:
            self._emit(Opcode.LOOP_TRAP, node=node)

    # ── dispatchers ──────────────────────────────────────────────

    def _lower_scope(self, node):
        """Lower a program or function body, hoisting declarations first."""
        children = [
            c
            for c in node.children
            if c.is_named and c.type not in self.COMMENT_TYPES
        ]
        for child in children:
            if child.type in self.HOISTED_STMT_TYPES:
                self._lower_stmt(child)
        for child in children:
            if child.type not in self.HOISTED_STMT_TYPES:
                self._lower_stmt(child)

    def _lower_block(self, node):
        """Lower a block of statements.

        If *node* is itself a known statement whose handler is **not**
        ``_lower_block`` (e.g. a bare ``return_statement`` used as the
        consequence of an ``if``), it is lowered directly rather than
        iterating its children as sub-statements.
        """
        handler = self._STMT_DISPATCH.get(node.type)
        if (
            handler is not None
            and getattr(handler, "__func__", None) is not BaseFrontend._lower_block
        ):
            self._lower_stmt(node)
            return
        for child in node.children:
            if not child.is_named:
                continue
            self._lower_stmt(child)

    def _lower_stmt(self, node):
        ntype = node.type
        if ntype in self.COMMENT_TYPES or ntype in self.NOISE_TYPES:
            return
        if self._trace_statements and ntype not in self.UNTRACED_STMT_TYPES:
            self._emit_statement_prefix(node)
        handler = self._STMT_DISPATCH.get(ntype)
        if handler:
            handler(node)
            return
        # Fallback: try as expression
        self._lower_expr(node)

    def _lower_expr(self, node) -> str:
        """Lower an expression, return the register holding its value."""
        handler = self._EXPR_DISPATCH.get(node.type)
        if handler:
            return handler(node)
        return self._lower_unsupported(node)

    def _lower_unsupported(self, node) -> str:
        logger.debug("No lowering for node type %s", node.type)
        reg = self._fresh_reg()
        self._emit(
            Opcode.SYMBOLIC,
            result_reg=reg,
            operands=[f"{constants.UNSUPPORTED_PREFIX}{node.type}"],
            node=node,
        )
        return reg

    # ── common expression lowerers ───────────────────────────────

    def _lower_const_literal(self, node) -> str:
        reg = self._fresh_reg()
        self._emit(
            Opcode.CONST,
            result_reg=reg,
            operands=[self._node_text(node)],
            node=node,
        )
        return reg

    def _lower_identifier(self, node) -> str:
        reg = self._fresh_reg()
        self._emit(
            Opcode.LOAD_VAR,
            result_reg=reg,
            operands=[self._node_text(node)],
            node=node,
        )
        return reg

    def _lower_paren(self, node) -> str:
        inner = next(
            (c for c in node.children if c.type not in ("(", ")")),
            None,
        )
        if inner is None:
            return self._lower_const_literal(node)
        return self._lower_expr(inner)

    def _lower_binop(self, node) -> str:
        children = [c for c in node.children if c.type not in ("(", ")")]
        lhs_reg = self._lower_expr(children[0])
        op = self._node_text(children[1])
        rhs_reg = self._lower_expr(children[2])
        reg = self._fresh_reg()
        self._emit(
            Opcode.BINOP,
            result_reg=reg,
            operands=[op, lhs_reg, rhs_reg],
            node=node,
        )
        return reg

    def _lower_unop(self, node) -> str:
        children = [c for c in node.children if c.type not in ("(", ")")]
        op = self._node_text(children[0])
        operand_reg = self._lower_expr(children[1])
        reg = self._fresh_reg()
        self._emit(
            Opcode.UNOP,
            result_reg=reg,
            operands=[op, operand_reg],
            node=node,
        )
        return reg

    def _extract_call_args(self, args_node) -> list[str]:
        if args_node is None:
            return []
        return [
            self._lower_expr(c)
            for c in args_node.children
            if c.type not in ("(", ")", ",") and c.is_named
        ]

    # ── common statement lowerers ────────────────────────────────

    def _lower_return(self, node):
        children = [c for c in node.children if c.is_named]
        if children:
            val_reg = self._lower_expr(children[0])
        else:
            val_reg = self._emit_const(self.DEFAULT_RETURN_VALUE)
        self._emit(
            Opcode.RETURN,
            operands=[val_reg],
            node=node,
        )

    def _lower_if(self, node):
        cond_node = node.child_by_field_name(self.IF_CONDITION_FIELD)
        body_node = node.child_by_field_name(self.IF_CONSEQUENCE_FIELD)
        alt_node = node.child_by_field_name(self.IF_ALTERNATIVE_FIELD)

        cond_reg = self._lower_expr(cond_node)
        true_label = self._fresh_label("if_true")
        false_label = self._fresh_label("if_false")
        end_label = self._fresh_label("if_end")

        self._emit(
            Opcode.BRANCH_IF,
            operands=[cond_reg],
            label=f"{true_label},{false_label if alt_node else end_label}",
            node=node,
        )

        self._emit(Opcode.LABEL, label=true_label)
        self._lower_block(body_node)
        self._emit(Opcode.BRANCH, label=end_label)

        if alt_node:
            self._emit(Opcode.LABEL, label=false_label)
            self._lower_alternative(alt_node, end_label)
            self._emit(Opcode.BRANCH, label=end_label)

        self._emit(Opcode.LABEL, label=end_label)

    def _lower_alternative(self, alt_node, end_label: str):
        """Lower an else / else-if alternative block."""
        self._lower_block(alt_node)

    def _lower_break(self, node):
        """Lower break statement as BRANCH to its labelled or innermost break target."""
        label_node = node.child_by_field_name(self.LABEL_NAME_FIELD)
        if label_node is not None:
            target = self._label_targets.get(self._node_text(label_node), {})
            end_label = target.get("break_label")
        else:
            end_label = self._break_target_stack[-1] if self._break_target_stack else None
        if end_label is None:
            self._lower_unsupported(node)
            return
        self._emit(Opcode.BRANCH, label=end_label, node=node)

    def _lower_continue(self, node):
        """Lower continue statement as BRANCH to its labelled or innermost loop."""
        label_node = node.child_by_field_name(self.LABEL_NAME_FIELD)
        if label_node is not None:
            target = self._label_targets.get(self._node_text(label_node), {})
            continue_label = target.get("continue_label")
        elif self._loop_stack:
            continue_label = self._loop_stack[-1]["continue_label"]
        else:
            continue_label = None
        if continue_label is None:
            self._lower_unsupported(node)
            return
        self._emit(Opcode.BRANCH, label=continue_label, node=node)

    def _push_loop(self, continue_label: str, end_label: str):
        """Push a loop context onto both the loop stack and break target stack.

        Labels waiting on this loop (``outer: while ...``) now resolve to it.
        """
        self._loop_stack.append(
            {"continue_label": continue_label, "end_label": end_label}
        )
        self._break_target_stack.append(end_label)
        for name in self._pending_labels:
            self._label_targets[name] = {
                "break_label": end_label,
                "continue_label": continue_label,
            }
        self._pending_labels = []

    def _pop_loop(self):
        """Pop a loop context from both stacks."""
        self._loop_stack.pop()
        self._break_target_stack.pop()

    def _lower_labeled(self, node):
        """Lower ``name: statement``.

        A labelled loop takes ``break name`` and ``continue name``; any other
        labelled statement only takes ``break name``, which jumps past it.
        """
        name = self._node_text(node.child_by_field_name(self.LABEL_NAME_FIELD))
        body = node.child_by_field_name(self.LABEL_BODY_FIELD)
        saved = self._label_targets.get(name)
        end_label = None
        if body.type in self.LOOP_STMT_TYPES or body.type == node.type:
            self._pending_labels.append(name)
        else:
            end_label = self._fresh_label("label_end")
            self._label_targets[name] = {"break_label": end_label, "continue_label": None}

        # Dispatch directly so the statement is highlighted once, at its label
        handler = self._STMT_DISPATCH.get(body.type)
        if handler:
            handler(body)
        else:
            self._lower_expr(body)

        if name in self._pending_labels:
            self._pending_labels.remove(name)
        if end_label is not None:
            self._emit(Opcode.LABEL, label=end_label)
        self._label_targets.pop(name, None)
        if saved is not None:
            self._label_targets[name] = saved

    def _lower_while(self, node):
        cond_node = node.child_by_field_name(self.WHILE_CONDITION_FIELD)
        body_node = node.child_by_field_name(self.WHILE_BODY_FIELD)

        loop_label = self._fresh_label("while_cond")
        body_label = self._fresh_label("while_body")
        end_label = self._fresh_label("while_end")

        self._emit(Opcode.LABEL, label=loop_label)
        cond_reg = self._lower_expr(cond_node)
        self._emit(
            Opcode.BRANCH_IF,
            operands=[cond_reg],
            label=f"{body_label},{end_label}",
            node=node,
        )

        self._emit(Opcode.LABEL, label=body_label)
        self._emit_loop_trap(node)
        self._push_loop(loop_label, end_label)
        self._lower_block(body_node)
        self._pop_loop()
        self._emit(Opcode.BRANCH, label=loop_label)

        self._emit(Opcode.LABEL, label=end_label)

    def _lower_function_body(self, func_name: str, params_node, body_node) -> str:
        """Emit a function body out of line and return a register holding its reference."""
        func_label = self._fresh_label(f"{constants.FUNC_LABEL_PREFIX}{func_name}")
        end_label = self._fresh_label(f"end_{func_name}")

        self._emit(Opcode.BRANCH, label=end_label)
        self._emit(Opcode.LABEL, label=func_label)

        if params_node:
            self._lower_params(params_node)

        saved_loops = (
            self._loop_stack,
            self._break_target_stack,
            self._label_targets,
            self._pending_labels,
        )
        self._loop_stack, self._break_target_stack = [], []
        self._label_targets, self._pending_labels = {}, []
        if body_node is not None and body_node.type in self.BLOCK_TYPES:
            self._lower_scope(body_node)
        elif body_node is not None:
            # Expression body: implicit return
            self._emit(Opcode.RETURN, operands=[self._lower_expr(body_node)])
        (
            self._loop_stack,
            self._break_target_stack,
            self._label_targets,
            self._pending_labels,
        ) = saved_loops

        # Implicit return at end of function
        none_reg = self._emit_const(self.DEFAULT_RETURN_VALUE)
        self._emit(Opcode.RETURN, operands=[none_reg])

        self._emit(Opcode.LABEL, label=end_label)

        return self._emit_const(
            constants.FUNC_REF_TEMPLATE.format(name=func_name, label=func_label)
        )

    def _lower_function_def(self, node):
        name_node = node.child_by_field_name(self.FUNC_NAME_FIELD)
        params_node = node.child_by_field_name(self.FUNC_PARAMS_FIELD)
        body_node = node.child_by_field_name(self.FUNC_BODY_FIELD)

        func_name = self._node_text(name_node)
        func_reg = self._lower_function_body(func_name, params_node, body_node)
        self._emit(Opcode.DECLARE_VAR, operands=[func_name, func_reg], node=node)

    def _lower_params(self, params_node):
        """Lower function parameters. Override for language-specific param shapes."""
        for child in params_node.children:
            self._lower_param(child)

    def _lower_param(self, child):
        """Lower a single function parameter to SYMBOLIC + DECLARE_VAR."""
        if child.type in ("(", ")", ",", ":", "->"):
            return
        pname = self._extract_param_name(child)
        if pname is None:
            return
        reg = self._fresh_reg()
        self._emit(
            Opcode.SYMBOLIC,
            result_reg=reg,
            operands=[f"{constants.PARAM_PREFIX}{pname}"],
            node=child,
        )
        self._emit(Opcode.DECLARE_VAR, operands=[pname, reg])

    def _extract_param_name(self, child) -> str | None:
        """Extract parameter name from a parameter node. Override per language."""
        if child.type == "identifier":
            return self._node_text(child)
        for field in ("name", "pattern", "left"):
            name_node = child.child_by_field_name(field)
            if name_node is not None and name_node.type == "identifier":
                return self._node_text(name_node)
        return None

    def _lower_raise_or_throw(self, node, keyword: str = "throw"):
        children = [c for c in node.children if c.is_named and c.type != keyword]
        if children:
            val_reg = self._lower_expr(children[0])
        else:
            val_reg = self._emit_const(self.DEFAULT_RETURN_VALUE)
        self._emit(
            Opcode.THROW,
            operands=[val_reg],
            node=node,
        )

    def _lower_list_literal(self, node) -> str:
        elems = [c for c in node.children if c.is_named and c.type not in self.COMMENT_TYPES]
        arr_reg = self._fresh_reg()
        size_reg = self._emit_const(str(len(elems)))
        self._emit(
            Opcode.NEW_ARRAY,
            result_reg=arr_reg,
            operands=["array", size_reg],
            node=node,
        )
        for i, elem in enumerate(elems):
            val_reg = self._lower_expr(elem)
            idx_reg = self._emit_const(str(i))
            self._emit(Opcode.STORE_INDEX, operands=[arr_reg, idx_reg, val_reg])
        return arr_reg

    def _lower_expression_statement(self, node):
        """Lower an expression statement (unwrap and lower the inner expr)."""
        for child in node.children:
            if child.is_named and child.type not in self.COMMENT_TYPES:
                self._lower_expr(child)
                return
