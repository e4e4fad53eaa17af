"""JavaScriptFrontend: tree-sitter JavaScript AST → IR lowering."""

from __future__ import annotations

import json
from typing import Callable

from ._base import BaseFrontend
from ..instrument import Instrumentation
from ..ir import Opcode
from .. import constants

_DECLARATION_TYPES = ("lexical_declaration", "variable_declaration")
_SHORT_CIRCUIT_OPS = ("&&", "||")


class JavaScriptFrontend(BaseFrontend):
    """Lowers a JavaScript tree-sitter AST into flattened TAC IR.

    Covers the sloppy-mode subset Blockly's JavaScript generator emits:
    ``var`` declarations, functions, loops, conditionals, arrays, plain
    objects and calls into host capabilities.
    """

    NONE_LITERAL = "undefined"
    DEFAULT_RETURN_VALUE = "undefined"

    IF_CONDITION_FIELD = "condition"
    IF_CONSEQUENCE_FIELD = "consequence"
    IF_ALTERNATIVE_FIELD = "alternative"

    BLOCK_TYPES = frozenset({"statement_block"})
    COMMENT_TYPES = frozenset({"comment"})
    NOISE_TYPES = frozenset({"\n", "empty_statement"})
    UNTRACED_STMT_TYPES = frozenset(
        {"statement_block", "function_declaration", "empty_statement"}
    )
    HOISTED_STMT_TYPES = frozenset({"function_declaration"})
    LOOP_STMT_TYPES = frozenset(
        {"while_statement", "for_statement", "for_in_statement", "do_statement"}
    )

    def __init__(
        self,
        instrumentation: Instrumentation = Instrumentation(),
        entry_id: str = "",
    ):
        super().__init__(instrumentation, entry_id)
        self._EXPR_DISPATCH: dict[str, Callable] = {
            "identifier": self._lower_identifier,
            "number": self._lower_const_literal,
            "string": self._lower_const_literal,
            "true": self._lower_const_literal,
            "false": self._lower_const_literal,
            "null": self._lower_const_literal,
            "undefined": self._lower_const_literal,
            "binary_expression": self._lower_js_binop,
            "augmented_assignment_expression": self._lower_augmented_assignment,
            "unary_expression": self._lower_unop,
            "update_expression": self._lower_update_expr,
            "call_expression": self._lower_call,
            "new_expression": self._lower_new_expression,
            "member_expression": self._lower_attribute,
            "subscript_expression": self._lower_js_subscript,
            "parenthesized_expression": self._lower_paren,
            "array": self._lower_list_literal,
            "object": self._lower_js_object_literal,
            "assignment_expression": self._lower_assignment_expr,
            "arrow_function": self._lower_function_expression,
            "function": self._lower_function_expression,
            "function_expression": self._lower_function_expression,
            "ternary_expression": self._lower_ternary,
            "await_expression": self._lower_await_expression,
            "sequence_expression": self._lower_sequence_expression,
        }
        self._STMT_DISPATCH: dict[str, Callable] = {
            "expression_statement": self._lower_expression_statement,
            "lexical_declaration": self._lower_var_declaration,
            "variable_declaration": self._lower_var_declaration,
            "return_statement": self._lower_return,
            "if_statement": self._lower_if,
            "while_statement": self._lower_while,
            "for_statement": self._lower_c_style_for,
            "for_in_statement": self._lower_for_in,
            "do_statement": self._lower_do_statement,
            "function_declaration": self._lower_function_def,
            "throw_statement": self._lower_throw,
            "statement_block": self._lower_block,
            "break_statement": self._lower_break,
            "continue_statement": self._lower_continue,
            "labeled_statement": self._lower_labeled,
        }

    # ── declarations ─────────────────────────────────────────────

    def _lower_var_declaration(self, node):
        """Lower ``var``/``let``/``const`` declarators into the current scope."""
        for child in node.children:
            if child.type != "variable_declarator":
                continue
            name_node = child.child_by_field_name("name")
            value_node = child.child_by_field_name("value")
            if name_node is None or name_node.type != "identifier":
                self._lower_unsupported(child)
                continue
            name = self._node_text(name_node)
            if value_node is None:
                # Redeclaration without initialiser keeps an existing binding
                self._emit(Opcode.DECLARE_VAR, operands=[name], node=child)
                continue
            if value_node.type in ("function_expression", "function", "arrow_function"):
                val_reg = self._lower_function_expression(value_node, name)
            else:
                val_reg = self._lower_expr(value_node)
            self._emit(Opcode.DECLARE_VAR, operands=[name, val_reg], node=child)

    def _lower_params(self, params_node):
        if params_node.type == "identifier":
            self._lower_param(params_node)
            return
        super()._lower_params(params_node)

    # ── member access ────────────────────────────────────────────

    def _lower_attribute(self, node) -> str:
        obj_node = node.child_by_field_name("object")
        prop_node = node.child_by_field_name("property")
        obj_reg = self._lower_expr(obj_node)
        reg = self._fresh_reg()
        self._emit(
            Opcode.LOAD_FIELD,
            result_reg=reg,
            operands=[obj_reg, self._node_text(prop_node)],
            node=node,
        )
        return reg

    def _lower_js_subscript(self, node) -> str:
        obj_node = node.child_by_field_name("object")
        idx_node = node.child_by_field_name("index")
        obj_reg = self._lower_expr(obj_node)
        idx_reg = self._lower_expr(idx_node)
        reg = self._fresh_reg()
        self._emit(
            Opcode.LOAD_INDEX,
            result_reg=reg,
            operands=[obj_reg, idx_reg],
            node=node,
        )
        return reg

    # ── calls ────────────────────────────────────────────────────

    def _lower_call(self, node) -> str:
        func_node = node.child_by_field_name("function")
        args_node = node.child_by_field_name("arguments")

        if func_node.type == "member_expression":
            obj_node = func_node.child_by_field_name("object")
            prop_node = func_node.child_by_field_name("property")
            obj_reg = self._lower_expr(obj_node)
            arg_regs = self._extract_call_args(args_node)
            reg = self._fresh_reg()
            self._emit(
                Opcode.CALL_METHOD,
                result_reg=reg,
                operands=[obj_reg, self._node_text(prop_node)] + arg_regs,
                node=node,
            )
            return reg

        if func_node.type == "identifier":
            arg_regs = self._extract_call_args(args_node)
            reg = self._fresh_reg()
            self._emit(
                Opcode.CALL_FUNCTION,
                result_reg=reg,
                operands=[self._node_text(func_node)] + arg_regs,
                node=node,
            )
            return reg

        target_reg = self._lower_expr(func_node)
        arg_regs = self._extract_call_args(args_node)
        reg = self._fresh_reg()
        self._emit(
            Opcode.CALL_UNKNOWN,
            result_reg=reg,
            operands=[target_reg] + arg_regs,
            node=node,
        )
        return reg

    def _lower_new_expression(self, node) -> str:
        """Lower ``new Error(msg)`` and friends as calls to the built-in constructor."""
        constructor_node = node.child_by_field_name("constructor")
        if constructor_node is None or constructor_node.type != "identifier":
            return self._lower_unsupported(node)
        arg_regs = self._extract_call_args(node.child_by_field_name("arguments"))
        reg = self._fresh_reg()
        self._emit(
            Opcode.CALL_FUNCTION,
            result_reg=reg,
            operands=[self._node_text(constructor_node)] + arg_regs,
            node=node,
        )
        return reg

    def _lower_await_expression(self, node) -> str:
        # Blocking capabilities suspend the engine on their own
        children = [c for c in node.children if c.is_named]
        return self._lower_expr(children[0])

    def _lower_sequence_expression(self, node) -> str:
        """Lower ``a, b, c`` → evaluate all, return last register."""
        last_reg = ""
        for child in node.children:
            if child.is_named:
                last_reg = self._lower_expr(child)
        return last_reg

    # ── assignment ───────────────────────────────────────────────

    def _lower_store_target(self, target, val_reg: str, parent_node):
        if target.type == "identifier":
            self._emit(
                Opcode.STORE_VAR,
                operands=[self._node_text(target), val_reg],
                node=parent_node,
            )
        elif target.type == "member_expression":
            obj_reg = self._lower_expr(target.child_by_field_name("object"))
            prop_node = target.child_by_field_name("property")
            self._emit(
                Opcode.STORE_FIELD,
                operands=[obj_reg, self._node_text(prop_node), val_reg],
                node=parent_node,
            )
        elif target.type == "subscript_expression":
            obj_reg = self._lower_expr(target.child_by_field_name("object"))
            idx_reg = self._lower_expr(target.child_by_field_name("index"))
            self._emit(
                Opcode.STORE_INDEX,
                operands=[obj_reg, idx_reg, val_reg],
                node=parent_node,
            )
        elif target.type == "parenthesized_expression":
            inner = next(c for c in target.children if c.is_named)
            self._lower_store_target(inner, val_reg, parent_node)
        else:
            self._lower_unsupported(target)

    def _lower_assignment_expr(self, node) -> str:
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        if right.type in ("function_expression", "function", "arrow_function") and (
            left.type == "identifier"
        ):
            val_reg = self._lower_function_expression(right, self._node_text(left))
        else:
            val_reg = self._lower_expr(right)
        self._lower_store_target(left, val_reg, node)
        return val_reg

    def _lower_augmented_assignment(self, node) -> str:
        """Lower ``x += y`` as read, binop, write back."""
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        op_node = node.child_by_field_name("operator")
        op_text = (
            self._node_text(op_node)
            if op_node is not None
            else next(self._node_text(c) for c in node.children if not c.is_named)
        )
        cur_reg = self._lower_expr(left)
        rhs_reg = self._lower_expr(right)
        result_reg = self._fresh_reg()
        self._emit(
            Opcode.BINOP,
            result_reg=result_reg,
            operands=[op_text[:-1], cur_reg, rhs_reg],
            node=node,
        )
        self._lower_store_target(left, result_reg, node)
        return result_reg

    def _lower_update_expr(self, node) -> str:
        """Lower ``i++`` / ``--i``; the postfix form yields the old value."""
        operand = next(c for c in node.children if c.is_named)
        is_postfix = node.children[0].is_named
        op = "+" if "++" in self._node_text(node) else "-"

        cur_reg = self._lower_expr(operand)
        old_reg = self._fresh_reg()
        self._emit(Opcode.UNOP, result_reg=old_reg, operands=["+", cur_reg])
        one_reg = self._emit_const("1")
        new_reg = self._fresh_reg()
        self._emit(
            Opcode.BINOP,
            result_reg=new_reg,
            operands=[op, old_reg, one_reg],
            node=node,
        )
        self._lower_store_target(operand, new_reg, node)
        return old_reg if is_postfix else new_reg

    # ── operators ────────────────────────────────────────────────

    def _lower_js_binop(self, node) -> str:
        op_node = node.child_by_field_name("operator")
        if op_node is None or self._node_text(op_node) not in _SHORT_CIRCUIT_OPS:
            return self._lower_binop(node)
        return self._lower_short_circuit(node, self._node_text(op_node))

    def _lower_short_circuit(self, node, op: str) -> str:
        """Lower ``a && b`` / ``a || b`` so the right side only runs when needed."""
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        result_var = self._fresh_temp("logical")
        rhs_label = self._fresh_label("logic_rhs")
        end_label = self._fresh_label("logic_end")

        lhs_reg = self._lower_expr(left)
        self._emit(Opcode.DECLARE_VAR, operands=[result_var, lhs_reg])
        targets = (
            f"{rhs_label},{end_label}" if op == "&&" else f"{end_label},{rhs_label}"
        )
        self._emit(Opcode.BRANCH_IF, operands=[lhs_reg], label=targets, node=node)

        self._emit(Opcode.LABEL, label=rhs_label)
        rhs_reg = self._lower_expr(right)
        self._emit(Opcode.DECLARE_VAR, operands=[result_var, rhs_reg])
        self._emit(Opcode.BRANCH, label=end_label)

        self._emit(Opcode.LABEL, label=end_label)
        result_reg = self._fresh_reg()
        self._emit(Opcode.LOAD_VAR, result_reg=result_reg, operands=[result_var])
        return result_reg

    def _lower_ternary(self, node) -> str:
        cond_node = node.child_by_field_name("condition")
        true_node = node.child_by_field_name("consequence")
        false_node = node.child_by_field_name("alternative")

        cond_reg = self._lower_expr(cond_node)
        true_label = self._fresh_label("ternary_true")
        false_label = self._fresh_label("ternary_false")
        end_label = self._fresh_label("ternary_end")
        result_var = self._fresh_temp("ternary")

        self._emit(
            Opcode.BRANCH_IF,
            operands=[cond_reg],
            label=f"{true_label},{false_label}",
            node=node,
        )

        self._emit(Opcode.LABEL, label=true_label)
        true_reg = self._lower_expr(true_node)
        self._emit(Opcode.DECLARE_VAR, operands=[result_var, true_reg])
        self._emit(Opcode.BRANCH, label=end_label)

        self._emit(Opcode.LABEL, label=false_label)
        false_reg = self._lower_expr(false_node)
        self._emit(Opcode.DECLARE_VAR, operands=[result_var, false_reg])
        self._emit(Opcode.BRANCH, label=end_label)

        self._emit(Opcode.LABEL, label=end_label)
        result_reg = self._fresh_reg()
        self._emit(Opcode.LOAD_VAR, result_reg=result_reg, operands=[result_var])
        return result_reg

    # ── literals ─────────────────────────────────────────────────

    def _lower_js_object_literal(self, node) -> str:
        obj_reg = self._fresh_reg()
        self._emit(
            Opcode.NEW_OBJECT,
            result_reg=obj_reg,
            operands=["object"],
            node=node,
        )
        for child in node.children:
            if child.type == "pair":
                key_node = child.child_by_field_name("key")
                val_node = child.child_by_field_name("value")
                if key_node.type in ("property_identifier", "identifier"):
                    key_reg = self._emit_const(json.dumps(self._node_text(key_node)))
                else:
                    key_reg = self._lower_const_literal(key_node)
                val_reg = self._lower_expr(val_node)
                self._emit(Opcode.STORE_INDEX, operands=[obj_reg, key_reg, val_reg])
            elif child.type == "shorthand_property_identifier":
                key_reg = self._emit_const(json.dumps(self._node_text(child)))
                val_reg = self._lower_identifier(child)
                self._emit(Opcode.STORE_INDEX, operands=[obj_reg, key_reg, val_reg])
        return obj_reg

    def _lower_function_expression(self, node, binding_name: str = "") -> str:
        name_node = node.child_by_field_name("name")
        if name_node is not None:
            func_name = self._node_text(name_node)
        else:
            func_name = binding_name or f"__anon_{self._label_counter}"
        params_node = node.child_by_field_name("parameters")
        if params_node is None:
            params_node = node.child_by_field_name("parameter")
        body_node = node.child_by_field_name("body")
        return self._lower_function_body(func_name, params_node, body_node)

    # ── loops ────────────────────────────────────────────────────

    def _for_clause(self, node, field: str):
        clause = node.child_by_field_name(field)
        if clause is None or clause.type in ("empty_statement", ";"):
            return None
        if clause.type == "expression_statement":
            return next((c for c in clause.children if c.is_named), None)
        return clause

    def _lower_c_style_for(self, node):
        """Lower ``for (init; cond; update) body``."""
        init_node = self._for_clause(node, "initializer")
        cond_node = self._for_clause(node, "condition")
        update_node = node.child_by_field_name("increment")
        if update_node is None:
            update_node = node.child_by_field_name("update")
        body_node = node.child_by_field_name("body")

        if init_node is not None:
            if init_node.type in _DECLARATION_TYPES:
                self._lower_var_declaration(init_node)
            else:
                self._lower_expr(init_node)

        loop_label = self._fresh_label("for_cond")
        body_label = self._fresh_label("for_body")
        end_label = self._fresh_label("for_end")

        self._emit(Opcode.LABEL, label=loop_label)
        if cond_node is not None:
            cond_reg = self._lower_expr(cond_node)
            self._emit(
                Opcode.BRANCH_IF,
                operands=[cond_reg],
                label=f"{body_label},{end_label}",
                node=node,
            )
        else:
            self._emit(Opcode.BRANCH, label=body_label)

        self._emit(Opcode.LABEL, label=body_label)
        self._emit_loop_trap(node)
        update_label = self._fresh_label("for_update") if update_node else loop_label
        self._push_loop(update_label, end_label)
        self._lower_block(body_node)
        self._pop_loop()
        if update_node:
            self._emit(Opcode.LABEL, label=update_label)
            self._lower_expr(update_node)
        self._emit(Opcode.BRANCH, label=loop_label)

        self._emit(Opcode.LABEL, label=end_label)

    def _lower_for_in(self, node):
        """Lower ``for (x in obj)`` / ``for (x of seq)`` as an index-based loop."""
        operator_node = node.child_by_field_name("operator")
        is_for_of = operator_node is not None and self._node_text(operator_node) == "of"
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        body_node = node.child_by_field_name("body")

        var_name = self._extract_var_name(left)
        declares = (
            node.child_by_field_name("kind") is not None
            or left.type in _DECLARATION_TYPES
        )

        seq_reg = self._lower_expr(right)
        if not is_for_of:
            keys_reg = self._fresh_reg()
            self._emit(
                Opcode.CALL_FUNCTION,
                result_reg=keys_reg,
                operands=["__keys", seq_reg],
                node=node,
            )
            seq_reg = keys_reg
        seq_var = self._fresh_temp("for_seq")
        idx_var = self._fresh_temp("for_idx")
        self._emit(Opcode.DECLARE_VAR, operands=[seq_var, seq_reg])
        self._emit(Opcode.DECLARE_VAR, operands=[idx_var, self._emit_const("0")])

        loop_label = self._fresh_label("for_in_cond")
        body_label = self._fresh_label("for_in_body")
        update_label = self._fresh_label("for_in_update")
        end_label = self._fresh_label("for_in_end")

        self._emit(Opcode.LABEL, label=loop_label)
        idx_reg = self._fresh_reg()
        self._emit(Opcode.LOAD_VAR, result_reg=idx_reg, operands=[idx_var])
        cur_seq = self._fresh_reg()
        self._emit(Opcode.LOAD_VAR, result_reg=cur_seq, operands=[seq_var])
        len_reg = self._fresh_reg()
        self._emit(Opcode.LOAD_FIELD, result_reg=len_reg, operands=[cur_seq, "length"])
        cond_reg = self._fresh_reg()
        self._emit(Opcode.BINOP, result_reg=cond_reg, operands=["<", idx_reg, len_reg])
        self._emit(
            Opcode.BRANCH_IF,
            operands=[cond_reg],
            label=f"{body_label},{end_label}",
            node=node,
        )

        self._emit(Opcode.LABEL, label=body_label)
        self._emit_loop_trap(node)
        elem_reg = self._fresh_reg()
        self._emit(Opcode.LOAD_INDEX, result_reg=elem_reg, operands=[cur_seq, idx_reg])
        if var_name:
            store = Opcode.DECLARE_VAR if declares else Opcode.STORE_VAR
            self._emit(store, operands=[var_name, elem_reg])

        self._push_loop(update_label, end_label)
        self._lower_block(body_node)
        self._pop_loop()

        self._emit(Opcode.LABEL, label=update_label)
        next_idx = self._fresh_reg()
        self._emit(Opcode.LOAD_VAR, result_reg=next_idx, operands=[idx_var])
        one_reg = self._emit_const("1")
        new_idx = self._fresh_reg()
        self._emit(Opcode.BINOP, result_reg=new_idx, operands=["+", next_idx, one_reg])
        self._emit(Opcode.DECLARE_VAR, operands=[idx_var, new_idx])
        self._emit(Opcode.BRANCH, label=loop_label)

        self._emit(Opcode.LABEL, label=end_label)

    def _extract_var_name(self, node) -> str | None:
        """Extract variable name from a declaration or identifier."""
        if node.type == "identifier":
            return self._node_text(node)
        if node.type in _DECLARATION_TYPES:
            for child in node.children:
                if child.type == "variable_declarator":
                    name_node = child.child_by_field_name("name")
                    if name_node:
                        return self._node_text(name_node)
        return None

    def _lower_do_statement(self, node):
        """Lower do { body } while (cond)."""
        body_node = node.child_by_field_name("body")
        cond_node = node.child_by_field_name("condition")

        body_label = self._fresh_label("do_body")
        cond_label = self._fresh_label("do_cond")
        end_label = self._fresh_label("do_end")

        self._emit(Opcode.LABEL, label=body_label)
        self._emit_loop_trap(node)

        self._push_loop(cond_label, end_label)
        self._lower_block(body_node)
        self._pop_loop()

        self._emit(Opcode.LABEL, label=cond_label)
        cond_reg = self._lower_expr(cond_node)
        self._emit(
            Opcode.BRANCH_IF,
            operands=[cond_reg],
            label=f"{body_label},{end_label}",
            node=node,
        )
        self._emit(Opcode.LABEL, label=end_label)

    # ── misc statements ──────────────────────────────────────────

    def _lower_throw(self, node):
        self._lower_raise_or_throw(node, keyword="throw")

    def _lower_alternative(self, alt_node, end_label: str):
        if alt_node.type == "else_clause":
            for child in alt_node.children:
                if child.is_named:
                    self._lower_stmt(child)
        else:
            self._lower_block(alt_node)
