"""Code instrumentation: loop guards, statement tracing and async propagation.

The interpreter dialect is instrumented while lowering (see
``frontends._base``); this module holds the switches for that and the
source-to-source passes used to prepare code for a native JavaScript runtime.
Both native passes work on the tree-sitter parse tree, never on regexes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from . import constants
from .parser import parse_javascript
from .run_types import Dialect

logger = logging.getLogger(__name__)

_LOOP_TYPES = frozenset(
    {"for_statement", "for_in_statement", "while_statement", "do_statement"}
)
_STATEMENT_LISTS = frozenset({"program", "statement_block", "switch_case", "switch_default"})
_FUNCTION_TYPES = frozenset(
    {
        "function_declaration",
        "function_expression",
        "function",
        "arrow_function",
        "generator_function_declaration",
        "method_definition",
    }
)


@dataclass(frozen=True)
class Instrumentation:
    """Which hooks the frontend weaves into lowered code."""

    loop_trap: bool = True
    statement_prefix: bool = True
    highlight_function: str = constants.CAP_HIGHLIGHT_BLOCK


def _text(source: bytes, node) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8")


def _key(node) -> tuple[int, int, str]:
    return (node.start_byte, node.end_byte, node.type)


def _line_indent(source: bytes, offset: int) -> str:
    line_start = source.rfind(b"\n", 0, offset) + 1
    prefix = source[line_start:offset].decode("utf-8")
    return prefix[: len(prefix) - len(prefix.lstrip())]


# ── loop guards ──────────────────────────────────────────────────


class _LoopGuardRewriter:
    def __init__(self, source: bytes, limit: int):
        self._source = source
        self._limit = limit
        existing = [
            int(n)
            for n in re.findall(
                rf"{constants.NATIVE_GUARD_PREFIX}(\d+)", source.decode("utf-8")
            )
        ]
        self._counter = max(existing) + 1 if existing else 0
        self.guards = 0

    def render(self, node) -> str:
        if self._is_guard_site(node):
            return self._render_guarded(node)
        return self._splice(node, {})

    def _splice(self, node, overrides: dict) -> str:
        if not node.children:
            return _text(self._source, node)
        out: list[str] = []
        pos = node.start_byte
        for child in node.children:
            out.append(self._source[pos : child.start_byte].decode("utf-8"))
            override = overrides.get(_key(child))
            out.append(override if override is not None else self.render(child))
            pos = child.end_byte
        out.append(self._source[pos : node.end_byte].decode("utf-8"))
        return "".join(out)

    def _is_guard_site(self, node) -> bool:
        if node.type == "labeled_statement":
            return self._labeled_loop(node) is not None
        return node.type in _LOOP_TYPES and (
            node.parent is None or node.parent.type != "labeled_statement"
        )

    def _labeled_loop(self, node):
        body = node.child_by_field_name("body")
        if body is not None and body.type in _LOOP_TYPES:
            return body
        return next((c for c in node.named_children if c.type in _LOOP_TYPES), None)

    def _render_guarded(self, stmt) -> str:
        guard = f"{constants.NATIVE_GUARD_PREFIX}{self._counter}"
        self._counter += 1
        self.guards += 1

        loop = self._labeled_loop(stmt) if stmt.type == "labeled_statement" else stmt
        body = loop.child_by_field_name("body")
        indent = _line_indent(self._source, stmt.start_byte)
        loop_text = self._splice(loop, {_key(body): self._guard_body(body, guard, indent)})
        text = (
            self._splice(stmt, {_key(loop): loop_text}) if stmt is not loop else loop_text
        )

        decl = f"let {guard} = 0;"
        if stmt.parent is not None and stmt.parent.type in _STATEMENT_LISTS:
            return f"{decl}\n{indent}{text}"
        return f"{{ {decl} {text} }}"

    def _guard_body(self, body, guard: str, indent: str) -> str:
        check = (
            f"if (++{guard} > {self._limit}) "
            f"throw new Error('{constants.INFINITE_LOOP_MESSAGE}');"
        )
        rendered = self.render(body)
        if body.type == "statement_block" and rendered.startswith("{"):
            return "{\n" + indent + "  " + check + rendered[1:]
        return "{ " + check + " " + rendered + " }"


def inject_loop_guards(source: str, limit: int = constants.NATIVE_LOOP_LIMIT) -> str:
    """Give every loop its own ``__loopGuardN`` counter and a ceiling check.

    Counters are numbered in source order, outer loops first, so nested loops
    never share a name. A loop may run *limit* iterations; the next one throws
    ``Error('INFINITE_LOOP_DETECTED')``.
    """
    tree = parse_javascript(source)
    rewriter = _LoopGuardRewriter(source.encode("utf-8"), limit)
    result = rewriter.render(tree.root_node)
    logger.debug("Injected %d loop guards (limit %d)", rewriter.guards, limit)
    return result


# ── async propagation ────────────────────────────────────────────

# Marks a name with no declaration in any enclosing scope.
_UNBOUND = object()


def _enclosing_function(node):
    parent = node.parent
    while parent is not None:
        if parent.type in _FUNCTION_TYPES:
            return parent
        parent = parent.parent
    return None


def _scope_key(node) -> tuple | None:
    """Key of the function scope *node* lives in; ``None`` for the program."""
    owner = _enclosing_function(node)
    return _key(owner) if owner is not None else None


def _walk(root):
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def _is_async(node) -> bool:
    return any(c.type == "async" for c in node.children)


def _is_awaited(call) -> bool:
    parent = call.parent
    while parent is not None and parent.type == "parenthesized_expression":
        parent = parent.parent
    return parent is not None and parent.type == "await_expression"


def _method_name(source: bytes, fn) -> str | None:
    """Property name of an object or class method, else ``None``."""
    if fn.type == "method_definition":
        return _text(source, fn.child_by_field_name("name"))
    parent = fn.parent
    if parent is not None and parent.type == "pair":
        key = parent.child_by_field_name("key")
        if key is not None and key.type in ("property_identifier", "string"):
            return _text(source, key).strip("'\"")
    return None


def _parameter_names(source: bytes, fn) -> list[str]:
    single = fn.child_by_field_name("parameter")
    if single is not None:
        return [_text(source, single)] if single.type == "identifier" else []
    params = fn.child_by_field_name("parameters")
    if params is None:
        return []
    names = []
    for child in params.named_children:
        if child.type == "assignment_pattern":
            child = child.child_by_field_name("left")
        if child is not None and child.type == "identifier":
            names.append(_text(source, child))
    return names


class _Scopes:
    """Function-scoped name bindings: a function key, or ``None`` for any other value."""

    def __init__(self):
        self.bindings: dict[tuple, tuple | None] = {}

    def bind(self, scope: tuple | None, name: str, target: tuple | None):
        if target is None:
            self.bindings.setdefault((scope, name), None)
        else:
            self.bindings[(scope, name)] = target

    def declaring_scope(self, name: str, node) -> tuple | None:
        owner = _enclosing_function(node)
        while owner is not None:
            if (_key(owner), name) in self.bindings:
                return _key(owner)
            owner = _enclosing_function(owner)
        return None

    def resolve(self, name: str, node):
        scope = self.declaring_scope(name, node)
        return self.bindings.get((scope, name), _UNBOUND)


def propagate_async(
    source: str, blocking: tuple[str, ...] = tuple(constants.BLOCKING_CAPABILITIES)
) -> str:
    """Mark functions that (transitively) block as ``async`` and await their calls.

    Promotion iterates to a fixpoint: a function becomes async when it calls a
    blocking capability, calls an already-promoted function, or already awaits
    something. Plain calls are resolved against the nearest enclosing
    declaration of the callee, so a local function shadowing a promoted one
    stays synchronous. Method calls (``o.m()``) are matched by method name.
    Calls that are already awaited and functions already declared ``async``
    are left alone, so the pass can safely run more than once.
    """
    src = source.encode("utf-8")
    tree = parse_javascript(source)

    functions: dict[tuple, object] = {}
    methods: dict[tuple, str] = {}
    scopes = _Scopes()
    assignments: list[tuple[str, object, tuple]] = []
    call_nodes: list[tuple[object, object]] = []
    awaits: set[tuple] = set()

    for node in _walk(tree.root_node):
        if node.type in _FUNCTION_TYPES:
            key = _key(node)
            functions[key] = node
            for param in _parameter_names(src, node):
                scopes.bind(key, param, None)
            method = _method_name(src, node)
            name_node = node.child_by_field_name("name")
            if method is not None:
                methods[key] = method
            elif name_node is not None and node.type.endswith("_declaration"):
                scopes.bind(_scope_key(node), _text(src, name_node), key)
            elif name_node is not None:
                scopes.bind(key, _text(src, name_node), key)
        elif node.type == "variable_declarator":
            name_node = node.child_by_field_name("name")
            if name_node is None or name_node.type != "identifier":
                continue
            value = node.child_by_field_name("value")
            is_function = value is not None and value.type in _FUNCTION_TYPES
            target = _key(value) if is_function else None
            scopes.bind(_scope_key(node), _text(src, name_node), target)
        elif node.type == "assignment_expression":
            left = node.child_by_field_name("left")
            right = node.child_by_field_name("right")
            if left is not None and left.type == "identifier" and right is not None:
                if right.type in _FUNCTION_TYPES:
                    assignments.append((_text(src, left), node, _key(right)))
        elif node.type == "call_expression":
            callee = node.child_by_field_name("function")
            if callee is not None and callee.type in ("identifier", "member_expression"):
                call_nodes.append((node, callee))
        elif node.type == "await_expression":
            owner = _enclosing_function(node)
            if owner is not None:
                awaits.add(_key(owner))

    for name, node, target in assignments:
        scopes.bind(scopes.declaring_scope(name, node), name, target)

    # (call, owner, resolved target or method name, is_method)
    calls: list[tuple[object, tuple | None, object, bool]] = []
    for node, callee in call_nodes:
        owner = _scope_key(node)
        if callee.type == "identifier":
            name = _text(src, callee)
            target = scopes.resolve(name, node)
            if target is _UNBOUND:
                target = name if name in blocking else None
            calls.append((node, owner, target, False))
        else:
            prop = callee.child_by_field_name("property")
            if prop is not None:
                calls.append((node, owner, _text(src, prop), True))

    promoted: set[tuple] = {k for k, fn in functions.items() if _is_async(fn)} | awaits

    def blocks(target, is_method: bool) -> bool:
        if is_method:
            return any(methods.get(k) == target for k in promoted)
        return target is not None and (target in promoted or target in blocking)

    changed = True
    while changed:
        changed = False
        for _call, owner, target, is_method in calls:
            if owner is None or owner in promoted or not blocks(target, is_method):
                continue
            promoted.add(owner)
            changed = True

    insertions: list[tuple[int, str]] = []
    for key in promoted:
        fn = functions[key]
        if not _is_async(fn):
            insertions.append((fn.start_byte, "async "))
    for call, _owner, target, is_method in calls:
        if blocks(target, is_method) and not _is_awaited(call):
            insertions.append((call.start_byte, "await "))

    result = src
    for offset, text in sorted(insertions, key=lambda item: item[0], reverse=True):
        result = result[:offset] + text.encode("utf-8") + result[offset:]

    logger.debug(
        "Async propagation promoted %d functions, %d edits",
        len(promoted),
        len(insertions),
    )
    return result.decode("utf-8")


def instrument(
    source: str,
    dialect: Dialect = Dialect.INTERPRETER,
    *,
    loop_limit: int = constants.NATIVE_LOOP_LIMIT,
    blocking: tuple[str, ...] = tuple(constants.BLOCKING_CAPABILITIES),
) -> str:
    """Prepare *source* for *dialect*.

    The interpreter dialect is instrumented during lowering, so its source is
    returned unchanged.
    """
    if dialect == Dialect.INTERPRETER:
        return source
    guarded = inject_loop_guards(source, loop_limit)
    return propagate_async(guarded, blocking)
