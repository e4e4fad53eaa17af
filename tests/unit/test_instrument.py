"""Tests for the native-runtime source passes: loop guards and async propagation."""

from __future__ import annotations

from edmo_runner.instrument import inject_loop_guards, instrument, propagate_async
from edmo_runner.run_types import Dialect

_CHECK = "throw new Error('INFINITE_LOOP_DETECTED');"


class TestLoopGuards:
    def test_braced_body(self):
        result = inject_loop_guards("while (x) {\n  f();\n}", limit=100)

        assert result == (
            "let __loopGuard0 = 0;\n"
            "while (x) {\n"
            f"  if (++__loopGuard0 > 100) {_CHECK}\n"
            "  f();\n"
            "}"
        )

    def test_unbraced_body(self):
        result = inject_loop_guards("while (x) f();", limit=5)

        assert result == (
            "let __loopGuard0 = 0;\n"
            f"while (x) {{ if (++__loopGuard0 > 5) {_CHECK} f(); }}"
        )

    def test_default_limit(self):
        assert "> 100000)" in inject_loop_guards("for (;;) {}")

    def test_every_loop_kind_is_guarded(self):
        source = "while (a) {}\nfor (;;) {}\ndo {} while (b);\nfor (const v of xs) {}"
        result = inject_loop_guards(source, limit=3)

        for n in range(4):
            assert f"let __loopGuard{n} = 0;" in result
            assert f"++__loopGuard{n} > 3" in result

    def test_nested_loops_get_distinct_counters(self):
        source = "for (var i = 0; i < 2; i++) {\n  while (y) {\n  }\n}"
        result = inject_loop_guards(source, limit=10)

        assert result.index("let __loopGuard0") < result.index("let __loopGuard1")
        assert result.count("++__loopGuard0") == 1
        assert result.count("++__loopGuard1") == 1

    def test_numbering_continues_after_existing_guards(self):
        source = "let __loopGuard3 = 0;\nwhile (x) {}"
        result = inject_loop_guards(source, limit=10)

        assert "let __loopGuard4 = 0;" in result

    def test_loop_in_non_statement_position_is_wrapped(self):
        result = inject_loop_guards("if (a) while (b) {}", limit=1)

        assert result.startswith("if (a) { let __loopGuard0 = 0; while (b)")

    def test_labeled_loop_keeps_label_on_loop(self):
        result = inject_loop_guards("outer: while (a) { break outer; }", limit=1)

        assert result.startswith("let __loopGuard0 = 0;\nouter: while (a)")

    def test_source_without_loops_is_unchanged(self):
        source = "setServoRotation('A', 90);\nsleep(1);"
        assert inject_loop_guards(source) == source


class TestAsyncPropagation:
    def test_transitive_promotion(self):
        source = (
            "function f() { sleep(1); }\n"
            "function g() { f(); }\n"
            "function h() { return 1; }\n"
            "g();"
        )
        result = propagate_async(source)

        assert result == (
            "async function f() { await sleep(1); }\n"
            "async function g() { await f(); }\n"
            "function h() { return 1; }\n"
            "await g();"
        )

    def test_idempotent(self):
        source = "function f() { sleep(1); }\nfunction g() { f(); }\ng();"
        once = propagate_async(source)

        assert propagate_async(once) == once

    def test_function_expression_binding(self):
        source = "var wait = function() { sleep(2); };\nwait();"
        result = propagate_async(source)

        assert "async function() { await sleep(2); }" in result
        assert result.endswith("await wait();")

    def test_arrow_function(self):
        result = propagate_async("const go = () => { sleep(1); };")

        assert result == "const go = async () => { await sleep(1); };"

    def test_existing_await_promotes_function(self):
        result = propagate_async("function f() { await other(); }")

        assert result.startswith("async function f()")

    def test_non_blocking_code_is_unchanged(self):
        source = "function f() { setServoRotation('A', 1); }\nf();"
        assert propagate_async(source) == source

    def test_parenthesized_await_is_not_doubled(self):
        result = propagate_async("function f(){ await (sleep(1)); }")

        assert result == "async function f(){ await (sleep(1)); }"

    def test_local_function_shadows_promoted_name(self):
        source = "function f(){ sleep(1); } function g(){ function f(){ } f(); }"
        result = propagate_async(source)

        assert result == (
            "async function f(){ await sleep(1); } function g(){ function f(){ } f(); }"
        )

    def test_parameter_shadows_promoted_name(self):
        source = "function f(){ sleep(1); }\nfunction g(f){ f(); }"
        result = propagate_async(source)

        assert result.endswith("function g(f){ f(); }")

    def test_promoted_method_call_is_awaited(self):
        result = propagate_async("var o = { m() { sleep(1); } }; o.m();")

        assert result == "var o = { async m() { await sleep(1); } }; await o.m();"

    def test_caller_of_promoted_method_is_promoted(self):
        source = "var o = { m() { sleep(1); } };\nfunction run() { o.m(); }"
        result = propagate_async(source)

        assert result.endswith("async function run() { await o.m(); }")
        assert propagate_async(result) == result

    def test_custom_blocking_set(self):
        result = propagate_async("function f() { pause(); }\nf();", blocking=("pause",))

        assert result == "async function f() { await pause(); }\nawait f();"


class TestInstrument:
    def test_interpreter_dialect_is_passthrough(self):
        source = "while (true) { sleep(1); }"
        assert instrument(source, Dialect.INTERPRETER) == source

    def test_native_dialect_applies_both_passes(self):
        result = instrument(
            "function f() {\n  while (a) {\n    sleep(1);\n  }\n}\nf();",
            Dialect.NATIVE,
            loop_limit=7,
        )

        assert result.startswith("async function f()")
        assert "++__loopGuard0 > 7" in result
        assert "await sleep(1);" in result
        assert result.endswith("await f();")
