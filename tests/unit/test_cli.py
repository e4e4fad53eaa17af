"""Tests for the edmo-runner command line."""

from __future__ import annotations

import json

from edmo_runner.cli import main


def _write(tmp_path, name: str, text: str):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestInspectionCommands:
    def test_ir(self, tmp_path, capsys):
        path = _write(tmp_path, "prog.js", "while (a) { f(); }")

        assert main(["ir", path]) == 0
        out = capsys.readouterr().out
        assert "loop_trap" in out
        assert "prog:1:0" in out

    def test_ir_without_instrumentation(self, tmp_path, capsys):
        path = _write(tmp_path, "prog.js", "while (a) { f(); }")

        assert main(["ir", path, "--no-trap", "--no-highlight"]) == 0
        out = capsys.readouterr().out
        assert "loop_trap" not in out
        assert "highlightBlock" not in out

    def test_cfg(self, tmp_path, capsys):
        path = _write(tmp_path, "prog.js", "var x = 1;")

        assert main(["cfg", path]) == 0
        assert "[entry]" in capsys.readouterr().out

    def test_instrument(self, tmp_path, capsys):
        path = _write(tmp_path, "prog.js", "while (a) { sleep(1); }")

        assert main(["instrument", path, "--limit", "12"]) == 0
        out = capsys.readouterr().out
        assert "++__loopGuard0 > 12" in out
        assert "await sleep(1);" in out

    def test_syntax_error_exits_nonzero(self, tmp_path, capsys):
        path = _write(tmp_path, "bad.js", "var = ;")

        assert main(["ir", path]) == 1
        assert "SyntaxError" in capsys.readouterr().err


class TestRunCommand:
    def _workspace(self, tmp_path, *sources: str) -> str:
        entries = [{"id": f"start_{i}", "source": s} for i, s in enumerate(sources)]
        return _write(tmp_path, "workspace.json", json.dumps({"entries": entries}))

    def test_successful_run(self, tmp_path):
        path = self._workspace(tmp_path, "setServoRotation('A', 30);\nsleep(0.01);")

        assert main(["run", path]) == 0

    def test_failing_run(self, tmp_path):
        path = self._workspace(tmp_path, "undefinedFn();")

        assert main(["run", path]) == 1

    def test_alert_reaches_console(self, tmp_path, capsys):
        path = self._workspace(tmp_path, "alert('hello');")

        assert main(["run", path]) == 0
        assert "hello" in capsys.readouterr().out
