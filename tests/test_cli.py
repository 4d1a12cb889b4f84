"""
CLI Tests
=========
File collection, the worker pool and the JSON report, all in regex_only
mode so no model is built.
"""
import asyncio
import json

import pytest

import main
from soc2_agent.tools.cost_governor import CostGovernor, GovernorState
from soc2_agent.tools.fix_synthesizer import FixSynthesizer


def _project(tmp_path):
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "settings.py").write_text("password = 'admin123'\n")
    (tmp_path / "app" / "util.py").write_text("def add(a, b):\n    return a + b\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "lib.js").write_text("const apiKey = 'sk_live_1234567890'\n")
    (tmp_path / "README.md").write_text("# docs\n")
    return tmp_path


class TestCollectFiles:

    def test_skips_vendored_dirs_and_other_extensions(self, tmp_path):
        root = _project(tmp_path)
        files = main.collect_files(str(root))
        assert [p.replace(str(root), "").replace("\\", "/") for p in files] == [
            "/app/settings.py",
            "/app/util.py",
        ]

    def test_skips_oversized_files(self, tmp_path, monkeypatch):
        root = _project(tmp_path)
        monkeypatch.setattr(main.config, "MAX_FILE_BYTES", 25)
        files = main.collect_files(str(root))
        assert [p.endswith("settings.py") for p in files] == [True]

    def test_single_file(self, tmp_path):
        target = tmp_path / "one.py"
        target.write_text("x = 1\n")
        assert main.collect_files(str(target)) == [str(target)]


class TestScanFiles:

    async def test_results_keep_input_order(self, tmp_path):
        root = _project(tmp_path)
        files = main.collect_files(str(root))
        governor = CostGovernor(1.0)

        results = await main.scan_files(files, None, FixSynthesizer(), governor, "regex_only", max_concurrent=2)

        assert [r.state["file_path"] for r in results] == files
        assert [len(r.violations) for r in results] == [1, 0]
        assert all(r.success for r in results)
        assert governor.snapshot().total_cost_usd == 0

    async def test_unreadable_file_is_rejected_not_raised(self, tmp_path):
        missing = str(tmp_path / "gone.py")
        results = await main.scan_files([missing], None, FixSynthesizer(), CostGovernor(1.0), "regex_only")
        assert results[0].success is False
        assert "empty" in results[0].error


class TestMain:

    def test_regex_only_run_writes_report(self, tmp_path, monkeypatch, capsys):
        root = _project(tmp_path)
        report = tmp_path / "report.json"
        monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: None)

        assert main.main([str(root), "--scan-mode", "regex_only", "--output", str(report)]) == 0

        data = json.loads(report.read_text())
        assert len(data["files"]) == 2
        first = data["files"][0]
        assert first["success"] is True
        assert first["violations"][0]["controlId"] == "CC6.7"
        assert first["fixes"][0]["trustLevel"] == "review"
        assert data["cost"]["totalCostUsd"] == 0
        assert "Scan Complete" in capsys.readouterr().out


class _Stdin:

    def __init__(self, tty):
        self.tty = tty

    def isatty(self):
        return self.tty


def _suspended_governor():
    governor = CostGovernor(0.0)
    governor.check_limit()
    assert governor.state == GovernorState.SUSPENDED
    return governor


class TestCostLimitPrompt:

    @pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
    async def test_closed_input_stops_the_scan(self, monkeypatch, error):
        def _input(prompt):
            raise error()

        monkeypatch.setattr("builtins.input", _input)
        governor = _suspended_governor()

        await main._prompt_for_decision(governor)

        assert governor.state == GovernorState.STOPPED

    async def test_yes_continues(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        governor = _suspended_governor()

        await main._prompt_for_decision(governor)

        assert governor.state == GovernorState.ACTIVE

    async def test_prompt_failure_releases_waiting_workers(self, monkeypatch):
        def _input(prompt):
            raise EOFError()

        monkeypatch.setattr("builtins.input", _input)
        monkeypatch.setattr(main.sys, "stdin", _Stdin(tty=True))
        governor = CostGovernor(0.0)
        handler = main.make_limit_handler(governor, None, asyncio.get_running_loop())
        governor.on_limit_reached = handler

        governor.check_limit()

        assert await governor.wait_for_decision(timeout=5) == GovernorState.STOPPED
        await asyncio.gather(*handler.pending)
        assert not handler.pending

    async def test_no_terminal_stops_without_prompting(self, monkeypatch):
        def _input(prompt):
            raise AssertionError("must not prompt")

        monkeypatch.setattr("builtins.input", _input)
        monkeypatch.setattr(main.sys, "stdin", _Stdin(tty=False))
        governor = CostGovernor(0.0)
        handler = main.make_limit_handler(governor, None, asyncio.get_running_loop())
        governor.on_limit_reached = handler

        governor.check_limit()

        assert governor.state == GovernorState.STOPPED
        assert not handler.pending

    def test_policy_answers_without_prompting(self):
        governor = CostGovernor(0.0)
        governor.on_limit_reached = main.make_limit_handler(governor, "continue", None)

        governor.check_limit()

        assert governor.state == GovernorState.ACTIVE
