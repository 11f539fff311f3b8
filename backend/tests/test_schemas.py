"""Tests for run option/result models."""

from __future__ import annotations

from flowreplay.schemas.runs import RunLogEntry, RunOptions, RunResult, RunSummary


class TestRunOptions:
    def test_defaults(self):
        opts = RunOptions()
        assert opts.tab_target == "current"
        assert opts.timeout_ms == 0
        assert opts.args == {}
        assert opts.plugins is None

    def test_camel_case_input(self):
        opts = RunOptions.model_validate(
            {"tabTarget": "new", "returnLogs": True, "timeoutMs": 500, "startNodeId": "B"}
        )
        assert opts.tab_target == "new"
        assert opts.return_logs is True
        assert opts.timeout_ms == 500
        assert opts.start_node_id == "B"

    def test_negative_timeout_clamped(self):
        assert RunOptions(timeout_ms=-10).timeout_ms == 0

    def test_garbage_timeout_becomes_zero(self):
        assert RunOptions(timeout_ms="soon").timeout_ms == 0

    def test_none_args_become_empty(self):
        assert RunOptions(args=None).args == {}

    def test_plugins_accept_arbitrary_objects(self):
        marker = object()
        assert RunOptions(plugins=[marker]).plugins == [marker]


class TestRunResult:
    def test_dump_uses_camel_case(self):
        result = RunResult(
            run_id="run_1",
            success=True,
            summary=RunSummary(total=2, success=2, failed=0, took_ms=12.0),
            logs=[RunLogEntry(step_id="a", status="success", took_ms=1.0)],
        )
        dumped = result.model_dump(by_alias=True)
        assert dumped["runId"] == "run_1"
        assert dumped["summary"]["tookMs"] == 12.0
        assert dumped["logs"][0]["stepId"] == "a"
        assert dumped["screenshots"] == {"onFailure": None}
        assert dumped["paused"] is False
