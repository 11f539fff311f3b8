"""Tests for RunLogger: entries, masking, overlay guards and persistence."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from flowreplay.compiler.ir import IRFlow
from flowreplay.runtime.run_logger import RunLogger

from conftest import FakeOverlay, MemoryPersistence


class TestEntries:
    def test_push_and_get_logs_copy(self):
        rl = RunLogger("run_1")
        rl.push("a", "success", took_ms=3.5)
        logs = rl.get_logs()
        logs.clear()
        assert len(rl.get_logs()) == 1
        assert rl.get_logs()[0].took_ms == 3.5

    def test_secret_values_masked(self):
        secrets = {"pw": "hunter22"}
        rl = RunLogger("run_1", secrets=lambda: secrets.values())
        entry = rl.push("fill", "failed", "could not type hunter22")
        assert entry.message == "could not type ***REDACTED***"

    def test_secrets_read_at_push_time(self):
        bag = {}
        rl = RunLogger("run_1", secrets=lambda: [bag.get("token")])
        bag["token"] = "tok-998877"
        assert "tok-998877" not in rl.push("s", "warning", "got tok-998877").message

    def test_first_failure_screenshot(self):
        rl = RunLogger("run_1")
        rl.push("a", "failed", "x")
        rl.push("b", "failed", "y", screenshot="shot-b")
        rl.push("c", "failed", "z", screenshot="shot-c")
        assert rl.first_failure_screenshot() == "shot-b"

    def test_emits_to_module_logger(self, caplog):
        rl = RunLogger("run_42")
        with caplog.at_level("INFO", logger="flowreplay.run_logger"):
            rl.push("nav", "failed", "boom")
        record = caplog.records[-1]
        assert record.levelname == "ERROR"
        assert "[run_42] nav failed: boom" in record.getMessage()


class TestOverlay:
    @pytest.mark.asyncio
    async def test_overlay_lifecycle(self):
        overlay = FakeOverlay()
        rl = RunLogger("run_1", overlay=overlay, secrets=lambda: ["s3cr3t"])
        await rl.overlay_init()
        await rl.overlay_append("typing s3cr3t")
        await rl.overlay_done()
        assert overlay.state == "done"
        assert overlay.lines == ["typing ***REDACTED***"]

    @pytest.mark.asyncio
    async def test_overlay_errors_become_diagnostics(self):
        rl = RunLogger("run_1", overlay=FakeOverlay(fail=True))
        await rl.overlay_init()
        await rl.overlay_append("x")
        assert [d.source for d in rl.diagnostics] == ["overlay.init", "overlay.append"]
        assert rl.get_logs() == []

    @pytest.mark.asyncio
    async def test_no_overlay_is_noop(self):
        rl = RunLogger("run_1")
        await rl.overlay_init()
        await rl.overlay_append("x")
        await rl.overlay_done()
        assert rl.diagnostics == []


class TestPersist:
    @pytest.mark.asyncio
    async def test_without_persistence(self):
        rl = RunLogger("run_1")
        assert await rl.persist(IRFlow(id="f"), datetime.now(timezone.utc), True) is None

    @pytest.mark.asyncio
    async def test_record_contents(self):
        store = MemoryPersistence()
        rl = RunLogger("run_1", persistence=store)
        rl.push("a", "success")
        started = datetime.now(timezone.utc)
        record = await rl.persist(IRFlow(id="flow_x"), started, False)
        assert store.records == [record]
        assert record.id == "run_1"
        assert record.flow_id == "flow_x"
        assert record.success is False
        assert record.finished_at >= started
        assert [e.step_id for e in record.entries] == ["a"]
