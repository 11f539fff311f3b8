"""Tests for PluginManager fan-out and BreakpointPlugin."""

from __future__ import annotations

import pytest

from flowreplay.compiler.ir import IRFlow, IRStep
from flowreplay.runtime.plugins import BreakpointPlugin, HookContext, HookControl, PluginManager, RunPlugin
from flowreplay.runtime.run_logger import RunLogger


def _ctx(step_id: str | None = "s1", **kwargs) -> HookContext:
    step = IRStep(id=step_id, type="click") if step_id else None
    return HookContext(run_id="run_p", flow=IRFlow(id="f"), vars={}, step=step, **kwargs)


class Recorder(RunPlugin):
    def __init__(self, tag: str, log: list):
        self.tag = tag
        self.log = log

    def before_step(self, ctx):
        self.log.append((self.tag, "before_step", ctx.step.id))

    async def after_step(self, ctx):
        self.log.append((self.tag, "after_step", ctx.step.id))


class TestFanOut:
    @pytest.mark.asyncio
    async def test_plugins_called_in_order(self):
        log = []
        manager = PluginManager([Recorder("a", log), Recorder("b", log)])
        await manager.before_step(_ctx())
        await manager.after_step(_ctx())
        assert log == [
            ("a", "before_step", "s1"),
            ("b", "before_step", "s1"),
            ("a", "after_step", "s1"),
            ("b", "after_step", "s1"),
        ]

    @pytest.mark.asyncio
    async def test_base_hooks_are_noops(self):
        manager = PluginManager([RunPlugin()])
        for hook in ("run_start", "before_step", "after_step", "on_retry", "on_error",
                     "subflow_start", "subflow_end", "run_end"):
            control = await getattr(manager, hook)(_ctx(subflow_id="sf"))
            assert control.pause is False
        assert await manager.on_choose_next_label(_ctx()) is None

    @pytest.mark.asyncio
    async def test_raising_plugin_is_isolated(self):
        log = []

        class Broken(RunPlugin):
            name = "broken"

            def before_step(self, ctx):
                raise RuntimeError("kaboom")

        run_logger = RunLogger("run_p")
        manager = PluginManager([Broken(), Recorder("ok", log)], run_logger)
        control = await manager.before_step(_ctx())
        assert control.pause is False
        assert log == [("ok", "before_step", "s1")]
        entry = run_logger.get_logs()[0]
        assert entry.step_id == "s1"
        assert entry.status == "warning"
        assert entry.message == "plugin.before_step error: kaboom"

    @pytest.mark.asyncio
    async def test_lifecycle_warnings_use_reserved_ids(self):
        class Broken(RunPlugin):
            def run_end(self, ctx):
                raise RuntimeError("late")

            def subflow_start(self, ctx):
                raise RuntimeError("early")

        run_logger = RunLogger("run_p")
        manager = PluginManager([Broken()], run_logger)
        await manager.run_end(_ctx(step_id=None))
        await manager.subflow_start(_ctx(step_id=None, subflow_id="rows"))
        assert [e.step_id for e in run_logger.get_logs()] == ["plugin-runEnd", "subflow:rows"]


class TestPause:
    @pytest.mark.asyncio
    async def test_pause_is_sticky(self):
        class PauseOnRetry(RunPlugin):
            def on_retry(self, ctx):
                return HookControl(pause=True)

        manager = PluginManager([PauseOnRetry()])
        assert (await manager.before_step(_ctx())).pause is False
        assert (await manager.on_retry(_ctx(attempt=1))).pause is True
        # a later checkpoint still sees the earlier request
        assert (await manager.before_step(_ctx("s2"))).pause is True
        assert manager.pause_requested is True

    @pytest.mark.asyncio
    async def test_dict_pause_is_honoured(self):
        class DictPause(RunPlugin):
            async def before_step(self, ctx):
                return {"pause": True}

        manager = PluginManager([DictPause()])
        assert (await manager.before_step(_ctx())).pause is True


class TestChooseNextLabel:
    @pytest.mark.asyncio
    async def test_first_non_empty_wins(self):
        class Empty(RunPlugin):
            def on_choose_next_label(self, ctx):
                return ""

        class Yes(RunPlugin):
            async def on_choose_next_label(self, ctx):
                return "yes"

        class No(RunPlugin):
            def on_choose_next_label(self, ctx):
                return "no"

        manager = PluginManager([Empty(), Yes(), No()])
        assert await manager.on_choose_next_label(_ctx(suggested="default")) == "yes"

    @pytest.mark.asyncio
    async def test_raising_chooser_is_skipped(self):
        class Broken(RunPlugin):
            def on_choose_next_label(self, ctx):
                raise KeyError("x")

        class Fallback(RunPlugin):
            def on_choose_next_label(self, ctx):
                return ctx.suggested.upper()

        run_logger = RunLogger("run_p")
        manager = PluginManager([Broken(), Fallback()], run_logger)
        assert await manager.on_choose_next_label(_ctx(suggested="go")) == "GO"
        assert run_logger.get_logs()[0].status == "warning"


class TestBreakpointPlugin:
    def test_pauses_on_listed_step(self):
        bp = BreakpointPlugin(step_ids={"s2"})
        assert bp.before_step(_ctx("s1")) is None
        assert bp.before_step(_ctx("s2")).pause is True

    def test_resume_point_skipped_once(self):
        bp = BreakpointPlugin(step_ids=["s2"], resume_from="s2")
        assert bp.before_step(_ctx("s2")) is None
        assert bp.before_step(_ctx("s2")).pause is True

    def test_no_step_no_pause(self):
        bp = BreakpointPlugin(step_ids=["s1"])
        assert bp.before_step(_ctx(step_id=None)) is None
