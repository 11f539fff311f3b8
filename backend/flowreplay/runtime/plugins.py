"""Run plugins: lifecycle hooks fanned out to an ordered list of observers.

A plugin subclasses ``RunPlugin`` and overrides any subset of the hooks; each
hook may be sync or async.  Returning ``HookControl(pause=True)`` from any hook
requests a cooperative pause, which is sticky for the rest of the run and
honoured at the next ``before_step`` checkpoint.  An exception raised by one
plugin is logged as a warning and never stops the others or the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from flowreplay.compiler.ir import IRFlow, IRStep
from flowreplay.runtime.run_logger import PLUGIN_RUN_END, PLUGIN_RUN_START, RunLogger

logger = logging.getLogger("flowreplay.runtime.plugins")


@dataclass
class HookControl:
    pause: bool = False


@dataclass
class HookContext:
    run_id: str
    flow: IRFlow
    vars: dict[str, Any]
    step: IRStep | None = None
    error: BaseException | None = None
    attempt: int | None = None
    result: Any = None
    suggested: str | None = None
    subflow_id: str | None = None
    success: bool | None = None
    failed: int | None = None


class RunPlugin:
    """Base class; every hook is a no-op by default."""

    name = "plugin"

    def run_start(self, ctx: HookContext) -> HookControl | None:
        return None

    def before_step(self, ctx: HookContext) -> HookControl | None:
        return None

    def after_step(self, ctx: HookContext) -> HookControl | None:
        return None

    def on_retry(self, ctx: HookContext) -> HookControl | None:
        return None

    def on_error(self, ctx: HookContext) -> HookControl | None:
        return None

    def on_choose_next_label(self, ctx: HookContext) -> str | None:
        return None

    def subflow_start(self, ctx: HookContext) -> HookControl | None:
        return None

    def subflow_end(self, ctx: HookContext) -> HookControl | None:
        return None

    def run_end(self, ctx: HookContext) -> None:
        return None


class BreakpointPlugin(RunPlugin):
    """Pause before any step whose id is in ``step_ids``.

    The node a run is resumed from (``resume_from``) does not re-trigger its
    own breakpoint, otherwise resuming would pause again immediately.
    """

    name = "breakpoint"

    def __init__(self, step_ids: list[str] | set[str] | None = None, resume_from: str | None = None):
        self.step_ids = set(step_ids or ())
        self._skip_once = resume_from

    def before_step(self, ctx: HookContext) -> HookControl | None:
        if ctx.step is None:
            return None
        if self._skip_once is not None and ctx.step.id == self._skip_once:
            self._skip_once = None
            return None
        if ctx.step.id in self.step_ids:
            logger.info("Breakpoint hit at step '%s' (run %s)", ctx.step.id, ctx.run_id)
            return HookControl(pause=True)
        return None


class PluginManager:
    def __init__(self, plugins: list[RunPlugin], run_logger: RunLogger | None = None):
        self.plugins = list(plugins)
        self.run_logger = run_logger
        self._pause_requested = False

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    async def run_start(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("run_start", ctx, step_id=PLUGIN_RUN_START)

    async def before_step(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("before_step", ctx)

    async def after_step(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("after_step", ctx)

    async def on_retry(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("on_retry", ctx)

    async def on_error(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("on_error", ctx)

    async def subflow_start(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("subflow_start", ctx, step_id=f"subflow:{ctx.subflow_id}")

    async def subflow_end(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("subflow_end", ctx, step_id=f"subflow:{ctx.subflow_id}")

    async def run_end(self, ctx: HookContext) -> HookControl:
        return await self._fan_out("run_end", ctx, step_id=PLUGIN_RUN_END)

    async def on_choose_next_label(self, ctx: HookContext) -> str | None:
        """First plugin returning a non-empty label wins."""
        for plugin in self.plugins:
            try:
                label = await _call(getattr(plugin, "on_choose_next_label"), ctx)
            except Exception as exc:
                self._warn(plugin, "on_choose_next_label", exc, ctx.step.id if ctx.step else "plugin")
                continue
            if label:
                return str(label)
        return None

    # ── internals ──────────────────────────────────────────

    async def _fan_out(self, hook: str, ctx: HookContext, step_id: str | None = None) -> HookControl:
        # Any earlier pause request stays in force.
        pause = self._pause_requested
        for plugin in self.plugins:
            fn = getattr(plugin, hook, None)
            if fn is None:
                continue
            try:
                out = await _call(fn, ctx)
            except Exception as exc:
                self._warn(plugin, hook, exc, step_id or (ctx.step.id if ctx.step else "plugin"))
                continue
            if isinstance(out, HookControl) and out.pause:
                pause = True
            elif isinstance(out, dict) and out.get("pause"):
                pause = True
        self._pause_requested = pause
        return HookControl(pause=pause)

    def _warn(self, plugin: RunPlugin, hook: str, exc: Exception, step_id: str) -> None:
        name = getattr(plugin, "name", type(plugin).__name__)
        message = self.run_logger.mask(str(exc)) if self.run_logger is not None else type(exc).__name__
        logger.warning("Plugin %s.%s raised: %s", name, hook, message)
        if self.run_logger is not None:
            self.run_logger.push(step_id, "warning", f"plugin.{hook} error: {message}")


async def _call(fn, ctx: HookContext) -> Any:
    if asyncio.iscoroutinefunction(fn):
        return await fn(ctx)
    out = fn(ctx)
    if asyncio.iscoroutine(out):
        out = await out
    return out
