"""StepRunner: executes exactly one step under plugins, retry and post-conditions.

Order inside one attempt (the unit that is retried):
  executor -> post-condition waits -> deferred after-scripts -> success entry
  -> after_step hook
A pause requested by any hook is honoured at ``before_step``, before the
executor is touched.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable

from flowreplay.compiler.ir import IRFlow, IRStep
from flowreplay.config import settings
from flowreplay.errors import StepTimeoutError
from flowreplay.runtime.after_scripts import AfterScriptQueue
from flowreplay.runtime.plugins import HookContext, PluginManager
from flowreplay.runtime.ports import (
    ControlDirective,
    ExecCtx,
    ExecResult,
    NodeExecutor,
    TabController,
    TabInfo,
)
from flowreplay.runtime.retry import with_retry
from flowreplay.runtime.run_logger import RunLogger
from flowreplay.runtime.waits import maybe_quick_wait_for_nav, prime_page, wait_for_navigation_done
from flowreplay.utils.logger import ctx_node_id
from flowreplay.utils.metrics import record_retry_attempt, record_step_execution, record_step_timeout

logger = logging.getLogger("flowreplay.runtime.step_runner")


@dataclass
class StepOutcome:
    status: str  # "success" | "failed" | "paused"
    next_label: str | None = None
    control: ControlDirective | None = None
    error: BaseException | None = None


def _elapsed_ms(t0: float) -> float:
    return round((time.monotonic() - t0) * 1000, 1)


class StepRunner:
    def __init__(
        self,
        run_id: str,
        flow: IRFlow,
        variables: dict[str, Any],
        run_logger: RunLogger,
        plugins: PluginManager,
        executor: NodeExecutor,
        after_scripts: AfterScriptQueue,
        tabs: TabController | None = None,
        remaining_budget_ms: Callable[[], float] = lambda: math.inf,
    ):
        self.run_id = run_id
        self.flow = flow
        self.vars = variables
        self.logger = run_logger
        self.plugins = plugins
        self.executor = executor
        self.after_scripts = after_scripts
        self.tabs = tabs
        self.remaining_budget_ms = remaining_budget_ms

    def _hook(self, step: IRStep, **kwargs: Any) -> HookContext:
        return HookContext(run_id=self.run_id, flow=self.flow, vars=self.vars, step=step, **kwargs)

    async def run(self, ctx: ExecCtx, step: IRStep) -> StepOutcome:
        token = ctx_node_id.set(step.id)
        try:
            return await self._run(ctx, step)
        finally:
            ctx_node_id.reset(token)

    async def _run(self, ctx: ExecCtx, step: IRStep) -> StepOutcome:
        t0 = time.monotonic()
        control = await self.plugins.before_step(self._hook(step))
        if control.pause:
            self.logger.push(step.id, "paused", "Paused before step")
            record_step_execution(step.type, "paused")
            return StepOutcome("paused")

        before = await self._tab_info()

        async def attempt() -> ExecResult:
            result = await self._execute(ctx, step)
            await self._apply_post_conditions(step, before)
            if result.defer_after_script is not None:
                self.after_scripts.enqueue(result.defer_after_script)
            await self.after_scripts.flush(ctx)
            if not result.already_logged:
                self.logger.push(step.id, "success", took_ms=_elapsed_ms(t0))
            await self.plugins.after_step(self._hook(step, result=result))
            await self.logger.overlay_append(f"✔ {step.type} ({step.id})")
            return result

        async def on_retry(n: int, exc: BaseException) -> None:
            self.after_scripts.clear()
            self.logger.push(step.id, "retrying", str(exc) or type(exc).__name__)
            record_retry_attempt(self.flow.id, step.id)
            await self.plugins.on_retry(self._hook(step, error=exc, attempt=n))

        try:
            result = await with_retry(attempt, on_retry, step.retry)
        except Exception as exc:
            self.after_scripts.clear()
            return await self._fail(step, exc, t0)

        record_step_execution(step.type, "success")
        return StepOutcome("success", next_label=result.next_label, control=result.control)

    async def _execute(self, ctx: ExecCtx, step: IRStep) -> ExecResult:
        call = self.executor.execute(ctx, step)
        if not step.timeout_ms:
            result = await call
        else:
            try:
                result = await asyncio.wait_for(call, timeout=step.timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                record_step_timeout(step.id, step.timeout_ms)
                raise StepTimeoutError(step.id, f"step timed out after {step.timeout_ms} ms") from exc
        return result if isinstance(result, ExecResult) else ExecResult()

    async def _apply_post_conditions(self, step: IRStep, before: TabInfo | None) -> None:
        if self.tabs is None:
            return
        budget = min(step.timeout_ms or settings.DEFAULT_WAIT_MS, self.remaining_budget_ms())
        prev_url = before.url if before else ""
        after = step.after
        if after.wait_for_navigation or after.wait_for_network_idle:
            await wait_for_navigation_done(self.tabs, prev_url, budget)
        elif after.quick_nav_check:
            await maybe_quick_wait_for_nav(self.tabs, prev_url, budget)
        if after.prime_page:
            try:
                await prime_page(self.tabs)
            except Exception as exc:
                self.logger.diagnostic("prime_page", exc)

    async def _tab_info(self) -> TabInfo | None:
        if self.tabs is None:
            return None
        try:
            return await self.tabs.get_active_tab_info()
        except Exception as exc:
            self.logger.diagnostic("tab_info", exc)
            return None

    async def _fail(self, step: IRStep, exc: Exception, t0: float) -> StepOutcome:
        entry = self.logger.push(step.id, "failed", str(exc) or type(exc).__name__, took_ms=_elapsed_ms(t0))
        if step.screenshot_on_fail and self.tabs is not None:
            try:
                entry.screenshot = await self.tabs.capture_screenshot()
            except Exception as shot_exc:
                self.logger.diagnostic("screenshot", shot_exc)
        await self.logger.overlay_append(f"✘ {step.type} ({step.id}) -> {exc}")
        record_step_execution(step.type, "failed")

        control = await self.plugins.on_error(self._hook(step, error=exc))
        if control.pause:
            return StepOutcome("paused", error=exc)
        return StepOutcome("failed", error=exc)
