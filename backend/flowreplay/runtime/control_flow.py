"""foreach / while expansion over named subflows.

Both runners share the caller's variable bag, so anything a subflow writes is
visible to the parent graph afterwards.  Every entry point returns one of:

  "ok"      finished normally (including a while loop stopped by its cap)
  "paused"  a hook requested a pause; the caller must stop traversal
  "failed"  a step inside a subflow exhausted its retries

A passed run deadline surfaces as GlobalTimeoutError between subflow steps.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from flowreplay.compiler.ir import IRFlow
from flowreplay.compiler.parser import map_node_to_step
from flowreplay.config import settings
from flowreplay.runtime.graph import default_edges_only, topo_order
from flowreplay.runtime.plugins import HookContext, PluginManager
from flowreplay.runtime.ports import ControlDirective, ExecCtx, ForeachDirective, WhileDirective
from flowreplay.runtime.run_logger import RunLogger
from flowreplay.runtime.step_runner import StepRunner
from flowreplay.templating.engine import resolve_path
from flowreplay.templating.expressions import evaluate_condition
from flowreplay.utils.logger import ctx_subflow_id

logger = logging.getLogger("flowreplay.runtime.control_flow")

OK, PAUSED, FAILED = "ok", "paused", "failed"


class SubflowRunner:
    """Runs one subflow's nodes in topological order over its default edges."""

    def __init__(
        self,
        run_id: str,
        flow: IRFlow,
        variables: dict[str, Any],
        run_logger: RunLogger,
        plugins: PluginManager,
        step_runner: StepRunner,
        check_deadline: Callable[[], None] = lambda: None,
    ):
        self.run_id = run_id
        self.flow = flow
        self.vars = variables
        self.logger = run_logger
        self.plugins = plugins
        self.step_runner = step_runner
        # Raises GlobalTimeoutError once the run deadline has passed.
        self.check_deadline = check_deadline
        self.control: ControlFlowRunner | None = None

    def _hook(self, subflow_id: str) -> HookContext:
        return HookContext(run_id=self.run_id, flow=self.flow, vars=self.vars, subflow_id=subflow_id)

    async def run_subflow(self, subflow_id: str, ctx: ExecCtx, depth: int = 1) -> str:
        sub = self.flow.subflows.get(subflow_id)
        if sub is None or not sub.nodes:
            self.logger.push(f"subflow:{subflow_id}", "warning", f"Subflow '{subflow_id}' is missing or empty")
            return OK

        token = ctx_subflow_id.set(subflow_id)
        await self.plugins.subflow_start(self._hook(subflow_id))
        try:
            status = OK
            for node in topo_order(sub.nodes, default_edges_only(sub.edges)):
                self.check_deadline()
                outcome = await self.step_runner.run(ctx, map_node_to_step(node))
                if outcome.status == PAUSED:
                    status = PAUSED
                    break
                if outcome.status == FAILED:
                    status = FAILED
                    break
                if outcome.control is not None and self.control is not None:
                    status = await self.control.run(outcome.control, ctx, depth + 1)
                    if status != OK:
                        break
            return status
        finally:
            # Also reached on GlobalTimeoutError.
            await self.plugins.subflow_end(self._hook(subflow_id))
            ctx_subflow_id.reset(token)


class ControlFlowRunner:
    def __init__(self, variables: dict[str, Any], run_logger: RunLogger, subflows: SubflowRunner):
        self.vars = variables
        self.logger = run_logger
        self.subflows = subflows
        subflows.control = self

    async def run(self, directive: ControlDirective, ctx: ExecCtx, depth: int = 1) -> str:
        if depth > settings.MAX_CONTROL_DEPTH:
            self.logger.push(
                f"subflow:{directive.subflow_id}",
                "failed",
                f"Control nesting exceeded {settings.MAX_CONTROL_DEPTH} levels",
            )
            return FAILED
        if isinstance(directive, ForeachDirective):
            return await self._foreach(directive, ctx, depth)
        if isinstance(directive, WhileDirective):
            return await self._while(directive, ctx, depth)
        self.logger.push("control", "warning", f"Unknown control directive {directive!r}")
        return OK

    async def _foreach(self, d: ForeachDirective, ctx: ExecCtx, depth: int) -> str:
        items = self.vars.get(d.list_var)
        if items is None:
            items = resolve_path(d.list_var, self.vars)
        if not isinstance(items, (list, tuple)):
            self.logger.push(
                f"foreach:{d.subflow_id}",
                "warning",
                f"Variable '{d.list_var}' is not a list; nothing to iterate",
            )
            return OK
        if d.concurrency and d.concurrency > 1:
            self.logger.push(
                f"foreach:{d.subflow_id}",
                "warning",
                f"concurrency={d.concurrency} is not supported; iterating sequentially",
            )
        for item in list(items):
            self.vars[d.item_var] = item
            status = await self.subflows.run_subflow(d.subflow_id, ctx, depth)
            if status != OK:
                return status
        return OK

    async def _while(self, d: WhileDirective, ctx: ExecCtx, depth: int) -> str:
        cap = _max_iterations(d.max_iterations)
        for _ in range(cap):
            if not evaluate_condition(d.condition, self.vars):
                return OK
            status = await self.subflows.run_subflow(d.subflow_id, ctx, depth)
            if status != OK:
                return status
        if evaluate_condition(d.condition, self.vars):
            self.logger.push(
                f"while:{d.subflow_id}",
                "warning",
                f"while loop stopped after reaching maxIterations={cap}",
            )
        return OK


def _max_iterations(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return settings.WHILE_DEFAULT_MAX_ITERATIONS
    return value if value > 0 else settings.WHILE_DEFAULT_MAX_ITERATIONS
