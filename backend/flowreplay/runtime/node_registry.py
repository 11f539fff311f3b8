"""Node executor registry: type-dispatch from step.type to a handler.

Concrete automation actions (click, fill, navigate, ...) are registered by the
host; the registry ships only the control-flow node types, which need no
automation surface:

  foreach  -> emits a ForeachDirective
  while    -> emits a WhileDirective
  if       -> evaluates branches and emits next_label "case:<id>" or "else"
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from flowreplay.compiler.ir import IRStep
from flowreplay.errors import StepValidationError, UnsupportedStepError
from flowreplay.runtime.ports import (
    ExecCtx,
    ExecResult,
    ForeachDirective,
    NodeExecutor,
    WhileDirective,
)
from flowreplay.templating.expressions import evaluate_condition

logger = logging.getLogger("flowreplay.runtime.registry")

Handler = Callable[[ExecCtx, IRStep], Any]
Validator = Callable[[IRStep], list[str]]


class NodeRegistry(NodeExecutor):
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._validators: dict[str, Validator] = {}

    def register(self, node_type: str, handler: Handler, validator: Validator | None = None) -> None:
        """Register a sync or async handler for a node type. Re-registering replaces."""
        if node_type in self._handlers:
            logger.debug("Replacing executor for node type '%s'", node_type)
        self._handlers[node_type] = handler
        if validator is not None:
            self._validators[node_type] = validator
        else:
            self._validators.pop(node_type, None)

    def supports(self, node_type: str) -> bool:
        return node_type in self._handlers

    @property
    def node_types(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, ctx: ExecCtx, step: IRStep) -> ExecResult:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise UnsupportedStepError(step.id, step.type)

        validator = self._validators.get(step.type)
        if validator is not None:
            problems = validator(step)
            if problems:
                raise StepValidationError(step.id, "; ".join(problems))

        if asyncio.iscoroutinefunction(handler):
            raw = await handler(ctx, step)
        else:
            raw = handler(ctx, step)
            if asyncio.iscoroutine(raw):
                raw = await raw
        return coerce_exec_result(raw)


def coerce_exec_result(raw: Any) -> ExecResult:
    """Accept ExecResult, a camelCase/snake_case dict, or None from a handler."""
    if raw is None:
        return ExecResult()
    if isinstance(raw, ExecResult):
        return raw
    if not isinstance(raw, dict):
        raise TypeError(f"executor returned unsupported result type {type(raw).__name__}")

    control = raw.get("control")
    if isinstance(control, dict):
        control = _directive_from_dict(control)
    next_label = raw.get("nextLabel", raw.get("next_label"))
    return ExecResult(
        already_logged=bool(raw.get("alreadyLogged", raw.get("already_logged", False))),
        defer_after_script=raw.get("deferAfterScript", raw.get("defer_after_script")),
        next_label=str(next_label) if next_label else None,
        control=control,
    )


def _directive_from_dict(d: dict[str, Any]) -> ForeachDirective | WhileDirective:
    kind = d.get("kind")
    if kind == "foreach":
        return ForeachDirective(
            list_var=str(d.get("listVar", d.get("list_var", ""))),
            item_var=str(d.get("itemVar", d.get("item_var", "item"))),
            subflow_id=str(d.get("subflowId", d.get("subflow_id", ""))),
            concurrency=int(d.get("concurrency") or 1),
        )
    if kind == "while":
        return WhileDirective(
            condition=d.get("condition"),
            subflow_id=str(d.get("subflowId", d.get("subflow_id", ""))),
            max_iterations=d.get("maxIterations", d.get("max_iterations")),
        )
    raise ValueError(f"unknown control directive kind: {kind!r}")


# ── Built-in control nodes ─────────────────────────────────────


def _validate_foreach(step: IRStep) -> list[str]:
    errors = []
    if not step.params.get("listVar"):
        errors.append("foreach requires 'listVar'")
    if not step.params.get("subflowId"):
        errors.append("foreach requires 'subflowId'")
    return errors


def _run_foreach(ctx: ExecCtx, step: IRStep) -> ExecResult:
    p = step.params
    return ExecResult(
        control=ForeachDirective(
            list_var=str(p["listVar"]),
            item_var=str(p.get("itemVar") or "item"),
            subflow_id=str(p["subflowId"]),
            concurrency=int(p.get("concurrency") or 1),
        )
    )


def _validate_while(step: IRStep) -> list[str]:
    errors = []
    if step.params.get("condition") is None:
        errors.append("while requires 'condition'")
    if not step.params.get("subflowId"):
        errors.append("while requires 'subflowId'")
    return errors


def _run_while(ctx: ExecCtx, step: IRStep) -> ExecResult:
    p = step.params
    return ExecResult(
        control=WhileDirective(
            condition=p["condition"],
            subflow_id=str(p["subflowId"]),
            max_iterations=p.get("maxIterations"),
        )
    )


def _run_if(ctx: ExecCtx, step: IRStep) -> ExecResult:
    p = step.params
    branches = p.get("branches")
    if branches is None and "condition" in p:
        # single-condition form: true -> "true", false -> "false"
        return ExecResult(next_label="true" if evaluate_condition(p["condition"], ctx.vars) else "false")

    for idx, branch in enumerate(branches or []):
        cond = branch.get("expr", branch.get("condition", branch.get("expression")))
        if evaluate_condition(cond, ctx.vars):
            return ExecResult(next_label=f"case:{branch.get('id', idx)}")
    return ExecResult(next_label="else")


def default_registry() -> NodeRegistry:
    registry = NodeRegistry()
    registry.register("foreach", _run_foreach, _validate_foreach)
    registry.register("while", _run_while, _validate_while)
    registry.register("if", _run_if)
    return registry
