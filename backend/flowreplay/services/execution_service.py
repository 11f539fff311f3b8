"""Run execution engine: prepares, validates and traverses a flow graph."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from flowreplay.compiler.ir import EDGE_DEFAULT, IRBinding, IRFlow, IRStep
from flowreplay.compiler.parser import map_node_to_step, parse_flow
from flowreplay.compiler.validator import cycle_errors, validate_structure, validate_variables
from flowreplay.config import settings
from flowreplay.errors import GlobalTimeoutError
from flowreplay.runtime import run_logger as log_ids
from flowreplay.runtime.after_scripts import AfterScriptQueue
from flowreplay.runtime.control_flow import ControlFlowRunner, SubflowRunner
from flowreplay.runtime.graph import FlowGraph
from flowreplay.runtime.node_registry import default_registry
from flowreplay.runtime.plugins import BreakpointPlugin, HookContext, PluginManager
from flowreplay.runtime.ports import EngineServices, ExecCtx
from flowreplay.runtime.run_logger import RunLogger
from flowreplay.runtime.step_runner import StepOutcome, StepRunner
from flowreplay.schemas.runs import (
    NetworkSnippet,
    RunOptions,
    RunResult,
    RunScreenshots,
    RunStateEntry,
    RunSummary,
)
from flowreplay.services.run_state_service import RunStateService
from flowreplay.templating.engine import render_template_str
from flowreplay.utils.logger import ctx_flow_id, ctx_run_id
from flowreplay.utils.metrics import record_run_completed, record_run_started
from flowreplay.utils.redaction import strip_sensitive

logger = logging.getLogger("flowreplay.execution")

_BINDING_MISMATCH = "Flow binding mismatch. Provide startUrl or open a page matching flow.meta.bindings."


def new_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def binding_matches(binding: IRBinding, url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if binding.type == "domain":
        return bool(parsed.hostname) and binding.value in parsed.hostname
    if binding.type == "path":
        return bool(parsed.scheme) and parsed.path.startswith(binding.value)
    if binding.type == "url":
        return url.startswith(binding.value)
    return False


class ExecutionOrchestrator:
    """Drives one run: prepare -> validate -> traverse -> cleanup.

    Instances are single-use.  Everything mutable (variables, logs, plugin
    pause flag, run-state service) belongs to the instance, so concurrent
    runs never share state beyond the stores injected through ``services``.
    """

    def __init__(self, flow: IRFlow, options: RunOptions, services: EngineServices):
        self.flow = flow
        self.options = options
        self.services = services
        self.run_id = new_run_id()
        self.started_at = datetime.now(timezone.utc)
        self._t0 = time.monotonic()
        self._deadline = self._t0 + options.timeout_ms / 1000 if options.timeout_ms > 0 else None

        self.vars: dict[str, Any] = {v.key: v.default for v in flow.variables if v.default is not None}
        self.vars.update(options.args)

        self.run_state = services.run_state or RunStateService()
        self.logger = RunLogger(
            self.run_id,
            overlay=services.overlay,
            persistence=services.persistence,
            secrets=lambda: [self.vars.get(k) for k in flow.sensitive_keys],
        )
        plugins = options.plugins or [BreakpointPlugin(resume_from=options.start_node_id)]
        self.plugins = PluginManager(plugins, self.logger)
        self.graph = FlowGraph(flow.graph)

        self.step_runner = StepRunner(
            run_id=self.run_id,
            flow=flow,
            variables=self.vars,
            run_logger=self.logger,
            plugins=self.plugins,
            executor=services.registry,
            after_scripts=AfterScriptQueue(services.registry),
            tabs=services.tabs,
            remaining_budget_ms=self.remaining_budget_ms,
        )
        self.subflows = SubflowRunner(
            self.run_id, flow, self.vars, self.logger, self.plugins, self.step_runner,
            check_deadline=self._check_deadline,
        )
        self.control = ControlFlowRunner(self.vars, self.logger, self.subflows)
        self.ctx = ExecCtx(run_id=self.run_id, vars=self.vars, log=self.logger.push_entry)

        self.url: str | None = None
        self.paused = False
        self.aborted = False
        self.timed_out = False
        self.failed = 0
        self.succeeded = 0
        self._network_started = False

    # ── entry point ────────────────────────────────────────────

    async def run(self) -> RunResult:
        run_token = ctx_run_id.set(self.run_id)
        flow_token = ctx_flow_id.set(self.flow.id)
        record_run_started()
        logger.info("Run %s started for flow '%s'", self.run_id, self.flow.id)

        result: RunResult | None = None
        try:
            result = await self._prepare()
            if result is None:
                result = self._validate()
            if result is None:
                result = await self._traverse()
        finally:
            if result is None:
                self.aborted = True
            await self._cleanup()
            ctx_flow_id.reset(flow_token)
            ctx_run_id.reset(run_token)

        if result.logs is not None:
            result.logs = self.logger.get_logs()
        return result

    def remaining_budget_ms(self) -> float:
        if self._deadline is None:
            return float("inf")
        return max(0.0, (self._deadline - time.monotonic()) * 1000)

    def _elapsed_ms(self) -> float:
        return round((time.monotonic() - self._t0) * 1000, 1)

    # ── prepare ────────────────────────────────────────────────

    async def _prepare(self) -> RunResult | None:
        derived_start_url = self._derive_start_url()

        tabs = self.services.tabs
        if tabs is not None:
            try:
                info = await tabs.ensure_tab(
                    self.options.tab_target,
                    self.options.start_url or derived_start_url,
                    self.options.refresh,
                )
                self.url = info.url or None
            except Exception as exc:
                self.logger.push(log_ids.TAB_ENSURE, "warning", f"Tab preparation failed: {exc}")

        try:
            await self.run_state.restore()
            await self.run_state.add(
                self.run_id,
                RunStateEntry(
                    id=self.run_id,
                    flow_id=self.flow.id,
                    name=self.flow.name,
                    status="running",
                    started_at=self.started_at,
                    updated_at=self.started_at,
                ),
            )
        except Exception as exc:
            self.logger.push(log_ids.RUNSTATE_REGISTER, "warning", str(exc))

        await self.plugins.run_start(self._hook())

        await self._collect_variables()
        for problem in validate_variables(self.flow.variables, self.vars):
            self.logger.push(log_ids.VARIABLE_VALIDATE, "warning", problem)

        await self.logger.overlay_init()

        mismatch = await self._check_bindings()
        if mismatch is not None:
            return mismatch

        if self.options.capture_network:
            await self._start_network_capture()
        return None

    def _derive_start_url(self) -> str | None:
        if self.options.start_url:
            return self.options.start_url
        for node in self.graph.topo_order():
            if node.type == "navigate" and node.config.get("url"):
                return render_template_str(str(node.config["url"]), self.vars)
        return None

    async def _collect_variables(self) -> None:
        args = self.options.args
        needed = [
            v for v in self.flow.variables
            if args.get(v.key) in (None, "") and (v.rules.required or v.default in (None, ""))
        ]
        if not needed:
            return
        collector = self.services.variables
        if collector is None:
            self.logger.push(
                log_ids.VARIABLE_COLLECT,
                "warning",
                f"No variable collector; missing: {', '.join(v.key for v in needed)}",
            )
            return
        try:
            values = await collector.collect(needed)
        except Exception as exc:
            values = None
            logger.warning("Variable collection for run %s raised: %s", self.run_id, self.logger.mask(str(exc)))
        if values is None:
            self.logger.push(
                log_ids.VARIABLE_COLLECT,
                "warning",
                "Variable collection failed; using provided args/defaults",
            )
            return
        self.vars.update(values)

    async def _check_bindings(self) -> RunResult | None:
        bindings = self.flow.bindings
        if self.options.start_url or not bindings:
            return None
        tabs = self.services.tabs
        if tabs is None:
            self.logger.push(log_ids.BINDING_CHECK, "warning", "No tab controller; binding check skipped")
            return None
        try:
            current_url = (await tabs.get_active_tab_info()).url
        except Exception as exc:
            self.logger.push(log_ids.BINDING_CHECK, "warning", f"Could not read active tab: {exc}")
            return None
        if any(binding_matches(b, current_url) for b in bindings):
            return None
        return self._terminal_failure(log_ids.BINDING_CHECK, _BINDING_MISMATCH, url=current_url)

    async def _start_network_capture(self) -> None:
        network = self.services.network
        if network is None:
            self.logger.push(log_ids.NETWORK_CAPTURE, "warning", "Network capture requested but unavailable")
            return
        try:
            self._network_started = bool(
                await network.start(include_static=False, max_capture_ms=settings.NETWORK_CAPTURE_MAX_MS)
            )
        except Exception as exc:
            self.logger.push(log_ids.NETWORK_CAPTURE, "warning", str(exc) or "Network capture start errored")
            return
        if not self._network_started:
            self.logger.push(log_ids.NETWORK_CAPTURE, "warning", "Failed to confirm network capture start")

    # ── validate ───────────────────────────────────────────────

    def _validate(self) -> RunResult | None:
        if not self.graph.nodes:
            return self._terminal_failure(
                log_ids.DAG_REQUIRED,
                "Flow has no DAG nodes. Add nodes/edges before running it.",
            )
        problems = validate_structure(self.flow)
        if problems:
            return self._terminal_failure(log_ids.DAG_INVALID, "; ".join(problems))
        cycles = cycle_errors(self.flow)
        if cycles:
            return self._terminal_failure(
                log_ids.DAG_CYCLE,
                "Flow DAG contains a cycle; express repetition with foreach/while instead. "
                + "; ".join(cycles),
            )
        return None

    def _terminal_failure(self, step_id: str, message: str, url: str | None = None) -> RunResult:
        self.logger.push(step_id, "failed", message)
        self.aborted = True
        return RunResult(
            run_id=self.run_id,
            success=False,
            summary=RunSummary(took_ms=self._elapsed_ms()),
            url=url,
            outputs=None,
            logs=self.logger.get_logs(),
            screenshots=RunScreenshots(),
            paused=False,
        )

    # ── traverse ───────────────────────────────────────────────

    async def _traverse(self) -> RunResult:
        current = self.graph.start_node_id(self.options.start_node_id)
        start = self.graph.get(current) if current else None
        await self.logger.overlay_append(f"▶ start at {start.type if start else ''} ({current})")

        dispatched = 0
        while current:
            try:
                self._check_deadline()
            except GlobalTimeoutError as exc:
                self._on_timeout(exc)
                break
            if dispatched >= settings.MAX_ITERATIONS:
                self.logger.push(
                    log_ids.LOOP_GUARD,
                    "failed",
                    f"Exceeded {settings.MAX_ITERATIONS} iterations - possible cycle in DAG",
                )
                self.aborted = True
                break
            dispatched += 1

            node = self.graph.get(current)
            if node is None:
                break
            step = map_node_to_step(node)
            await self.logger.overlay_append(f"→ {step.type} ({step.id})")

            try:
                outcome = await self._dispatch(step)
            except GlobalTimeoutError as exc:
                self._on_timeout(exc)
                break

            if outcome.status == "paused":
                self.paused = True
                break

            if outcome.status == "failed":
                self.failed += 1
                target = self.graph.error_target(current)
                if target is None:
                    self.aborted = True
                    break
                await self.logger.overlay_append(f"↪ onError → {target}")
                current = target
                continue

            self.succeeded += 1
            current = await self._advance(current, step, outcome.next_label or EDGE_DEFAULT)

        return self._result()

    async def _dispatch(self, step: IRStep) -> StepOutcome:
        outcome = await self.step_runner.run(self.ctx, step)
        if outcome.status == "success" and outcome.control is not None:
            status = await self.control.run(outcome.control, self.ctx)
            if status == "paused":
                return StepOutcome("paused")
            if status == "failed":
                return StepOutcome("failed")
        return outcome

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise GlobalTimeoutError(f"Global timeout reached ({self.options.timeout_ms} ms)")

    def _on_timeout(self, exc: GlobalTimeoutError) -> None:
        self.logger.push(log_ids.GLOBAL_TIMEOUT, "failed", str(exc))
        self.timed_out = True
        self.aborted = True

    async def _advance(self, current: str, step: IRStep, suggested: str) -> str | None:
        override = await self.plugins.on_choose_next_label(self._hook(step=step, suggested=suggested))
        label = override or suggested
        next_id = self.graph.find_next_node_id(current, label)
        if next_id is not None:
            target = self.graph.get(next_id)
            await self.logger.overlay_append(
                f"↪ next({label}) → {target.type if target else ''} ({next_id})"
            )
            return next_id

        labels = self.graph.outgoing_labels(current)
        if labels:
            self.logger.push(
                step.id,
                "warning",
                f"No next edge for label '{label}'. Outgoing labels: [{', '.join(labels)}]",
            )
        return None

    def _result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            success=not self.paused and not self.aborted,
            summary=RunSummary(
                total=self.succeeded + self.failed,
                success=self.succeeded,
                failed=self.failed,
                took_ms=self._elapsed_ms(),
            ),
            url=self.url,
            outputs=strip_sensitive(self.vars, self.flow.sensitive_keys),
            logs=self.logger.get_logs() if (self.options.return_logs or self.timed_out) else None,
            screenshots=RunScreenshots(on_failure=self.logger.first_failure_screenshot()),
            paused=self.paused,
        )

    # ── cleanup ────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        if self._network_started:
            await self._stop_network_capture()

        await self.logger.overlay_done()

        success = not self.paused and not self.aborted
        await self.plugins.run_end(self._hook(success=success, failed=self.failed))

        if not self.paused:
            try:
                await self.logger.persist(self.flow, self.started_at, success)
            except Exception as exc:
                message = self.logger.mask(str(exc))
                logger.warning("Persisting run %s failed: %s", self.run_id, message)
                self.logger.push(log_ids.PERSIST, "warning", message)

        status = "stopped" if self.paused else ("completed" if success else "failed")
        try:
            await self.run_state.update(self.run_id, {"status": status})
        except Exception as exc:
            self.logger.push(log_ids.RUNSTATE_UPDATE, "warning", str(exc))

        if not self.paused:
            try:
                await self.run_state.delete(self.run_id)
            except Exception as exc:
                self.logger.push(log_ids.RUNSTATE_DELETE, "warning", str(exc))

        record_run_completed(self._elapsed_ms() / 1000, status)
        logger.info("Run %s finished: %s (failed steps: %d)", self.run_id, status, self.failed)

    async def _stop_network_capture(self) -> None:
        try:
            data = await self.services.network.stop()
        except Exception as exc:
            self.logger.diagnostic("network.stop", exc)
            return
        try:
            requests = data.get("requests") or []
            snippets = [
                NetworkSnippet(
                    method=str(r.get("method") or "GET"),
                    url=str(r.get("url") or ""),
                    status=r.get("statusCode", r.get("status")),
                    ms=max(0, (r.get("responseTime") or 0) - (r.get("requestTime") or 0)),
                )
                for r in requests
                if str(r.get("type")) in ("XHR", "Fetch")
            ][: settings.NETWORK_SNIPPET_LIMIT]
            self.logger.push(
                log_ids.NETWORK_CAPTURE,
                "success",
                f"Captured {int(data.get('requestCount') or len(requests))} requests",
                network_snippets=snippets,
            )
        except Exception as exc:
            self.logger.push(
                log_ids.NETWORK_CAPTURE, "warning", f"Failed parsing network capture result: {exc}"
            )

    def _hook(self, **kwargs: Any) -> HookContext:
        return HookContext(run_id=self.run_id, flow=self.flow, vars=self.vars, **kwargs)


async def run_flow(
    flow: IRFlow | dict[str, Any],
    options: RunOptions | dict[str, Any] | None = None,
    services: EngineServices | None = None,
) -> RunResult:
    """Replay ``flow`` and return its terminal outcome.

    ``flow`` may be an IRFlow or the recorder's raw dict (parsed here; a
    malformed document raises FlowParseError).  ``options`` accepts a
    RunOptions or a camelCase/snake_case dict.  Without ``services`` only the
    built-in control nodes can run.
    """
    ir = flow if isinstance(flow, IRFlow) else parse_flow(flow)
    if options is None:
        opts = RunOptions()
    elif isinstance(options, RunOptions):
        opts = options
    else:
        opts = RunOptions.model_validate(options)
    svc = services or EngineServices(registry=default_registry())
    return await ExecutionOrchestrator(ir, opts, svc).run()
