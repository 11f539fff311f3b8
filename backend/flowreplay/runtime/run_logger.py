"""Per-run log of step outcomes, overlay feedback and record persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from flowreplay.compiler.ir import IRFlow
from flowreplay.runtime.ports import OverlaySink, RunPersistence
from flowreplay.schemas.runs import RunLogEntry, RunRecord
from flowreplay.utils.redaction import mask_values

logger = logging.getLogger("flowreplay.run_logger")

# Step ids for entries the engine writes on its own behalf
DAG_REQUIRED = "dag-required"
DAG_INVALID = "dag-invalid"
DAG_CYCLE = "dag-cycle"
BINDING_CHECK = "binding-check"
GLOBAL_TIMEOUT = "global-timeout"
LOOP_GUARD = "loop-guard"
TAB_ENSURE = "tab-ensure"
VARIABLE_COLLECT = "variable-collect"
VARIABLE_VALIDATE = "variable-validate"
NETWORK_CAPTURE = "network-capture"
PLUGIN_RUN_START = "plugin-runStart"
PLUGIN_RUN_END = "plugin-runEnd"
RUNSTATE_REGISTER = "runState-register"
RUNSTATE_UPDATE = "runState-update"
RUNSTATE_DELETE = "runState-delete"
PERSIST = "persist"

_LEVELS = {
    "success": logging.INFO,
    "paused": logging.INFO,
    "retrying": logging.WARNING,
    "warning": logging.WARNING,
    "failed": logging.ERROR,
}


@dataclass
class NonFatalDiagnostic:
    """A failure on a feedback path (overlay, screenshot, ...) that the run ignores."""

    source: str
    message: str
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RunLogger:
    def __init__(
        self,
        run_id: str,
        overlay: OverlaySink | None = None,
        persistence: RunPersistence | None = None,
        secrets: Callable[[], Iterable[Any]] | None = None,
    ):
        self.run_id = run_id
        self.overlay = overlay
        self.persistence = persistence
        self._secrets = secrets or (lambda: ())
        self._logs: list[RunLogEntry] = []
        self.diagnostics: list[NonFatalDiagnostic] = []

    def mask(self, text: str | None) -> str | None:
        """Hide the current values of sensitive variables inside ``text``."""
        return mask_values(text, self._secrets())

    def push(self, step_id: str, status: str, message: str | None = None, **fields: Any) -> RunLogEntry:
        return self.push_entry(RunLogEntry(step_id=step_id, status=status, message=message, **fields))

    def push_entry(self, entry: RunLogEntry) -> RunLogEntry:
        if entry.message:
            entry.message = self.mask(entry.message)
        self._logs.append(entry)
        logger.log(
            _LEVELS.get(entry.status, logging.INFO),
            "[%s] %s %s%s",
            self.run_id,
            entry.step_id,
            entry.status,
            f": {entry.message}" if entry.message else "",
        )
        return entry

    def get_logs(self) -> list[RunLogEntry]:
        return list(self._logs)

    def first_failure_screenshot(self) -> str | None:
        for entry in self._logs:
            if entry.status == "failed" and entry.screenshot:
                return entry.screenshot
        return None

    # ── overlay (best-effort; failures become diagnostics) ────

    async def overlay_init(self) -> None:
        if self.overlay is not None:
            await self._guard("overlay.init", self.overlay.init())

    async def overlay_append(self, text: str) -> None:
        if self.overlay is not None:
            await self._guard("overlay.append", self.overlay.append(self.mask(text)))

    async def overlay_done(self) -> None:
        if self.overlay is not None:
            await self._guard("overlay.done", self.overlay.done())

    def diagnostic(self, source: str, exc: BaseException | str) -> NonFatalDiagnostic:
        diag = NonFatalDiagnostic(source=source, message=self.mask(str(exc)))
        self.diagnostics.append(diag)
        logger.debug("[%s] non-fatal %s: %s", self.run_id, source, diag.message)
        return diag

    async def _guard(self, source: str, awaitable) -> None:
        try:
            await awaitable
        except Exception as exc:
            self.diagnostic(source, exc)

    # ── persistence ───────────────────────────────────────────

    async def persist(self, flow: IRFlow, started_at: datetime, success: bool) -> RunRecord | None:
        """Append the run record. Without a persistence port this is a no-op."""
        if self.persistence is None:
            return None
        record = RunRecord(
            id=self.run_id,
            flow_id=flow.id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            success=success,
            entries=self.get_logs(),
        )
        await self.persistence.append_run(record)
        return record
