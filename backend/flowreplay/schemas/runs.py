"""Pydantic models for run options, results, logs and run-state entries.

Field names are snake_case; camelCase aliases are accepted on input and used
by ``model_dump(by_alias=True)`` so results can be handed straight back to a
recorder front-end.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

LogStatus = Literal["success", "failed", "retrying", "warning", "paused"]
RunStatus = Literal["running", "completed", "failed", "stopped"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class NetworkSnippet(_CamelModel):
    method: str = "GET"
    url: str = ""
    status: int | None = None
    ms: float | None = None


class RunLogEntry(_CamelModel):
    step_id: str
    status: LogStatus
    message: str | None = None
    took_ms: float | None = None
    screenshot: str | None = None
    network_snippets: list[NetworkSnippet] | None = None
    ts: datetime = Field(default_factory=_utcnow)


class RunRecord(_CamelModel):
    id: str
    flow_id: str
    started_at: datetime
    finished_at: datetime | None = None
    success: bool | None = None
    entries: list[RunLogEntry] = Field(default_factory=list)


class RunStateEntry(_CamelModel):
    id: str
    flow_id: str
    name: str = ""
    status: RunStatus = "running"
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class RunSummary(_CamelModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    took_ms: float = 0


class RunScreenshots(_CamelModel):
    on_failure: str | None = None


class RunResult(_CamelModel):
    run_id: str
    success: bool
    summary: RunSummary = Field(default_factory=RunSummary)
    url: str | None = None
    outputs: dict[str, Any] | None = None
    logs: list[RunLogEntry] | None = None
    screenshots: RunScreenshots = Field(default_factory=RunScreenshots)
    paused: bool = False


class RunOptions(_CamelModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tab_target: Literal["current", "new"] = "current"
    refresh: bool = False
    capture_network: bool = False
    return_logs: bool = False
    timeout_ms: int = 0
    start_url: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    start_node_id: str | None = None
    plugins: list[Any] | None = None

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _non_negative_timeout(cls, v: Any) -> int:
        try:
            return max(0, int(v or 0))
        except (TypeError, ValueError):
            return 0

    @field_validator("args", mode="before")
    @classmethod
    def _args_default(cls, v: Any) -> dict[str, Any]:
        return dict(v or {})
