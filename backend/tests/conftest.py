"""Shared fixtures for backend tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from flowreplay.runtime.node_registry import default_registry
from flowreplay.runtime.ports import (
    EngineServices,
    NetworkCaptureController,
    OverlaySink,
    RunPersistence,
    TabController,
    TabInfo,
    VariableCollector,
)
from flowreplay.schemas.runs import RunRecord
from flowreplay.services.run_state_service import InMemoryRunStateStore, RunStateService


# ── Minimal flow fixtures ───────────────────────────────────────


@pytest.fixture
def linear_flow() -> dict:
    """A -> B -> C, all of a recordable 'noop' type."""
    return {
        "id": "flow_linear",
        "name": "Linear",
        "version": 1,
        "nodes": [
            {"id": "A", "type": "noop"},
            {"id": "B", "type": "noop"},
            {"id": "C", "type": "noop"},
        ],
        "edges": [
            {"id": "e1", "from": "A", "to": "B"},
            {"id": "e2", "from": "B", "to": "C"},
        ],
    }


@pytest.fixture
def branching_flow() -> dict:
    """check --(yes)--> Y ; check --(default)--> N."""
    return {
        "id": "flow_branch",
        "name": "Branching",
        "nodes": [
            {"id": "check", "type": "decide"},
            {"id": "Y", "type": "noop"},
            {"id": "N", "type": "noop"},
        ],
        "edges": [
            {"from": "check", "to": "Y", "label": "yes"},
            {"from": "check", "to": "N"},
        ],
    }


@pytest.fixture
def recorder_flow() -> dict:
    """A realistic recorder export: navigate, fill, click, with variables and bindings."""
    return {
        "id": "flow_login",
        "name": "Login",
        "version": 3,
        "meta": {"bindings": [{"type": "domain", "value": "example.com"}]},
        "variables": [
            {"key": "user", "label": "User", "default": "alice", "rules": {"required": True}},
            {"key": "password", "sensitive": True, "rules": {"required": True}},
        ],
        "nodes": [
            {"id": "nav", "type": "navigate", "config": {"url": "https://example.com/{user}"}},
            {
                "id": "fill",
                "type": "fill",
                "config": {
                    "target": {"candidates": [{"type": "css", "value": "#pw"}]},
                    "value": "{password}",
                    "retry": {"count": 2, "intervalMs": 50, "backoff": "exp"},
                    "timeoutMs": 5000,
                },
            },
            {
                "id": "submit",
                "type": "click",
                "config": {"after": {"waitForNavigation": True}, "screenshotOnFail": False},
            },
        ],
        "edges": [
            {"from": "nav", "to": "fill"},
            {"from": "fill", "to": "submit"},
        ],
    }


# ── Fake collaborators ──────────────────────────────────────────


class FakeTabs(TabController):
    def __init__(self, url: str = "https://example.com/home", status: str = "complete"):
        self.url = url
        self.status = status
        self.ensure_calls: list[tuple[str, str | None, bool]] = []
        self.primed = 0

    async def ensure_tab(self, tab_target: str, start_url: str | None, refresh: bool) -> TabInfo:
        self.ensure_calls.append((tab_target, start_url, refresh))
        if start_url:
            self.url = start_url
        return TabInfo(url=self.url, status=self.status)

    async def get_active_tab_info(self) -> TabInfo:
        return TabInfo(url=self.url, status=self.status)

    async def prime_page(self) -> None:
        self.primed += 1

    async def capture_screenshot(self) -> str | None:
        return "shot://failure.png"


class FakeCollector(VariableCollector):
    def __init__(self, values: dict[str, Any] | None):
        self.values = values
        self.asked: list[str] = []

    async def collect(self, needed):
        self.asked.extend(v.key for v in needed)
        return self.values


class MemoryPersistence(RunPersistence):
    def __init__(self) -> None:
        self.records: list[RunRecord] = []

    async def append_run(self, record: RunRecord) -> None:
        self.records.append(record)


class FakeOverlay(OverlaySink):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.lines: list[str] = []
        self.state = "new"

    async def init(self) -> None:
        if self.fail:
            raise RuntimeError("overlay gone")
        self.state = "open"

    async def append(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("overlay gone")
        self.lines.append(text)

    async def done(self) -> None:
        if self.fail:
            raise RuntimeError("overlay gone")
        self.state = "done"


class FakeNetwork(NetworkCaptureController):
    def __init__(self, confirm: bool = True, requests: list[dict] | None = None):
        self.confirm = confirm
        self.requests = requests or []
        self.started = False
        self.stopped = False

    async def start(self, include_static: bool, max_capture_ms: int) -> bool:
        self.started = True
        return self.confirm

    async def stop(self) -> dict:
        self.stopped = True
        return {"requestCount": len(self.requests), "requests": self.requests}


class CallLog:
    """Records which node ids ran, in order."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def count(self, step_id: str) -> int:
        return self.calls.count(step_id)


@pytest.fixture
def calls() -> CallLog:
    return CallLog()


@pytest.fixture
def registry(calls):
    """Default registry plus a 'noop' type that records every execution."""
    reg = default_registry()

    async def noop(ctx, step):
        calls.calls.append(step.id)

    reg.register("noop", noop)
    return reg


@pytest.fixture
def run_state() -> RunStateService:
    return RunStateService(InMemoryRunStateStore())


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def services(registry, run_state, persistence) -> EngineServices:
    return EngineServices(registry=registry, run_state=run_state, persistence=persistence)


@pytest.fixture
def fake_tabs() -> FakeTabs:
    return FakeTabs()


def always_fail(message: str = "boom"):
    async def handler(ctx, step):
        raise RuntimeError(message)
    return handler


def sleeper(ms: int, calls: CallLog | None = None):
    async def handler(ctx, step):
        if calls is not None:
            calls.calls.append(step.id)
        await asyncio.sleep(ms / 1000)
    return handler
