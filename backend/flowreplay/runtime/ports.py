"""Collaborator interfaces the engine consumes, plus the value types they exchange.

The engine never touches a browser, a UI or a database directly.  Every side
effect goes through one of the abstract base classes below, bundled into an
``EngineServices`` instance per run.  Only the node executor registry is
mandatory; every other port may be ``None`` and the engine degrades to a
warning (or a no-op) where it would have called it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Union

from flowreplay.compiler.ir import IRStep, IRVariable
from flowreplay.schemas.runs import RunLogEntry, RunRecord, RunStateEntry

if TYPE_CHECKING:
    from flowreplay.runtime.node_registry import NodeRegistry
    from flowreplay.services.run_state_service import RunStateService


# ── Value types ────────────────────────────────────────────────


@dataclass
class TabInfo:
    url: str = ""
    status: str = ""  # "loading" | "complete" | ""


@dataclass
class ForeachDirective:
    list_var: str
    item_var: str
    subflow_id: str
    concurrency: int = 1
    kind: str = "foreach"


@dataclass
class WhileDirective:
    condition: Any
    subflow_id: str
    max_iterations: int | None = None
    kind: str = "while"


ControlDirective = Union[ForeachDirective, WhileDirective]

# A deferred after-script is either a step for the registry or a callable.
DeferredScript = Union[IRStep, Callable[["ExecCtx"], Any]]


@dataclass
class ExecResult:
    already_logged: bool = False
    defer_after_script: DeferredScript | None = None
    next_label: str | None = None
    control: ControlDirective | None = None


@dataclass
class ExecCtx:
    """What an executor sees: the run id, the shared variable bag and a log sink."""

    run_id: str
    vars: dict[str, Any]
    log: Callable[[RunLogEntry], None]
    frame_id: int | None = None


# ── Ports ──────────────────────────────────────────────────────


class NodeExecutor(ABC):
    """Type-dispatching executor for steps."""

    @abstractmethod
    async def execute(self, ctx: ExecCtx, step: IRStep) -> ExecResult | dict | None:
        """Perform the step's side effect. Raise to signal failure."""


class TabController(ABC):
    """The automation surface (browser tab) the flow runs against."""

    @abstractmethod
    async def ensure_tab(self, tab_target: str, start_url: str | None, refresh: bool) -> TabInfo:
        """Make the target tab ready, navigating to start_url when given."""

    @abstractmethod
    async def get_active_tab_info(self) -> TabInfo:
        """Return the active tab's current url and load status."""

    async def prime_page(self) -> None:
        """Warm up page inspection after a navigation. Optional."""

    async def capture_screenshot(self) -> str | None:
        """Return a screenshot reference for failure logs. Optional."""
        return None


class VariableCollector(ABC):
    @abstractmethod
    async def collect(self, needed: list[IRVariable]) -> dict[str, Any] | None:
        """Ask for values of ``needed`` variables. ``None`` means collection failed."""


class RunPersistence(ABC):
    @abstractmethod
    async def append_run(self, record: RunRecord) -> None:
        """Store a terminal, unpaused run."""


class RunStateStore(ABC):
    """Backing store for the in-flight run registry."""

    @abstractmethod
    async def restore(self) -> dict[str, RunStateEntry]:
        """Load every persisted entry (used after a restart)."""

    @abstractmethod
    async def add(self, run_id: str, entry: RunStateEntry) -> None:
        ...

    @abstractmethod
    async def update(self, run_id: str, patch: dict[str, Any]) -> RunStateEntry | None:
        """Apply ``patch`` to an existing entry. Unknown ids are ignored."""

    @abstractmethod
    async def delete(self, run_id: str) -> None:
        ...


class OverlaySink(ABC):
    """Best-effort progress display. Failures here never affect the run."""

    @abstractmethod
    async def init(self) -> None:
        ...

    @abstractmethod
    async def append(self, text: str) -> None:
        ...

    @abstractmethod
    async def done(self) -> None:
        ...


class NetworkCaptureController(ABC):
    @abstractmethod
    async def start(self, include_static: bool, max_capture_ms: int) -> bool:
        """Begin capturing. Return True only when capture is confirmed running."""

    @abstractmethod
    async def stop(self) -> dict[str, Any]:
        """Stop and return ``{"requestCount": int, "requests": [...]}``."""


@dataclass
class EngineServices:
    registry: "NodeRegistry | NodeExecutor"
    tabs: TabController | None = None
    variables: VariableCollector | None = None
    persistence: RunPersistence | None = None
    run_state: "RunStateService | None" = None
    overlay: OverlaySink | None = None
    network: NetworkCaptureController | None = None
