"""Internal Representation (IR) dataclasses: output of flow parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


EDGE_DEFAULT = "default"
EDGE_ON_ERROR = "onError"


# ── Variables ───────────────────────────────────────────────────


@dataclass
class IRVariableRules:
    required: bool = False
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    allowed_values: list[Any] | None = None


@dataclass
class IRVariable:
    key: str
    label: str | None = None
    default: Any = None
    sensitive: bool = False
    rules: IRVariableRules = field(default_factory=IRVariableRules)


@dataclass
class IRBinding:
    type: str  # "domain" | "path" | "url"
    value: str


# ── Graph ───────────────────────────────────────────────────────


@dataclass
class IRNode:
    id: str
    type: str
    name: str | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class IREdge:
    from_id: str
    to_id: str
    id: str | None = None
    label: str | None = None  # None == "default"

    @property
    def effective_label(self) -> str:
        return self.label or EDGE_DEFAULT

    @property
    def is_default(self) -> bool:
        return self.effective_label == EDGE_DEFAULT

    @property
    def is_on_error(self) -> bool:
        return self.label == EDGE_ON_ERROR


@dataclass
class IRGraph:
    nodes: list[IRNode] = field(default_factory=list)
    edges: list[IREdge] = field(default_factory=list)


# ── Step (runtime projection of a node) ─────────────────────────


@dataclass
class RetryConfig:
    count: int = 0
    interval_ms: int = 0
    backoff: str = "none"  # "none" | "linear" | "exponential"


@dataclass
class AfterFlags:
    wait_for_navigation: bool = False
    wait_for_network_idle: bool = False
    quick_nav_check: bool = False
    prime_page: bool = False


@dataclass
class IRStep:
    id: str
    type: str
    params: dict[str, Any] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout_ms: int | None = None
    after: AfterFlags = field(default_factory=AfterFlags)
    screenshot_on_fail: bool = True


# ── Flow (top-level IR) ─────────────────────────────────────────


@dataclass
class IRFlow:
    id: str
    name: str = ""
    version: int = 1
    variables: list[IRVariable] = field(default_factory=list)
    graph: IRGraph = field(default_factory=IRGraph)
    subflows: dict[str, IRGraph] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    bindings: list[IRBinding] = field(default_factory=list)

    @property
    def sensitive_keys(self) -> set[str]:
        return {v.key for v in self.variables if v.sensitive}
