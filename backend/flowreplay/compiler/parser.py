"""Flow JSON parser: converts a raw recorded flow dict into IR structures."""

from __future__ import annotations

from typing import Any

from flowreplay.compiler.ir import (
    AfterFlags,
    IRBinding,
    IREdge,
    IRFlow,
    IRGraph,
    IRNode,
    IRStep,
    IRVariable,
    IRVariableRules,
    RetryConfig,
)
from flowreplay.errors import FlowParseError

# Node config keys that describe step policy rather than executor params
_STEP_META_KEYS = frozenset({
    "retry", "timeoutMs", "timeout_ms", "after",
    "screenshotOnFail", "screenshot_on_fail",
})

_BACKOFF_ALIASES = {
    "none": "none",
    "linear": "linear",
    "exp": "exponential",
    "exponential": "exponential",
}

# Node types whose post-conditions are implied by what they do
_NAVIGATING_TYPES = frozenset({"navigate", "openTab"})
_TAB_SWITCH_TYPES = frozenset({"switchTab"})
_CLICK_TYPES = frozenset({"click", "dblclick"})


def parse_flow(data: dict[str, Any]) -> IRFlow:
    """Parse a recorded flow dict into an IRFlow."""
    if not isinstance(data, dict):
        raise FlowParseError(f"flow must be a mapping, got {type(data).__name__}")
    if not data.get("id"):
        raise FlowParseError("flow is missing 'id'")

    meta = data.get("meta") or {}
    variables = [_parse_variable(v) for v in data.get("variables") or []]
    bindings = [
        IRBinding(type=str(b.get("type", "")), value=str(b.get("value", "")))
        for b in meta.get("bindings") or []
    ]
    subflows = {
        str(sid): _parse_graph(sdata or {}, where=f"subflow '{sid}'")
        for sid, sdata in (data.get("subflows") or {}).items()
    }

    return IRFlow(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        version=int(data.get("version") or 1),
        variables=variables,
        graph=_parse_graph(data, where="flow"),
        subflows=subflows,
        meta=meta,
        bindings=bindings,
    )


def map_node_to_step(node: IRNode) -> IRStep:
    """Project a graph node onto the runtime step the StepRunner executes.

    Retry, timeout and post-condition flags are resolved here once, so the
    runner only ever reads ``step.after`` and never switches on node type.
    """
    cfg = node.config or {}
    params = {k: v for k, v in cfg.items() if k not in _STEP_META_KEYS}
    timeout = _pick(cfg, "timeoutMs", "timeout_ms")

    return IRStep(
        id=node.id,
        type=node.type,
        params=params,
        retry=parse_retry(cfg.get("retry")),
        timeout_ms=int(timeout) if timeout is not None else None,
        after=_resolve_after(node.type, cfg.get("after") or {}),
        screenshot_on_fail=bool(_pick(cfg, "screenshotOnFail", "screenshot_on_fail", default=True)),
    )


def parse_retry(raw: dict[str, Any] | None) -> RetryConfig:
    if not raw:
        return RetryConfig()
    backoff = _BACKOFF_ALIASES.get(str(raw.get("backoff") or "none").lower(), "none")
    return RetryConfig(
        count=max(0, int(raw.get("count") or 0)),
        interval_ms=max(0, int(_pick(raw, "intervalMs", "interval_ms", default=0) or 0)),
        backoff=backoff,
    )


# ── Internal helpers ────────────────────────────────────────────


def _pick(d: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key; recorder output mixes camelCase and snake_case."""
    for key in keys:
        if key in d and d[key] is not None:
            return d[key]
    return default


def _parse_graph(d: dict[str, Any], where: str) -> IRGraph:
    nodes = []
    for idx, n in enumerate(d.get("nodes") or []):
        if not isinstance(n, dict) or not n.get("id") or not n.get("type"):
            raise FlowParseError(f"{where}: node #{idx} needs 'id' and 'type'")
        nodes.append(
            IRNode(
                id=str(n["id"]),
                type=str(n["type"]),
                name=n.get("name"),
                config=dict(n.get("config") or {}),
            )
        )

    edges = []
    for idx, e in enumerate(d.get("edges") or []):
        src = _pick(e, "from", "from_id", "source")
        dst = _pick(e, "to", "to_id", "target")
        if src is None or dst is None:
            raise FlowParseError(f"{where}: edge #{idx} needs 'from' and 'to'")
        edges.append(
            IREdge(
                id=e.get("id"),
                from_id=str(src),
                to_id=str(dst),
                label=e.get("label") or None,
            )
        )
    return IRGraph(nodes=nodes, edges=edges)


def _parse_variable(v: dict[str, Any]) -> IRVariable:
    if not v.get("key"):
        raise FlowParseError("variable is missing 'key'")
    rules = v.get("rules") or {}
    return IRVariable(
        key=str(v["key"]),
        label=v.get("label"),
        default=v.get("default"),
        sensitive=bool(v.get("sensitive", False)),
        rules=IRVariableRules(
            required=bool(rules.get("required", False)),
            pattern=rules.get("pattern"),
            min=rules.get("min"),
            max=rules.get("max"),
            allowed_values=_pick(rules, "allowedValues", "allowed_values"),
        ),
    )


def _resolve_after(node_type: str, after: dict[str, Any]) -> AfterFlags:
    flags = AfterFlags(
        wait_for_navigation=bool(_pick(after, "waitForNavigation", "wait_for_navigation", default=False)),
        wait_for_network_idle=bool(_pick(after, "waitForNetworkIdle", "wait_for_network_idle", default=False)),
        prime_page=bool(_pick(after, "primePage", "prime_page", default=False)),
    )
    if node_type in _NAVIGATING_TYPES:
        flags.wait_for_navigation = True
        flags.prime_page = True
    elif node_type in _TAB_SWITCH_TYPES:
        flags.prime_page = True
    elif node_type in _CLICK_TYPES:
        # A click may or may not navigate; without an explicit wait, peek briefly.
        if not (flags.wait_for_navigation or flags.wait_for_network_idle):
            flags.quick_nav_check = True
    return flags
