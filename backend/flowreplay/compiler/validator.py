"""Flow static validator: checks IR integrity before execution."""

from __future__ import annotations

import re
from typing import Any, Iterable

from flowreplay.compiler.ir import IREdge, IRFlow, IRGraph, IRNode, IRVariable

# Control node types that reference a subflow through config.subflowId
_SUBFLOW_NODE_TYPES = frozenset({"foreach", "while"})

_WHITE, _GREY, _BLACK = 0, 1, 2


def validate_structure(flow: IRFlow) -> list[str]:
    """Return a list of error strings. Empty list means valid.

    Covers duplicate node ids, edges pointing at unknown nodes and control
    nodes naming an unknown subflow, for the main graph and every subflow.
    """
    errors = _graph_errors(flow.graph, "flow")
    for sid, sub in flow.subflows.items():
        errors.extend(_graph_errors(sub, f"subflow '{sid}'"))

    for where, graph in _all_graphs(flow):
        for node in graph.nodes:
            if node.type not in _SUBFLOW_NODE_TYPES:
                continue
            sid = node.config.get("subflowId")
            if sid and sid not in flow.subflows:
                errors.append(f"{where}: node '{node.id}' references unknown subflow '{sid}'.")
    return errors


def find_cycle(nodes: list[IRNode], edges: list[IREdge]) -> list[str] | None:
    """3-color DFS over the given edges. Returns one cycle as a node-id path, or None."""
    adj: dict[str, list[str]] = {n.id: [] for n in nodes}
    for e in edges:
        adj.setdefault(e.from_id, []).append(e.to_id)

    color: dict[str, int] = {}
    parent: dict[str, str] = {}

    for root in adj:
        if color.get(root, _WHITE) != _WHITE:
            continue
        # Iterative DFS: each frame is (node, iterator over its successors).
        color[root] = _GREY
        stack = [(root, iter(adj.get(root, ())))]
        while stack:
            u, successors = stack[-1]
            advanced = False
            for v in successors:
                c = color.get(v, _WHITE)
                if c == _GREY:
                    return _unwind(parent, u, v)
                if c == _WHITE:
                    color[v] = _GREY
                    parent[v] = u
                    stack.append((v, iter(adj.get(v, ()))))
                    advanced = True
                    break
            if not advanced:
                color[u] = _BLACK
                stack.pop()
    return None


def cycle_errors(flow: IRFlow) -> list[str]:
    """Cycle check over the full edge set (onError included) of every graph."""
    errors: list[str] = []
    for where, graph in _all_graphs(flow):
        cycle = find_cycle(graph.nodes, graph.edges)
        if cycle:
            errors.append(f"{where}: cycle {' -> '.join(cycle)}")
    return errors


def validate_variables(variables: Iterable[IRVariable], values: dict[str, Any]) -> list[str]:
    """Check supplied values against each variable's declared constraints.

    Missing values are not reported here; collection handles those.
    """
    errors: list[str] = []
    for var in variables:
        value = values.get(var.key)
        if value is None or value == "":
            continue
        rules = var.rules
        name = var.key

        if rules.pattern:
            try:
                if not re.fullmatch(rules.pattern, str(value)):
                    errors.append(f"Variable '{name}' does not match pattern '{rules.pattern}'.")
            except re.error:
                errors.append(f"Variable '{name}' has an invalid pattern '{rules.pattern}'.")

        if rules.min is not None or rules.max is not None:
            try:
                num = float(value)
            except (TypeError, ValueError):
                errors.append(f"Variable '{name}' must be numeric, got {value!r}.")
            else:
                low = _bound(rules.min, "min", name, errors)
                high = _bound(rules.max, "max", name, errors)
                if low is not None and num < low:
                    errors.append(f"Variable '{name}' is below minimum {rules.min}.")
                if high is not None and num > high:
                    errors.append(f"Variable '{name}' exceeds maximum {rules.max}.")

        if rules.allowed_values is not None:
            allowed = {str(a) for a in rules.allowed_values}
            if str(value) not in allowed:
                errors.append(
                    f"Variable '{name}' must be one of {sorted(allowed)}, got {value!r}."
                )
    return errors


# ── Internal helpers ────────────────────────────────────────────


def _bound(raw: Any, which: str, name: str, errors: list[str]) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        errors.append(f"Variable '{name}' has an invalid {which} rule {raw!r}.")
        return None


def _all_graphs(flow: IRFlow) -> list[tuple[str, IRGraph]]:
    graphs = [("flow", flow.graph)]
    graphs.extend((f"subflow '{sid}'", g) for sid, g in flow.subflows.items())
    return graphs


def _graph_errors(graph: IRGraph, where: str) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"{where}: duplicate node id '{node.id}'.")
        seen.add(node.id)

    for edge in graph.edges:
        if edge.from_id not in seen:
            errors.append(f"{where}: edge source '{edge.from_id}' not found.")
        if edge.to_id not in seen:
            errors.append(f"{where}: edge target '{edge.to_id}' not found.")
    return errors


def _unwind(parent: dict[str, str], tail: str, head: str) -> list[str]:
    """Rebuild the cycle head -> ... -> tail -> head from DFS parent links."""
    path = [tail]
    while path[-1] != head:
        path.append(parent[path[-1]])
    path.reverse()
    path.append(head)
    return path
