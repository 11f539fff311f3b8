"""Adjacency index over a flow graph, built once per run."""

from __future__ import annotations

from collections import deque

from flowreplay.compiler.ir import EDGE_DEFAULT, EDGE_ON_ERROR, IREdge, IRGraph, IRNode


def default_edges_only(edges: list[IREdge]) -> list[IREdge]:
    """Edges that define ordering: everything except onError."""
    return [e for e in edges if not e.is_on_error]


def topo_order(nodes: list[IRNode], edges: list[IREdge]) -> list[IRNode]:
    """Kahn's algorithm, stable with respect to declaration order.

    Nodes left over by a cycle are appended in declaration order so callers
    always get every node exactly once.
    """
    id2node = {n.id: n for n in nodes}
    indeg = {n.id: 0 for n in nodes}
    succ: dict[str, list[str]] = {n.id: [] for n in nodes}
    for e in edges:
        if e.from_id in id2node and e.to_id in id2node:
            succ[e.from_id].append(e.to_id)
            indeg[e.to_id] += 1

    queue = deque(n.id for n in nodes if indeg[n.id] == 0)
    order: list[IRNode] = []
    placed: set[str] = set()
    while queue:
        nid = queue.popleft()
        if nid in placed:
            continue
        placed.add(nid)
        order.append(id2node[nid])
        for nxt in succ[nid]:
            indeg[nxt] -= 1
            if indeg[nxt] == 0:
                queue.append(nxt)

    order.extend(n for n in nodes if n.id not in placed)
    return order


class FlowGraph:
    """Read-only lookups for traversal: id -> node, id -> outgoing edges."""

    def __init__(self, graph: IRGraph):
        self.nodes = list(graph.nodes)
        self.edges = list(graph.edges)
        self.id2node: dict[str, IRNode] = {n.id: n for n in self.nodes}
        self.out_edges: dict[str, list[IREdge]] = {}
        for e in self.edges:
            self.out_edges.setdefault(e.from_id, []).append(e)

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> IRNode | None:
        return self.id2node.get(node_id)

    def outgoing_labels(self, node_id: str) -> list[str]:
        return [e.effective_label for e in self.out_edges.get(node_id, [])]

    def topo_order(self) -> list[IRNode]:
        return topo_order(self.nodes, default_edges_only(self.edges))

    def start_node_id(self, requested: str | None = None) -> str | None:
        """Pick the traversal entry point.

        Explicit request if it names a node, else the single zero-indegree node
        over default edges, else the first zero-indegree node, else nodes[0].
        """
        if requested and requested in self.id2node:
            return requested
        if not self.nodes:
            return None

        indeg = {n.id: 0 for n in self.nodes}
        for e in default_edges_only(self.edges):
            if e.to_id in indeg:
                indeg[e.to_id] += 1
        roots = [n.id for n in self.nodes if indeg[n.id] == 0]
        if len(roots) == 1:
            return roots[0]

        full_indeg = {n.id: 0 for n in self.nodes}
        for e in self.edges:
            if e.to_id in full_indeg:
                full_indeg[e.to_id] += 1
        for n in self.nodes:
            if full_indeg[n.id] == 0:
                return n.id
        return roots[0] if roots else self.nodes[0].id

    def error_target(self, node_id: str) -> str | None:
        for e in self.out_edges.get(node_id, []):
            if e.label == EDGE_ON_ERROR:
                return e.to_id
        return None

    def find_next_node_id(self, node_id: str, label: str) -> str | None:
        """Follow the edge matching label, else the unlabeled/default edge."""
        edges = self.out_edges.get(node_id, [])
        for e in edges:
            if e.effective_label == label:
                return e.to_id
        for e in edges:
            if e.effective_label == EDGE_DEFAULT:
                return e.to_id
        return None
