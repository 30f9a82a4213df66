"""
Flow Graph — read-only queries over a flow's nodes and edges.

The engine never mutates a graph. It asks three questions of it:
  - where does a new conversation start?    → find_entry_node
  - what is node X?                         → find_node
  - where does node X go next?              → resolve_*_edge

Edge resolution rules:
  action success   → edge labelled ``source-success``, else first unlabelled edge
  action failure   → edge labelled ``source-error``, else none (dead end)
  button reply     → edge whose source handle equals the chosen option id
  free-text input  → first unlabelled edge, else the first edge out

Parsed flows are cached in FlowCache so concurrent conversations on the
same flow share one graph object.
"""
from __future__ import annotations

import time
import structlog
from collections import Counter, OrderedDict
from typing import Optional

from models.schemas import Flow, FlowEdge, FlowGraph, FlowNode, NodeKind

logger = structlog.get_logger()

SUCCESS_HANDLE = "source-success"
ERROR_HANDLE = "source-error"


class FlowConfigurationError(Exception):
    """A flow graph the engine cannot walk (no entry, dangling edge, …)."""

    def __init__(self, message: str, flow_id: str = "", node_id: str = ""):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(message)


# ──────────────────────────────────────────────────────────────
#  Lookups
# ──────────────────────────────────────────────────────────────

def entry_candidates(graph: FlowGraph) -> list[FlowNode]:
    """All nodes without an incoming edge."""
    targets = {e.target for e in graph.edges}
    return [n for n in graph.nodes if n.id not in targets]


def find_entry_node(graph: FlowGraph) -> Optional[FlowNode]:
    """The unique node with no incoming edge, or None if there are zero or several."""
    candidates = entry_candidates(graph)
    if len(candidates) != 1:
        return None
    return candidates[0]


def find_node(graph: FlowGraph, node_id: Optional[str]) -> Optional[FlowNode]:
    if not node_id:
        return None
    return next((n for n in graph.nodes if n.id == node_id), None)


def outgoing_edges(graph: FlowGraph, node_id: str) -> list[FlowEdge]:
    return [e for e in graph.edges if e.source == node_id]


# ──────────────────────────────────────────────────────────────
#  Edge resolution
# ──────────────────────────────────────────────────────────────

def resolve_handle_edge(graph: FlowGraph, node_id: str, handle: str) -> Optional[FlowEdge]:
    return next((e for e in outgoing_edges(graph, node_id) if e.source_handle == handle), None)


def resolve_default_edge(graph: FlowGraph, node_id: str) -> Optional[FlowEdge]:
    """First unlabelled outgoing edge; falls back to the first edge of any label."""
    edges = outgoing_edges(graph, node_id)
    unlabelled = next((e for e in edges if not e.source_handle), None)
    if unlabelled is not None:
        return unlabelled
    return edges[0] if edges else None


def resolve_outcome_edge(graph: FlowGraph, node_id: str, success: bool) -> Optional[FlowEdge]:
    if not success:
        return resolve_handle_edge(graph, node_id, ERROR_HANDLE)
    edge = resolve_handle_edge(graph, node_id, SUCCESS_HANDLE)
    if edge is not None:
        return edge
    return next((e for e in outgoing_edges(graph, node_id) if not e.source_handle), None)


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

def validate_graph(graph: FlowGraph) -> list[str]:
    """Validate a flow graph. Returns list of error messages."""
    errors = []
    node_ids = [n.id for n in graph.nodes]
    id_set = set(node_ids)

    for node_id, count in Counter(node_ids).items():
        if count > 1:
            errors.append(f"duplicate node id '{node_id}'")

    entries = entry_candidates(graph)
    if not entries:
        errors.append("no entry node (every node has an incoming edge)")
    elif len(entries) > 1:
        errors.append(f"multiple entry nodes: {', '.join(n.id for n in entries)}")

    for i, e in enumerate(graph.edges):
        if e.source not in id_set:
            errors.append(f"edge[{i}] source '{e.source}' not in nodes")
        if e.target not in id_set:
            errors.append(f"edge[{i}] target '{e.target}' not in nodes")

    for n in graph.nodes:
        if n.kind == NodeKind.UNKNOWN:
            errors.append(f"node '{n.id}' has unsupported type '{n.type}'")

    return errors


# ──────────────────────────────────────────────────────────────
#  Flow cache
# ──────────────────────────────────────────────────────────────

class FlowCache:
    """
    Bounded LRU of loaded flows keyed by (user_id, flow_id) with a TTL.

    Flows are read-only during execution, so one parsed object can be shared
    by every conversation running it. Edits become visible once the entry
    expires or is invalidated.
    """

    def __init__(self, ttl_seconds: float = 30.0, max_entries: int = 256):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], tuple[float, Flow]] = OrderedDict()

    def get(self, user_id: str, flow_id: str) -> Optional[Flow]:
        key = (user_id, flow_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        loaded_at, flow = entry
        if time.monotonic() - loaded_at > self.ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return flow

    def put(self, flow: Flow) -> Flow:
        key = (flow.user_id, flow.id)
        errors = validate_graph(flow.graph)
        if errors:
            logger.warning("flow_graph_invalid", flow_id=flow.id, errors=errors)
        self._entries[key] = (time.monotonic(), flow)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return flow

    def invalidate(self, user_id: str, flow_id: str) -> None:
        self._entries.pop((user_id, flow_id), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
