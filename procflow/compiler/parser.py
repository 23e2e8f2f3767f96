"""Graph document parser: converts a raw graph dict into a ProcedureGraph."""

from __future__ import annotations

import copy
from dataclasses import asdict
from types import MappingProxyType
from typing import Any

from procflow.compiler.ir import (
    DependencyRef,
    EdgeKind,
    IREdge,
    IRNode,
    NodeKind,
    ProcedureGraph,
    RetryPolicy,
)
from procflow.config import settings
from procflow.errors import GraphParseError


def parse_graph(doc: dict[str, Any]) -> ProcedureGraph:
    """Parse a graph document into an immutable ProcedureGraph.

    Only problems that make the document unreadable raise ``GraphParseError``;
    structural defects (dangling edges, unreachable nodes, ...) are left for
    ``validate_graph`` so they can be reported together.
    """
    if not isinstance(doc, dict):
        raise GraphParseError("Graph document must be a JSON object.")

    graph_id = doc.get("graph_id")
    version = doc.get("version")
    if not graph_id or not isinstance(graph_id, str):
        raise GraphParseError("Graph document must contain a non-empty 'graph_id'.")
    if not version:
        raise GraphParseError(f"Graph '{graph_id}' must contain a non-empty 'version'.")

    nodes_raw = doc.get("nodes") or {}
    if not isinstance(nodes_raw, dict):
        raise GraphParseError(f"Graph '{graph_id}': 'nodes' must be an object keyed by node id.")

    nodes: dict[str, IRNode] = {}
    for nid, ndata in nodes_raw.items():
        nodes[nid] = _parse_node(graph_id, nid, {} if ndata is None else ndata)

    edges_raw = doc.get("edges") or []
    if not isinstance(edges_raw, list):
        raise GraphParseError(f"Graph '{graph_id}': 'edges' must be a list.")
    edges = tuple(_parse_edge(graph_id, i, e) for i, e in enumerate(edges_raw))

    entry = doc.get("entry_node")
    if not entry:
        # Fall back to the (single) start node when entry_node is omitted.
        starts = [nid for nid, n in nodes.items() if n.kind == NodeKind.START]
        entry = starts[0] if len(starts) == 1 else ""

    return ProcedureGraph(
        graph_id=graph_id,
        version=str(version),
        entry_node=entry,
        nodes=MappingProxyType(nodes),
        edges=edges,
        name=doc.get("name", graph_id),
        description=doc.get("description"),
        document=MappingProxyType(_resolved_document(doc, nodes)),
    )


def stored_document(graph: ProcedureGraph) -> dict[str, Any]:
    """Plain-dict copy of ``graph.document``, ready for ``json.dumps``."""
    return copy.deepcopy(dict(graph.document))


# ── Internal helpers ────────────────────────────────────────────


def _resolved_document(doc: dict[str, Any], nodes: dict[str, IRNode]) -> dict[str, Any]:
    # Retry defaults are written into the copy so a stored version keeps the
    # policy it was registered with, whatever the defaults are on reload.
    resolved = copy.deepcopy(doc)
    resolved["nodes"] = {
        nid: {**(resolved["nodes"][nid] or {}), "retry_policy": asdict(node.retry_policy)}
        for nid, node in nodes.items()
    }
    return resolved


def _number(graph_id: str, where: str, key: str, value: Any, cast: type) -> Any:
    message = f"Graph '{graph_id}', {where}: '{key}' must be a number, got {value!r}."
    if isinstance(value, bool):
        raise GraphParseError(message)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise GraphParseError(message) from None


def _parse_node(graph_id: str, nid: str, d: Any) -> IRNode:
    if not isinstance(d, dict):
        raise GraphParseError(f"Graph '{graph_id}', node '{nid}': node definition must be an object.")
    kind = d.get("kind")
    if kind not in NodeKind.ALL:
        raise GraphParseError(
            f"Graph '{graph_id}', node '{nid}': unknown kind '{kind}'. "
            f"Must be one of: {sorted(NodeKind.ALL)}."
        )
    where = f"node '{nid}'"
    config = d.get("config") or {}
    if not isinstance(config, dict):
        raise GraphParseError(f"Graph '{graph_id}', {where}: 'config' must be an object.")
    dependencies = d.get("dependencies") or []
    if not isinstance(dependencies, list):
        raise GraphParseError(f"Graph '{graph_id}', {where}: 'dependencies' must be a list.")
    retry_policy = d.get("retry_policy") or {}
    if not isinstance(retry_policy, dict):
        raise GraphParseError(f"Graph '{graph_id}', {where}: 'retry_policy' must be an object.")
    timeout = d.get("timeout_s")
    return IRNode(
        node_id=nid,
        kind=kind,
        description=d.get("description"),
        handler=d.get("handler"),
        config=MappingProxyType(copy.deepcopy(config)),
        dependencies=tuple(_parse_dependency(graph_id, nid, dep) for dep in dependencies),
        timeout_s=_number(graph_id, where, "timeout_s", timeout, float) if timeout is not None else None,
        retry_policy=_parse_retry_policy(graph_id, where, retry_policy),
    )


def _parse_retry_policy(graph_id: str, where: str, d: dict[str, Any]) -> RetryPolicy:
    # Missing keys fall back to the engine-wide defaults.
    def pick(key: str, default: Any, cast: type) -> Any:
        value = d.get(key)
        return default if value is None else _number(graph_id, where, f"retry_policy.{key}", value, cast)

    return RetryPolicy(
        max_attempts=pick("max_attempts", settings.DEFAULT_MAX_ATTEMPTS, int),
        backoff_base_s=pick("backoff_base_s", settings.DEFAULT_BACKOFF_BASE_S, float),
        backoff_factor=pick("backoff_factor", settings.DEFAULT_BACKOFF_FACTOR, float),
        jitter=pick("jitter", settings.DEFAULT_JITTER, float),
    )


def _parse_dependency(graph_id: str, nid: str, d: Any) -> DependencyRef:
    if isinstance(d, str):
        # Shorthand: "other_graph" or "other_graph@1.2.0"
        dep_id, _, dep_version = d.partition("@")
        return DependencyRef(graph_id=dep_id, version=dep_version or None)
    if not isinstance(d, dict) or not d.get("graph_id"):
        raise GraphParseError(f"Graph '{graph_id}', node '{nid}': dependency needs a 'graph_id'.")
    version = d.get("version")
    alternatives = d.get("alternatives") or []
    if not isinstance(alternatives, list):
        raise GraphParseError(f"Graph '{graph_id}', node '{nid}': 'alternatives' must be a list.")
    return DependencyRef(
        graph_id=d["graph_id"],
        version=None if version in (None, "", "latest") else str(version),
        required=bool(d.get("required", True)),
        alternatives=tuple(_parse_dependency(graph_id, nid, a) for a in alternatives),
    )


def _parse_edge(graph_id: str, index: int, d: Any) -> IREdge:
    if not isinstance(d, dict):
        raise GraphParseError(f"Graph '{graph_id}': edge #{index} must be an object.")
    source = d.get("from", d.get("source"))
    target = d.get("to", d.get("target"))
    if not source or not target:
        raise GraphParseError(f"Graph '{graph_id}': edge #{index} needs 'from' and 'to'.")
    kind = d.get("kind", EdgeKind.NORMAL)
    if kind not in EdgeKind.ALL:
        raise GraphParseError(f"Graph '{graph_id}': edge #{index} has unknown kind '{kind}'.")
    return IREdge(
        source=source,
        target=target,
        condition=d.get("condition"),
        priority=_number(graph_id, f"edge #{index}", "priority", d.get("priority", 0), int),
        kind=kind,
    )
