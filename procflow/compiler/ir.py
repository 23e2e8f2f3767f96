"""Graph model dataclasses: output of graph document parsing.

A ``ProcedureGraph`` is immutable once built: nodes and edges are frozen and
the containers are tuples / read-only mappings, so a single instance can be
shared by every execution pinned to the same ``(graph_id, version)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


class NodeKind:
    START = "start"
    END = "end"
    ACTION = "action"
    DECISION = "decision"
    DEPENDENCY_GATE = "dependency_gate"
    HUMAN_REVIEW = "human_review"
    TERMINAL = "terminal"

    ALL = frozenset({START, END, ACTION, DECISION, DEPENDENCY_GATE, HUMAN_REVIEW, TERMINAL})
    EXITS = frozenset({END, TERMINAL})
    # Kinds allowed to carry the retry self-loop annotation.
    SELF_LOOP_KINDS = frozenset({ACTION, DEPENDENCY_GATE})


class EdgeKind:
    NORMAL = "normal"
    RECOVERY = "recovery"

    ALL = frozenset({NORMAL, RECOVERY})


# ── Retry policy ────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: float = 0.1  # fraction of the computed delay added at random


# ── Dependency reference ────────────────────────────────────────


@dataclass(frozen=True)
class DependencyRef:
    graph_id: str
    version: str | None = None  # None / "latest" → newest registered at launch time
    required: bool = True
    alternatives: tuple[DependencyRef, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.graph_id}@{self.version or 'latest'}"

    @property
    def candidates(self) -> tuple[DependencyRef, ...]:
        """The ref itself followed by its alternatives, in preference order."""
        return (self,) + self.alternatives

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "version": self.version,
            "required": self.required,
            "alternatives": [a.to_dict() for a in self.alternatives],
        }


# ── Node / edge ─────────────────────────────────────────────────


@dataclass(frozen=True)
class IRNode:
    node_id: str
    kind: str
    description: str | None = None
    handler: str | None = None
    config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    dependencies: tuple[DependencyRef, ...] = ()
    timeout_s: float | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def is_exit(self) -> bool:
        return self.kind in NodeKind.EXITS


@dataclass(frozen=True)
class IREdge:
    source: str
    target: str
    condition: str | None = None
    priority: int = 0
    kind: str = EdgeKind.NORMAL

    @property
    def is_recovery(self) -> bool:
        return self.kind == EdgeKind.RECOVERY

    @property
    def is_self_loop(self) -> bool:
        return self.source == self.target


# ── Graph ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProcedureGraph:
    graph_id: str
    version: str
    entry_node: str
    nodes: Mapping[str, IRNode]
    edges: tuple[IREdge, ...] = ()
    name: str = ""
    description: str | None = None
    document: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False)

    @property
    def exit_nodes(self) -> tuple[str, ...]:
        return tuple(nid for nid, n in self.nodes.items() if n.kind == NodeKind.END)

    @property
    def terminal_nodes(self) -> tuple[str, ...]:
        return tuple(nid for nid, n in self.nodes.items() if n.kind == NodeKind.TERMINAL)

    def outgoing(self, node_id: str, kind: str | None = None) -> list[IREdge]:
        """Edges leaving *node_id*, ascending priority (declaration order breaks ties)."""
        edges = [e for e in self.edges if e.source == node_id and (kind is None or e.kind == kind)]
        return sorted(edges, key=lambda e: e.priority)

    def recovery_edges(self, node_id: str) -> list[IREdge]:
        return self.outgoing(node_id, EdgeKind.RECOVERY)

    def normal_edges(self, node_id: str) -> list[IREdge]:
        return self.outgoing(node_id, EdgeKind.NORMAL)
