"""Execution state schema: the mutable record of one running graph instance.

These models are the in-memory view handed out by the execution store.  A
caller always works on its own copy; changes only become durable through
``ExecutionStore.apply_transition``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_ON_DEPENDENCY = "waiting_on_dependency"
    WAITING_EXTERNAL = "waiting_external"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"


class DependencyStatus(str, Enum):
    RUNNING = "running"  # a child execution is in flight for the current candidate
    SATISFIED = "satisfied"
    FAILED = "failed"  # required, every candidate failed
    SKIPPED = "skipped"  # optional, every candidate failed


class NodeState(BaseModel):
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    entered_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    error_kind: str | None = None
    output_data: dict[str, Any] = Field(default_factory=dict)
    # Recovery targets considered on failure, in recommendation order.
    recovery_options: list[str] = Field(default_factory=list)
    # Earliest time the next handler attempt may run (retry backoff).
    next_attempt_at: datetime | None = None


class ExecutionState(BaseModel):
    execution_id: str
    graph_id: str
    graph_version: str
    owner_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_node: str | None = None
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    parent_execution_id: str | None = None
    child_execution_ids: list[str] = Field(default_factory=list)
    depth: int = 0
    version: int = 0
    error: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def node(self, node_id: str) -> NodeState:
        """Return the node state for *node_id*, creating a pending one if absent."""
        ns = self.node_states.get(node_id)
        if ns is None:
            ns = NodeState()
            self.node_states[node_id] = ns
        return ns

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready copy of the fields a checkpoint restores."""
        return {
            "status": self.status.value,
            "current_node": self.current_node,
            "node_states": {
                nid: ns.model_dump(mode="json") for nid, ns in self.node_states.items()
            },
            "context": self.model_dump(mode="json", include={"context"})["context"],
            "child_execution_ids": list(self.child_execution_ids),
            "error": self.error,
        }

    def restore(self, snapshot: dict[str, Any]) -> None:
        self.status = ExecutionStatus(snapshot["status"])
        self.current_node = snapshot.get("current_node")
        self.node_states = {
            nid: NodeState.model_validate(ns) for nid, ns in (snapshot.get("node_states") or {}).items()
        }
        self.context = dict(snapshot.get("context") or {})
        self.child_execution_ids = list(snapshot.get("child_execution_ids") or [])
        self.error = snapshot.get("error")


class Checkpoint(BaseModel):
    checkpoint_id: str
    execution_id: str
    seq: int
    created_at: datetime
    caused_by: str
    snapshot: dict[str, Any]
    superseded: bool = False
