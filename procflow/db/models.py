"""ORM models: graph registry, executions, checkpoints and the execution timeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


# ── Procedure graphs (immutable per version) ───────────────────


class GraphDefinition(Base):
    __tablename__ = "procedure_graphs"
    __table_args__ = (UniqueConstraint("graph_id", "version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    graph_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), default="active")  # active | superseded
    definition_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Executions ──────────────────────────────────────────────────


class Execution(Base):
    __tablename__ = "executions"
    __table_args__ = (Index("ix_executions_graph_owner_status", "graph_id", "owner_id", "status"),)

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    graph_id: Mapped[str] = mapped_column(String(256), nullable=False)
    graph_version: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    current_node: Mapped[str | None] = mapped_column(String(256), nullable=True)
    node_states_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    parent_execution_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    child_execution_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Checkpoints (append-only; rollback marks later rows superseded) ──


class CheckpointRecord(Base):
    __tablename__ = "checkpoints"
    __table_args__ = (UniqueConstraint("execution_id", "seq"),)

    checkpoint_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    execution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("executions.execution_id"), nullable=False, index=True
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    caused_by: Mapped[str] = mapped_column(String(256), nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    superseded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Execution events (append-only timeline) ────────────────────


class ExecutionEvent(Base):
    __tablename__ = "execution_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("executions.execution_id"), nullable=False, index=True
    )
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
