"""Execution state store: the single write path for execution state.

Every mutation goes through :meth:`ExecutionStore.apply_transition`, a
compare-and-swap on the execution's version counter.  The pre-transition
snapshot is written as a checkpoint in the same database transaction as the
state update, so either both persist or neither does.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from procflow.config import settings
from procflow.db.engine import Database
from procflow.db.models import CheckpointRecord, Execution, ExecutionEvent
from procflow.errors import (
    ConflictError,
    DuplicateExecution,
    ExecutionNotFound,
    InvalidCheckpoint,
)
from procflow.runtime.state import (
    TERMINAL_STATUSES,
    Checkpoint,
    ExecutionState,
    ExecutionStatus,
    NodeState,
    utcnow,
)
from procflow.utils.redaction import build_patterns, redact_sensitive_data

logger = logging.getLogger("procflow.store")

Mutation = Callable[[ExecutionState], None]

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)


@dataclass(frozen=True)
class EventSpec:
    """A timeline event persisted atomically with a transition."""

    event_type: str
    node_id: str | None = None
    attempt: int | None = None
    payload: dict[str, Any] | None = None


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class ExecutionStore:
    def __init__(self, database: Database, redacted_fields: list[str] | None = None):
        self._db = database
        self._redaction_patterns = build_patterns(
            redacted_fields if redacted_fields is not None else settings.REDACTED_FIELDS
        )

    # ── Create / read ───────────────────────────────────────────

    async def create(
        self,
        graph_id: str,
        graph_version: str,
        owner_id: str,
        initial_context: dict[str, Any] | None = None,
        *,
        allow_parallel: bool = False,
        parent_execution_id: str | None = None,
        depth: int = 0,
    ) -> str:
        """Create a pending execution and return its id.

        Raises ``DuplicateExecution`` when a non-terminal execution of the same
        graph already exists for *owner_id*, unless *allow_parallel* is set.
        """
        async with self._db.session() as db:
            if not allow_parallel:
                existing = await db.execute(
                    select(Execution.execution_id)
                    .where(
                        Execution.graph_id == graph_id,
                        Execution.owner_id == owner_id,
                        Execution.status.not_in(_TERMINAL_VALUES),
                    )
                    .limit(1)
                )
                existing_id = existing.scalar_one_or_none()
                if existing_id is not None:
                    raise DuplicateExecution(graph_id, owner_id, existing_id)

            row = Execution(
                graph_id=graph_id,
                graph_version=graph_version,
                owner_id=owner_id,
                status=ExecutionStatus.PENDING.value,
                context_json=json.dumps(initial_context or {}),
                parent_execution_id=parent_execution_id,
                depth=depth,
                version=0,
            )
            db.add(row)
            await db.flush()
            await self._add_event(
                db,
                row.execution_id,
                EventSpec(
                    "execution_created",
                    payload={
                        "graph_id": graph_id,
                        "graph_version": graph_version,
                        "parent_execution_id": parent_execution_id,
                    },
                ),
            )
            execution_id = row.execution_id

        logger.info(
            "Created execution %s (graph=%s@%s owner=%s parent=%s)",
            execution_id, graph_id, graph_version, owner_id, parent_execution_id,
        )
        return execution_id

    async def get(self, execution_id: str) -> ExecutionState:
        async with self._db.session() as db:
            row = await db.get(Execution, execution_id)
            if row is None:
                raise ExecutionNotFound(execution_id)
            return self._to_state(row)

    async def list_children(self, execution_id: str) -> list[ExecutionState]:
        async with self._db.session() as db:
            result = await db.execute(
                select(Execution)
                .where(Execution.parent_execution_id == execution_id)
                .order_by(Execution.created_at.asc())
            )
            return [self._to_state(r) for r in result.scalars().all()]

    async def list_non_terminal(self) -> list[ExecutionState]:
        async with self._db.session() as db:
            result = await db.execute(
                select(Execution)
                .where(Execution.status.not_in(_TERMINAL_VALUES))
                .order_by(Execution.created_at.asc())
            )
            return [self._to_state(r) for r in result.scalars().all()]

    async def is_graph_in_use(self, graph_id: str, version: str) -> bool:
        async with self._db.session() as db:
            result = await db.execute(
                select(func.count())
                .select_from(Execution)
                .where(
                    Execution.graph_id == graph_id,
                    Execution.graph_version == version,
                    Execution.status.not_in(_TERMINAL_VALUES),
                )
            )
            return (result.scalar_one() or 0) > 0

    # ── The write path ──────────────────────────────────────────

    async def apply_transition(
        self,
        execution_id: str,
        expected_version: int,
        mutation: Mutation,
        caused_by: str = "transition",
        events: Iterable[EventSpec] = (),
    ) -> int:
        """Apply *mutation* to a copy of the state if the version still matches.

        Returns the new version.  Raises ``ConflictError`` when
        *expected_version* is stale; if *mutation* raises, nothing is written
        and the exception propagates.
        """
        async with self._db.session() as db:
            row = await db.get(Execution, execution_id, with_for_update=True)
            if row is None:
                raise ExecutionNotFound(execution_id)
            if row.version != expected_version:
                raise ConflictError(execution_id, expected_version, row.version)

            current = self._to_state(row)
            working = current.model_copy(deep=True)
            mutation(working)

            await self._add_checkpoint(db, execution_id, current.snapshot(), caused_by)

            new_version = expected_version + 1
            working.updated_at = utcnow()
            result = await db.execute(
                update(Execution)
                .where(Execution.execution_id == execution_id, Execution.version == expected_version)
                .values(version=new_version, **self._state_values(working))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(execution_id, expected_version, None)

            for spec in events:
                await self._add_event(db, execution_id, spec)

        logger.debug(
            "Execution %s v%d -> v%d (%s): status=%s node=%s",
            execution_id, expected_version, new_version, caused_by,
            working.status.value, working.current_node,
        )
        return new_version

    # ── Checkpoints ─────────────────────────────────────────────

    async def checkpoint(self, execution_id: str, description: str) -> str:
        """Record an explicit checkpoint of the current state (version unchanged)."""
        async with self._db.session() as db:
            row = await db.get(Execution, execution_id)
            if row is None:
                raise ExecutionNotFound(execution_id)
            record = await self._add_checkpoint(
                db, execution_id, self._to_state(row).snapshot(), description
            )
            return record.checkpoint_id

    async def list_checkpoints(
        self, execution_id: str, include_superseded: bool = False
    ) -> list[Checkpoint]:
        async with self._db.session() as db:
            stmt = select(CheckpointRecord).where(CheckpointRecord.execution_id == execution_id)
            if not include_superseded:
                stmt = stmt.where(CheckpointRecord.superseded.is_(False))
            result = await db.execute(stmt.order_by(CheckpointRecord.seq.asc()))
            return [self._to_checkpoint(r) for r in result.scalars().all()]

    async def get_checkpoint(self, execution_id: str, checkpoint_id: str) -> Checkpoint:
        async with self._db.session() as db:
            record = await db.get(CheckpointRecord, checkpoint_id)
            if record is None or record.execution_id != execution_id:
                raise InvalidCheckpoint(
                    f"Checkpoint {checkpoint_id} does not belong to execution {execution_id}"
                )
            return self._to_checkpoint(record)

    async def rollback(self, execution_id: str, checkpoint_id: str) -> int:
        """Restore the state captured by *checkpoint_id*; later checkpoints become superseded.

        Returns the new version (rollback is itself a versioned write so that
        stale views fail their next compare-and-swap).
        """
        async with self._db.session() as db:
            record = await db.get(CheckpointRecord, checkpoint_id)
            if record is None or record.execution_id != execution_id:
                raise InvalidCheckpoint(
                    f"Checkpoint {checkpoint_id} does not belong to execution {execution_id}"
                )
            if record.superseded:
                raise InvalidCheckpoint(
                    f"Checkpoint {checkpoint_id} was superseded by an earlier rollback"
                )
            row = await db.get(Execution, execution_id, with_for_update=True)
            if row is None:
                raise ExecutionNotFound(execution_id)

            state = self._to_state(row)
            state.restore(json.loads(record.snapshot_json))
            state.updated_at = utcnow()
            new_version = row.version + 1
            result = await db.execute(
                update(Execution)
                .where(Execution.execution_id == execution_id, Execution.version == row.version)
                .values(version=new_version, **self._state_values(state))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(execution_id, row.version, None)

            await db.execute(
                update(CheckpointRecord)
                .where(
                    CheckpointRecord.execution_id == execution_id,
                    CheckpointRecord.seq > record.seq,
                )
                .values(superseded=True)
                .execution_options(synchronize_session=False)
            )
            await self._add_event(
                db,
                execution_id,
                EventSpec("rolled_back", payload={"checkpoint_id": checkpoint_id, "seq": record.seq}),
            )

        logger.info("Execution %s rolled back to checkpoint %s", execution_id, checkpoint_id)
        return new_version

    # ── Timeline ────────────────────────────────────────────────

    async def emit_event(
        self,
        execution_id: str,
        event_type: str,
        node_id: str | None = None,
        attempt: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        async with self._db.session() as db:
            await self._add_event(db, execution_id, EventSpec(event_type, node_id, attempt, payload))

    async def list_events(
        self, execution_id: str, event_type: str | None = None
    ) -> list[ExecutionEvent]:
        async with self._db.session() as db:
            stmt = select(ExecutionEvent).where(ExecutionEvent.execution_id == execution_id)
            if event_type:
                stmt = stmt.where(ExecutionEvent.event_type == event_type)
            result = await db.execute(stmt.order_by(ExecutionEvent.event_id.asc()))
            return list(result.scalars().all())

    # ── Internal helpers ────────────────────────────────────────

    async def _add_checkpoint(
        self, db: AsyncSession, execution_id: str, snapshot: dict[str, Any], caused_by: str
    ) -> CheckpointRecord:
        seq_result = await db.execute(
            select(func.max(CheckpointRecord.seq)).where(CheckpointRecord.execution_id == execution_id)
        )
        seq = (seq_result.scalar_one_or_none() or 0) + 1
        record = CheckpointRecord(
            execution_id=execution_id,
            seq=seq,
            caused_by=caused_by[:256],
            snapshot_json=json.dumps(snapshot),
        )
        db.add(record)
        await db.flush()
        return record

    async def _add_event(self, db: AsyncSession, execution_id: str, spec: EventSpec) -> None:
        payload = (
            redact_sensitive_data(spec.payload, patterns=self._redaction_patterns)
            if spec.payload
            else None
        )
        db.add(
            ExecutionEvent(
                execution_id=execution_id,
                event_type=spec.event_type,
                node_id=spec.node_id,
                attempt=spec.attempt,
                payload_json=json.dumps(payload, default=str) if payload else None,
            )
        )
        await db.flush()

    @staticmethod
    def _state_values(state: ExecutionState) -> dict[str, Any]:
        snapshot = state.snapshot()
        return {
            "status": state.status.value,
            "current_node": state.current_node,
            "graph_version": state.graph_version,
            "node_states_json": json.dumps(snapshot["node_states"]),
            "context_json": json.dumps(snapshot["context"]),
            "child_execution_ids_json": json.dumps(snapshot["child_execution_ids"]),
            "error_json": json.dumps(state.error) if state.error is not None else None,
            "updated_at": state.updated_at,
        }

    @staticmethod
    def _to_state(row: Execution) -> ExecutionState:
        node_states = json.loads(row.node_states_json or "{}")
        return ExecutionState(
            execution_id=row.execution_id,
            graph_id=row.graph_id,
            graph_version=row.graph_version,
            owner_id=row.owner_id,
            status=ExecutionStatus(row.status),
            current_node=row.current_node,
            node_states={nid: NodeState.model_validate(ns) for nid, ns in node_states.items()},
            context=json.loads(row.context_json or "{}"),
            parent_execution_id=row.parent_execution_id,
            child_execution_ids=json.loads(row.child_execution_ids_json or "[]"),
            depth=row.depth,
            version=row.version,
            error=json.loads(row.error_json) if row.error_json else None,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _to_checkpoint(record: CheckpointRecord) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=record.checkpoint_id,
            execution_id=record.execution_id,
            seq=record.seq,
            created_at=_aware(record.created_at),
            caused_by=record.caused_by,
            snapshot=json.loads(record.snapshot_json),
            superseded=record.superseded,
        )
