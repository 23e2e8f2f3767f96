"""Tests for ExecutionStore: versioned writes, checkpoints and rollback."""

from __future__ import annotations

import asyncio
import json

import pytest

from procflow.errors import ConflictError, DuplicateExecution, ExecutionNotFound, InvalidCheckpoint
from procflow.runtime.state import ExecutionState, ExecutionStatus, NodeStatus
from procflow.services.execution_store import EventSpec, ExecutionStore
from procflow.utils.redaction import REDACTION_PLACEHOLDER


@pytest.fixture
def store(database) -> ExecutionStore:
    return ExecutionStore(database, redacted_fields=["passport_number"])


def _set_running(s: ExecutionState) -> None:
    s.status = ExecutionStatus.RUNNING
    s.current_node = "start"
    s.node("start").status = NodeStatus.ACTIVE


def _set_context(key: str, value):
    def mutation(s: ExecutionState) -> None:
        s.context[key] = value

    return mutation


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_pending_execution(self, store):
        eid = await store.create("linear", "1.0.0", "alice", {"age": 34})
        state = await store.get(eid)
        assert state.status == ExecutionStatus.PENDING
        assert state.version == 0
        assert state.context == {"age": 34}
        assert state.depth == 0
        assert state.created_at.tzinfo is not None
        events = await store.list_events(eid)
        assert [e.event_type for e in events] == ["execution_created"]

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        with pytest.raises(ExecutionNotFound):
            await store.get("does-not-exist")

    @pytest.mark.asyncio
    async def test_duplicate_active_execution_rejected(self, store):
        first = await store.create("linear", "1.0.0", "alice")
        with pytest.raises(DuplicateExecution) as exc_info:
            await store.create("linear", "1.0.0", "alice")
        assert exc_info.value.existing_id == first

    @pytest.mark.asyncio
    async def test_parallel_and_other_owner_allowed(self, store):
        await store.create("linear", "1.0.0", "alice")
        await store.create("linear", "1.0.0", "alice", allow_parallel=True)
        await store.create("linear", "1.0.0", "bob")
        assert len(await store.list_non_terminal()) == 3

    @pytest.mark.asyncio
    async def test_new_execution_after_terminal(self, store):
        eid = await store.create("linear", "1.0.0", "alice")

        def finish(s: ExecutionState) -> None:
            s.status = ExecutionStatus.COMPLETED

        await store.apply_transition(eid, 0, finish)
        assert await store.create("linear", "1.0.0", "alice") != eid

    @pytest.mark.asyncio
    async def test_children_listed(self, store):
        parent = await store.create("parent", "1.0.0", "alice")
        child = await store.create(
            "identity_check", "1.0.0", "alice", allow_parallel=True, parent_execution_id=parent, depth=1
        )
        children = await store.list_children(parent)
        assert [c.execution_id for c in children] == [child]
        assert children[0].depth == 1
        assert children[0].parent_execution_id == parent


class TestApplyTransition:
    @pytest.mark.asyncio
    async def test_version_increments_by_one(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        assert await store.apply_transition(eid, 0, _set_running) == 1
        assert await store.apply_transition(eid, 1, _set_context("x", 1)) == 2
        state = await store.get(eid)
        assert state.version == 2
        assert state.status == ExecutionStatus.RUNNING
        assert state.context["x"] == 1
        assert state.node_states["start"].status == NodeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_version_writes_nothing(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(eid, 0, _set_running)
        checkpoints_before = await store.list_checkpoints(eid)
        events_before = await store.list_events(eid)

        with pytest.raises(ConflictError) as exc_info:
            await store.apply_transition(
                eid, 0, _set_context("x", "lost"), events=[EventSpec("should_not_exist")]
            )
        assert exc_info.value.actual_version == 1

        state = await store.get(eid)
        assert state.version == 1
        assert "x" not in state.context
        assert len(await store.list_checkpoints(eid)) == len(checkpoints_before)
        assert len(await store.list_events(eid)) == len(events_before)

    @pytest.mark.asyncio
    async def test_failing_mutation_writes_nothing(self, store):
        eid = await store.create("linear", "1.0.0", "alice")

        def broken(s: ExecutionState) -> None:
            s.context["half"] = "done"
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await store.apply_transition(eid, 0, broken)
        state = await store.get(eid)
        assert state.version == 0
        assert state.context == {}
        assert await store.list_checkpoints(eid) == []

    @pytest.mark.asyncio
    async def test_concurrent_writers_one_wins(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        results = await asyncio.gather(
            store.apply_transition(eid, 0, _set_context("writer", "a")),
            store.apply_transition(eid, 0, _set_context("writer", "b")),
            return_exceptions=True,
        )
        assert sorted(type(r).__name__ for r in results) == ["ConflictError", "int"]
        state = await store.get(eid)
        assert state.version == 1
        assert state.context["writer"] in ("a", "b")

    @pytest.mark.asyncio
    async def test_checkpoint_holds_pre_transition_snapshot(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(eid, 0, _set_running, caused_by="start")
        (cp,) = await store.list_checkpoints(eid)
        assert cp.seq == 1
        assert cp.caused_by == "start"
        assert cp.snapshot["status"] == "pending"
        assert cp.snapshot["current_node"] is None

    @pytest.mark.asyncio
    async def test_events_written_and_redacted(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(
            eid, 0, _set_running,
            events=[EventSpec("node_entered", "start", 0, {"api_token": "t0k", "passport_number": "X1", "ok": 1})],
        )
        (event,) = await store.list_events(eid, "node_entered")
        payload = json.loads(event.payload_json)
        assert payload["api_token"] == REDACTION_PLACEHOLDER
        assert payload["passport_number"] == REDACTION_PLACEHOLDER
        assert payload["ok"] == 1
        assert event.node_id == "start"

    @pytest.mark.asyncio
    async def test_events_read_after_mutation(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        events: list[EventSpec] = []

        def mutation(s: ExecutionState) -> None:
            s.context["y"] = 2
            events.append(EventSpec("context_updated", payload={"y": 2}))

        await store.apply_transition(eid, 0, mutation, events=events)
        assert len(await store.list_events(eid, "context_updated")) == 1

    @pytest.mark.asyncio
    async def test_unknown_execution(self, store):
        with pytest.raises(ExecutionNotFound):
            await store.apply_transition("missing", 0, _set_running)

    @pytest.mark.asyncio
    async def test_graph_in_use(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        assert await store.is_graph_in_use("linear", "1.0.0")
        assert not await store.is_graph_in_use("linear", "2.0.0")

        def cancel(s: ExecutionState) -> None:
            s.status = ExecutionStatus.CANCELLED

        await store.apply_transition(eid, 0, cancel)
        assert not await store.is_graph_in_use("linear", "1.0.0")


class TestCheckpointsAndRollback:
    @pytest.mark.asyncio
    async def test_explicit_checkpoint_keeps_version(self, store):
        eid = await store.create("linear", "1.0.0", "alice", {"step": "intake"})
        cp_id = await store.checkpoint(eid, "before manual fix")
        state = await store.get(eid)
        assert state.version == 0
        cp = await store.get_checkpoint(eid, cp_id)
        assert cp.caused_by == "before manual fix"
        assert cp.snapshot["context"] == {"step": "intake"}

    @pytest.mark.asyncio
    async def test_rollback_restores_and_bumps_version(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(eid, 0, _set_running)
        await store.apply_transition(eid, 1, _set_context("x", 1))
        await store.apply_transition(eid, 2, _set_context("x", 2))
        checkpoints = await store.list_checkpoints(eid)
        assert [c.seq for c in checkpoints] == [1, 2, 3]

        # seq 2 was taken before x was first set
        new_version = await store.rollback(eid, checkpoints[1].checkpoint_id)
        state = await store.get(eid)
        assert new_version == 4
        assert state.version == 4
        assert state.status == ExecutionStatus.RUNNING
        assert "x" not in state.context
        assert state.snapshot() == checkpoints[1].snapshot
        assert [e.event_type for e in await store.list_events(eid, "rolled_back")] == ["rolled_back"]

        remaining = await store.list_checkpoints(eid)
        assert [c.seq for c in remaining] == [1, 2]
        everything = await store.list_checkpoints(eid, include_superseded=True)
        assert [c.superseded for c in everything] == [False, False, True]

    @pytest.mark.asyncio
    async def test_superseded_checkpoint_rejected(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(eid, 0, _set_running)
        await store.apply_transition(eid, 1, _set_context("x", 1))
        first, second = await store.list_checkpoints(eid)
        await store.rollback(eid, first.checkpoint_id)
        with pytest.raises(InvalidCheckpoint, match="superseded"):
            await store.rollback(eid, second.checkpoint_id)

    @pytest.mark.asyncio
    async def test_rollback_makes_old_views_stale(self, store):
        eid = await store.create("linear", "1.0.0", "alice")
        await store.apply_transition(eid, 0, _set_running)
        (cp,) = await store.list_checkpoints(eid)
        await store.rollback(eid, cp.checkpoint_id)
        with pytest.raises(ConflictError):
            await store.apply_transition(eid, 1, _set_context("x", 1))

    @pytest.mark.asyncio
    async def test_foreign_checkpoint_rejected(self, store):
        a = await store.create("linear", "1.0.0", "alice")
        b = await store.create("linear", "1.0.0", "bob")
        await store.apply_transition(a, 0, _set_running)
        (cp,) = await store.list_checkpoints(a)
        with pytest.raises(InvalidCheckpoint):
            await store.rollback(b, cp.checkpoint_id)
        with pytest.raises(InvalidCheckpoint):
            await store.get_checkpoint(b, cp.checkpoint_id)
