"""Tests for the event dispatcher and its timers."""

from __future__ import annotations

import asyncio

import pytest

from procflow.runtime.scheduler import Dispatcher, EventKind, ExecutionEvent
from procflow.utils.logger import ctx_execution_id, ctx_node_id


class Recorder:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.seen: list[tuple[str, str | None, str | None]] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    async def __call__(self, event: ExecutionEvent) -> None:
        eid = event.execution_id
        self.active[eid] = self.active.get(eid, 0) + 1
        self.max_active[eid] = max(self.max_active.get(eid, 0), self.active[eid])
        try:
            await asyncio.sleep(self.delay)
            self.seen.append((event.kind, ctx_execution_id.get(), ctx_node_id.get()))
        finally:
            self.active[eid] -= 1


@pytest.fixture
def recorder():
    return Recorder(delay=0.01)


@pytest.fixture
async def dispatcher(recorder):
    d = Dispatcher(recorder, concurrency=4)
    await d.start()
    yield d
    await d.stop()


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_events_handled_with_correlation_context(self, dispatcher, recorder):
        dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, "exec-1", "collect"))
        await dispatcher.run_until_idle(timeout=5)
        assert recorder.seen == [(EventKind.ADVANCE, "exec-1", "collect")]
        assert ctx_execution_id.get() is None

    @pytest.mark.asyncio
    async def test_one_event_at_a_time_per_execution(self, dispatcher, recorder):
        for _ in range(5):
            dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, "exec-1"))
            dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, "exec-2"))
        await dispatcher.run_until_idle(timeout=5)
        assert len(recorder.seen) == 10
        assert recorder.max_active == {"exec-1": 1, "exec-2": 1}
        assert dispatcher.locked_executions() == []

    @pytest.mark.asyncio
    async def test_lock_entry_kept_only_while_handling(self):
        held: list[list[str]] = []

        async def handler(event: ExecutionEvent) -> None:
            held.append(d.locked_executions())

        d = Dispatcher(handler, concurrency=2)
        await d.start()
        try:
            d.enqueue(ExecutionEvent(EventKind.ADVANCE, "exec-1"))
            await d.run_until_idle(timeout=5)
            d.forget("exec-1")
            d.enqueue(ExecutionEvent(EventKind.CHILD_TERMINAL, "exec-1"))
            await d.run_until_idle(timeout=5)
        finally:
            await d.stop()
        assert held == [["exec-1"], ["exec-1"]]
        assert d.locked_executions() == []

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_kill_workers(self):
        calls: list[str] = []

        async def handler(event: ExecutionEvent) -> None:
            calls.append(event.execution_id)
            if event.execution_id == "bad":
                raise RuntimeError("boom")

        d = Dispatcher(handler, concurrency=1)
        await d.start()
        try:
            d.enqueue(ExecutionEvent(EventKind.ADVANCE, "bad"))
            d.enqueue(ExecutionEvent(EventKind.ADVANCE, "good"))
            await d.run_until_idle(timeout=5)
            assert calls == ["bad", "good"]
            assert d.running
        finally:
            await d.stop()
        assert not d.running


class TestTimers:
    @pytest.mark.asyncio
    async def test_blocking_timer_awaited(self, dispatcher, recorder):
        dispatcher.schedule(
            ExecutionEvent(EventKind.RETRY_DUE, "exec-1", "collect"), 0.05, "retry:exec-1:collect", blocking=True
        )
        await dispatcher.run_until_idle(timeout=5)
        assert [s[0] for s in recorder.seen] == [EventKind.RETRY_DUE]
        assert dispatcher.pending_timers() == []

    @pytest.mark.asyncio
    async def test_non_blocking_timer_not_awaited(self, dispatcher, recorder):
        dispatcher.schedule(ExecutionEvent(EventKind.TIMEOUT, "exec-1", "review"), 10, "timeout:exec-1:review")
        await dispatcher.run_until_idle(timeout=1)
        assert recorder.seen == []
        assert dispatcher.pending_timers("exec-1") == ["timeout:exec-1:review"]

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self, dispatcher, recorder):
        key = "retry:exec-1:collect"
        dispatcher.schedule(ExecutionEvent(EventKind.RETRY_DUE, "exec-1", "collect", {"attempt": 1}), 10, key, True)
        dispatcher.schedule(ExecutionEvent(EventKind.RETRY_DUE, "exec-1", "collect", {"attempt": 2}), 0, key, True)
        await dispatcher.run_until_idle(timeout=5)
        assert len(recorder.seen) == 1

    @pytest.mark.asyncio
    async def test_cancel_timers_by_execution_and_node(self, dispatcher):
        dispatcher.schedule(ExecutionEvent(EventKind.TIMEOUT, "exec-1", "a"), 10, "timeout:exec-1:a")
        dispatcher.schedule(ExecutionEvent(EventKind.TIMEOUT, "exec-1", "b"), 10, "timeout:exec-1:b")
        dispatcher.schedule(ExecutionEvent(EventKind.TIMEOUT, "exec-2", "a"), 10, "timeout:exec-2:a")

        dispatcher.cancel_timers("exec-1", "a")
        assert dispatcher.pending_timers() == ["timeout:exec-1:b", "timeout:exec-2:a"]
        dispatcher.forget("exec-1")
        assert dispatcher.pending_timers() == ["timeout:exec-2:a"]

    @pytest.mark.asyncio
    async def test_idle_wait_times_out(self, dispatcher):
        dispatcher.schedule(ExecutionEvent(EventKind.RETRY_DUE, "exec-1", "x"), 10, "retry:exec-1:x", blocking=True)
        with pytest.raises(asyncio.TimeoutError):
            await dispatcher.run_until_idle(timeout=0.05)
