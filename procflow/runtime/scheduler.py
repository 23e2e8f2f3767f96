"""Event dispatcher: the message-driven loop that moves executions forward.

Executions are never polled.  Everything that can make an execution runnable
(a start request, a child finishing, a retry backoff elapsing, a node timeout)
is an ``ExecutionEvent`` placed on one asyncio queue and consumed by a fixed
pool of worker tasks.

Ordering:
  * events for the same execution are handled one at a time (per-execution
    ``asyncio.Lock``, dropped once no worker holds or awaits it); different
    executions proceed concurrently.
  * timers are plain tasks that sleep and then enqueue their event.  They are
    keyed so that re-arming replaces the previous timer and cancellation can
    target one execution.  Stale timer events are harmless: handlers check the
    persisted state before acting on them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from procflow.utils.logger import execution_context

logger = logging.getLogger("procflow.scheduler")


class EventKind:
    ADVANCE = "advance"
    RETRY_DUE = "retry_due"
    TIMEOUT = "timeout"
    CHILD_TERMINAL = "child_terminal"


@dataclass(frozen=True)
class ExecutionEvent:
    kind: str
    execution_id: str
    node_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Timer:
    task: asyncio.Task
    event: ExecutionEvent
    blocking: bool


@dataclass
class _ExecutionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Workers holding or waiting for the lock; the entry is dropped at zero.
    users: int = 0


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


class Dispatcher:
    def __init__(self, handler: EventHandler, concurrency: int = 4):
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue()
        self._locks: dict[str, _ExecutionLock] = {}
        self._timers: dict[str, _Timer] = {}
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"procflow-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("Dispatcher started with %d workers", self._concurrency)

    async def stop(self) -> None:
        for timer in list(self._timers.values()):
            timer.task.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info("Dispatcher stopped")

    # ── Events ──────────────────────────────────────────────────

    def enqueue(self, event: ExecutionEvent) -> None:
        self._queue.put_nowait(event)

    def schedule(self, event: ExecutionEvent, delay: float, key: str, blocking: bool = False) -> None:
        """Enqueue *event* after *delay* seconds, replacing any timer under *key*.

        ``run_until_idle`` waits for blocking timers (retry backoff) but not
        for non-blocking ones (timeouts).
        """
        self.cancel_timer(key)
        task = asyncio.create_task(self._fire(key, event, max(0.0, delay)), name=f"timer:{key}")
        self._timers[key] = _Timer(task=task, event=event, blocking=blocking)

    def cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.task.cancel()

    def cancel_timers(self, execution_id: str, node_id: str | None = None) -> None:
        for key, timer in list(self._timers.items()):
            if timer.event.execution_id != execution_id:
                continue
            if node_id is not None and timer.event.node_id != node_id:
                continue
            self.cancel_timer(key)

    def pending_timers(self, execution_id: str | None = None) -> list[str]:
        return sorted(
            k for k, t in self._timers.items()
            if execution_id is None or t.event.execution_id == execution_id
        )

    def forget(self, execution_id: str) -> None:
        """Drop the timers of an execution that reached a terminal state."""
        self.cancel_timers(execution_id)

    def locked_executions(self) -> list[str]:
        """Executions with an event being handled or waiting for one."""
        return sorted(self._locks)

    async def run_until_idle(self, timeout: float | None = 30.0) -> None:
        """Wait until the queue is drained and no blocking timer is pending."""

        async def _drain() -> None:
            while True:
                await self._queue.join()
                blocking = [t.task for t in self._timers.values() if t.blocking]
                if not blocking:
                    if self._queue.empty():
                        return
                    continue
                await asyncio.wait(blocking)

        await asyncio.wait_for(_drain(), timeout)

    # ── Internals ───────────────────────────────────────────────

    async def _fire(self, key: str, event: ExecutionEvent, delay: float) -> None:
        await asyncio.sleep(delay)
        current = self._timers.get(key)
        if current is not None and current.task is asyncio.current_task():
            del self._timers[key]
        self.enqueue(event)

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            entry = self._locks.setdefault(event.execution_id, _ExecutionLock())
            entry.users += 1
            try:
                async with entry.lock:
                    with execution_context(event.execution_id, event.node_id):
                        await self._handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Worker %d failed handling %s for execution %s",
                    index, event.kind, event.execution_id,
                )
            finally:
                entry.users -= 1
                if entry.users == 0:
                    self._locks.pop(event.execution_id, None)
                self._queue.task_done()
