"""Graph executor: drives executions through their graphs.

Each call to ``_advance`` runs an execution until it can no longer make
progress on its own (exit node, suspension, retry backoff).  Suspensions
persist their waiting state and return; the event that ends a suspension
(child terminal, review decision, integration result, timer) re-enqueues the
execution on the dispatcher.

Every state change goes through ``ExecutionStore.apply_transition``.  Internal
transitions that lose a version race are re-derived from the reloaded state;
external callers (``submit_decision`` with an expected version) see the
``ConflictError``.

Lifecycle:
    pending → running ⇄ waiting_on_dependency
                      ⇄ waiting_external
            → completed | failed | cancelled
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable

from procflow.compiler.ir import IRNode, NodeKind, ProcedureGraph
from procflow.config import Settings, settings
from procflow.connectors.escalation import EscalationSink, build_escalation_sink
from procflow.connectors.handlers import HandlerResult, HandlerRegistry
from procflow.errors import (
    ConflictError,
    GraphNotFound,
    GraphValidationError,
    InvalidReviewState,
    MigrationError,
    NodeErrorKind,
)
from procflow.runtime.dependency_resolver import DependencyResolver, ResolutionResult
from procflow.runtime.node_executors import (
    StaleStep,
    StepOutcome,
    apply_handler_result,
    complete_node,
    condition_context,
    enter_node,
    fail_node,
    invoke_handler,
    reach_terminal,
)
from procflow.runtime.scheduler import Dispatcher, EventKind, ExecutionEvent
from procflow.runtime.state import (
    DependencyStatus,
    ExecutionState,
    ExecutionStatus,
    NodeStatus,
    utcnow,
)
from procflow.services.execution_store import ExecutionStore
from procflow.services.graph_service import GraphRegistry
from procflow.utils.logger import ctx_graph_id
from procflow.utils.metrics import (
    record_escalation,
    record_execution_finished,
    record_execution_started,
    record_node_execution,
    record_retry_attempt,
    record_transition_conflict,
)
from procflow.utils.redaction import build_patterns, redact_sensitive_data

logger = logging.getLogger("procflow.executor")

REVIEW_DECISIONS = frozenset({"approve", "reject", "request_more_info"})

# Statuses the dispatcher may advance without outside input.
_SELF_DRIVEN = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.WAITING_ON_DEPENDENCY})

Step = Callable[[ExecutionState, StepOutcome], None]


def _timeout_key(execution_id: str, node_id: str) -> str:
    return f"timeout:{execution_id}:{node_id}"


def _retry_key(execution_id: str, node_id: str) -> str:
    return f"retry:{execution_id}:{node_id}"


class GraphExecutor:
    def __init__(
        self,
        store: ExecutionStore,
        registry: GraphRegistry,
        handlers: HandlerRegistry | None = None,
        *,
        escalation_sink: EscalationSink | None = None,
        cfg: Settings = settings,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.registry = registry
        self.handlers = handlers or HandlerRegistry()
        self.escalation_sink = escalation_sink or build_escalation_sink(cfg)
        self.cfg = cfg
        self.dispatcher = Dispatcher(self.handle_event, cfg.WORKER_CONCURRENCY)
        self.resolver = DependencyResolver(store, registry, self.dispatcher.enqueue, cfg)
        self._rng = rng or random.Random()
        self._redaction_patterns = build_patterns(cfg.REDACTED_FIELDS)

    # ── Public operations ───────────────────────────────────────

    async def start(
        self,
        graph_id: str,
        owner_id: str,
        initial_context: dict[str, Any] | None = None,
        version: str | None = None,
        allow_parallel: bool = False,
    ) -> ExecutionState:
        """Create an execution pinned to the resolved graph version and enqueue it."""
        graph = await self.registry.ensure_valid(graph_id, version)
        execution_id = await self.store.create(
            graph.graph_id, graph.version, owner_id, initial_context, allow_parallel=allow_parallel
        )
        self.dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, execution_id))
        return await self.store.get(execution_id)

    async def get(self, execution_id: str) -> ExecutionState:
        return await self.store.get(execution_id)

    async def submit_decision(
        self,
        execution_id: str,
        node_id: str,
        decision: str,
        notes: str | None = None,
        expected_version: int | None = None,
        decided_by: str | None = None,
    ) -> ExecutionState:
        """Resolve a waiting human-review node.

        Raises ``InvalidReviewState`` when the execution is not waiting on
        *node_id*, ``ConflictError`` when *expected_version* is stale.
        """
        if decision not in REVIEW_DECISIONS:
            raise InvalidReviewState(
                f"Unknown decision '{decision}'; expected one of {sorted(REVIEW_DECISIONS)}"
            )
        state = await self.store.get(execution_id)
        graph = await self._graph_for(state)
        self._check_version(state, expected_version)
        self._check_waiting(state, graph, node_id, NodeKind.HUMAN_REVIEW)

        output = {
            "decision": decision,
            "notes": notes,
            "decided_by": decided_by,
            "decided_at": utcnow().isoformat(),
        }

        def step(s: ExecutionState, o: StepOutcome) -> None:
            self._check_waiting(s, graph, node_id, NodeKind.HUMAN_REVIEW)
            s.status = ExecutionStatus.RUNNING
            o.event("review_decided", node_id, decision=decision, notes=notes, decided_by=decided_by)
            complete_node(s, graph, node_id, o, output)

        outcome = await self._commit_external(state, graph, step, f"review:{node_id}", expected_version)
        logger.info("Review %s on %s/%s", decision, execution_id, node_id)
        return outcome.state

    async def submit_integration_result(
        self,
        execution_id: str,
        node_id: str,
        result: dict[str, Any],
        expected_version: int | None = None,
    ) -> ExecutionState:
        """Complete an action node whose handler answered ``pending``.

        *result* is ``{"status": "success", "output": {...}}`` or
        ``{"status": "failure", "error_kind": ..., "message": ..., "retryable": bool}``.
        """
        state = await self.store.get(execution_id)
        graph = await self._graph_for(state)
        self._check_version(state, expected_version)
        self._check_waiting(state, graph, node_id, NodeKind.ACTION)

        status = result.get("status", "success")
        if status == "success":
            handler_result = HandlerResult.success(result.get("output"))
        elif status == "failure":
            handler_result = HandlerResult.failure(
                result.get("error_kind") or NodeErrorKind.HANDLER_FAILURE,
                result.get("message") or "integration reported failure",
                bool(result.get("retryable", True)),
            )
        else:
            raise InvalidReviewState(f"Unknown integration result status '{status}'")

        def step(s: ExecutionState, o: StepOutcome) -> None:
            self._check_waiting(s, graph, node_id, NodeKind.ACTION)
            o.event("integration_result", node_id, status=status)
            apply_handler_result(s, graph, graph.nodes[node_id], handler_result, o, self._rng, count_attempt=False)

        outcome = await self._commit_external(state, graph, step, f"integration:{node_id}", expected_version)
        return outcome.state

    async def cancel(self, execution_id: str, reason: str = "cancelled by request") -> ExecutionState:
        """Cancel an execution and its active children.  Idempotent."""
        state = await self.store.get(execution_id)
        if state.is_terminal:
            return state

        def step(s: ExecutionState, o: StepOutcome) -> None:
            if s.is_terminal:
                raise StaleStep
            if s.current_node:
                ns = s.node(s.current_node)
                if ns.status in (NodeStatus.ACTIVE, NodeStatus.WAITING):
                    ns.status = NodeStatus.SKIPPED
                    ns.next_attempt_at = None
            s.status = ExecutionStatus.CANCELLED
            s.error = {"error_kind": "cancelled", "message": reason}
            o.event("execution_cancelled", s.current_node, reason=reason)

        outcome = await self._commit(state, None, step, "cancel")
        if outcome is None:
            return await self.store.get(execution_id)
        logger.info("Cancelled execution %s: %s", execution_id, reason)
        return outcome.state

    async def rollback(self, execution_id: str, checkpoint_id: str) -> ExecutionState:
        """Restore a checkpoint and resume the execution from there.

        Non-terminal children the restored dependency bookkeeping no longer
        references (launched after the checkpoint) are cancelled.
        """
        await self.store.rollback(execution_id, checkpoint_id)
        state = await self.store.get(execution_id)
        self.dispatcher.cancel_timers(execution_id)
        await self._cancel_untracked_children(state, "parent rolled back to an earlier checkpoint")
        if not state.is_terminal:
            await self._rearm(state)
            if state.status in _SELF_DRIVEN:
                self.dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, execution_id))
        return state

    async def migrate(
        self,
        execution_id: str,
        expected_version: int,
        target_version: str,
        node_mapping: dict[str, str] | None = None,
    ) -> ExecutionState:
        """Re-pin an in-flight execution to another version of its graph.

        Node ids missing from *node_mapping* keep their id.  The remapped
        state is validated against the target graph before anything is
        written.
        """
        state = await self.store.get(execution_id)
        self._check_version(state, expected_version)
        if state.is_terminal:
            raise MigrationError(f"Execution {execution_id} is {state.status.value}; nothing to migrate")
        try:
            target = await self.registry.ensure_valid(state.graph_id, target_version)
        except GraphValidationError as exc:
            raise MigrationError(str(exc), [str(e) for e in exc.errors]) from exc
        except GraphNotFound as exc:
            raise MigrationError(str(exc)) from exc
        source = await self._graph_for(state)
        mapping = dict(node_mapping or {})

        errors: list[str] = []
        for old, new in mapping.items():
            if old not in source.nodes:
                errors.append(f"Mapped node '{old}' does not exist in {source.graph_id}@{source.version}")
            if new not in target.nodes:
                errors.append(f"Mapping target '{new}' does not exist in {target.graph_id}@{target.version}")
        seen: dict[str, str] = {}
        for nid in state.node_states:
            mapped = mapping.get(nid, nid)
            if mapped not in target.nodes:
                errors.append(f"Node state '{nid}' has no counterpart '{mapped}' in the target graph")
            elif mapped in seen:
                errors.append(f"Node states '{seen[mapped]}' and '{nid}' both map to '{mapped}'")
            else:
                seen[mapped] = nid
        if state.current_node and mapping.get(state.current_node, state.current_node) not in target.nodes:
            errors.append(f"Current node '{state.current_node}' cannot be placed in the target graph")
        if errors:
            raise MigrationError(f"Migration of {execution_id} to {target.version} rejected", errors)

        def step(s: ExecutionState, o: StepOutcome) -> None:
            if s.is_terminal:
                raise MigrationError(f"Execution {execution_id} finished before migration")
            s.node_states = {mapping.get(nid, nid): ns for nid, ns in s.node_states.items()}
            if s.current_node:
                s.current_node = mapping.get(s.current_node, s.current_node)
            o.event(
                "migrated", s.current_node,
                from_version=s.graph_version, to_version=target.version, node_mapping=mapping,
            )
            s.graph_version = target.version

        outcome = await self._commit_external(state, target, step, f"migrate:{target.version}", expected_version)
        self.dispatcher.cancel_timers(execution_id)
        await self._rearm(outcome.state)
        logger.info("Migrated %s to %s@%s", execution_id, target.graph_id, target.version)
        return outcome.state

    async def recover(self) -> int:
        """Re-arm timers and re-enqueue runnable executions after a restart.

        Returns the number of executions put back on the queue.
        """
        count = 0
        for state in await self.store.list_non_terminal():
            if state.parent_execution_id and state.status == ExecutionStatus.PENDING:
                parent = await self.store.get(state.parent_execution_id)
                if parent.is_terminal or state.execution_id not in parent.child_execution_ids:
                    await self.cancel(state.execution_id, "orphaned dependency launch")
                    continue
            await self._rearm(state)
            if state.status in _SELF_DRIVEN:
                self.dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, state.execution_id))
                count += 1
        logger.info("Recovered %d runnable executions", count)
        return count

    # ── Dispatcher entry point ──────────────────────────────────

    async def handle_event(self, event: ExecutionEvent) -> None:
        if event.kind == EventKind.ADVANCE:
            await self._advance(event.execution_id)
        elif event.kind == EventKind.RETRY_DUE:
            await self._advance(event.execution_id, retry_node=event.node_id)
        elif event.kind == EventKind.TIMEOUT:
            await self._on_timeout(event)
        elif event.kind == EventKind.CHILD_TERMINAL:
            await self._on_child_terminal(event)
        else:
            logger.warning("Ignoring unknown event kind %s", event.kind)

    # ── The step loop ───────────────────────────────────────────

    async def _advance(self, execution_id: str, retry_node: str | None = None) -> None:
        state = await self.store.get(execution_id)
        ctx_graph_id.set(state.graph_id)
        while state is not None and not state.is_terminal and state.status in _SELF_DRIVEN:
            graph = await self._graph_for(state)
            if state.status == ExecutionStatus.PENDING:
                outcome = await self._commit(state, graph, self._begin_step(graph), "start")
                if outcome is not None:
                    record_execution_started()
            else:
                outcome = await self._step(state, graph, graph.nodes[state.current_node], retry_node)
            retry_node = None
            if outcome is None or outcome.retry is not None:
                return
            state = outcome.state

    @staticmethod
    def _begin_step(graph: ProcedureGraph) -> Step:
        def step(s: ExecutionState, o: StepOutcome) -> None:
            if s.status != ExecutionStatus.PENDING:
                raise StaleStep
            s.status = ExecutionStatus.RUNNING
            o.event("execution_started", graph.entry_node, graph_version=graph.version)
            enter_node(s, graph, graph.entry_node, o)

        return step

    async def _step(
        self, state: ExecutionState, graph: ProcedureGraph, node: IRNode, retry_node: str | None
    ) -> StepOutcome | None:
        ns = state.node_states.get(node.node_id)
        if ns is None or ns.status not in (NodeStatus.ACTIVE, NodeStatus.WAITING):
            logger.warning(
                "Execution %s current node %s is %s; nothing to run",
                state.execution_id, node.node_id, ns.status.value if ns else "missing",
            )
            return None

        if node.dependencies:
            result = await self.resolver.resolve(
                state.execution_id, node, force=node.kind == NodeKind.DEPENDENCY_GATE
            )
            state = await self.store.get(state.execution_id)
            outcome = await self._apply_resolution(state, graph, node, result)
            if outcome is not None or not result.ready:
                return outcome

        if node.kind in (NodeKind.START, NodeKind.DECISION, NodeKind.END):
            return await self._commit(state, graph, self._completion(graph, node.node_id), f"complete:{node.node_id}")
        if node.kind == NodeKind.DEPENDENCY_GATE:
            summary = {
                ref.key: (state.context.get("dependencies") or {}).get(ref.key, {}).get("status")
                for ref in node.dependencies
            }
            return await self._commit(
                state, graph, self._completion(graph, node.node_id, {"dependencies": summary}),
                f"complete:{node.node_id}",
            )
        if node.kind == NodeKind.TERMINAL:

            def terminal(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_active(s, node.node_id)
                reach_terminal(s, graph, node.node_id, o)

            return await self._commit(state, graph, terminal, f"terminal:{node.node_id}")
        if node.kind == NodeKind.HUMAN_REVIEW:

            def await_review(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_active(s, node.node_id)
                s.node(node.node_id).status = NodeStatus.WAITING
                s.status = ExecutionStatus.WAITING_EXTERNAL
                o.event(
                    "review_requested", node.node_id,
                    description=node.description, options=sorted(REVIEW_DECISIONS),
                    config=dict(node.config),
                )

            await self._commit(state, graph, await_review, f"review_requested:{node.node_id}")
            return None
        return await self._run_action(state, graph, node, retry_node)

    async def _apply_resolution(
        self, state: ExecutionState, graph: ProcedureGraph, node: IRNode, result: ResolutionResult
    ) -> StepOutcome | None:
        """Turn a resolution result into a transition; ``None`` when the node may proceed or must keep waiting."""
        nid = node.node_id
        abandoned: list[str] = []
        if result.hard_failure is not None:
            kind, message = result.hard_failure

            def hard(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_current(s, nid)
                abandoned[:] = self._abandon_running(s, node, message)
                s.status = ExecutionStatus.RUNNING
                fail_node(s, graph, nid, o, kind, message)

            return await self._commit_leaving(state, graph, hard, f"dependency_limit:{nid}", abandoned)

        if result.failed:
            deps = state.context.get("dependencies") or {}
            message = "; ".join(deps.get(k, {}).get("error") or k for k in result.failed)

            def unresolved(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_current(s, nid)
                abandoned[:] = self._abandon_running(s, node, f"Node '{nid}' failed on an unresolved dependency")
                s.status = ExecutionStatus.RUNNING
                fail_node(s, graph, nid, o, NodeErrorKind.UNRESOLVED_DEPENDENCY, message)

            return await self._commit_leaving(state, graph, unresolved, f"unresolved_dependency:{nid}", abandoned)

        if result.unresolved:
            if state.status == ExecutionStatus.WAITING_ON_DEPENDENCY:
                return None

            def wait(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_current(s, nid)
                s.node(nid).status = NodeStatus.WAITING
                s.status = ExecutionStatus.WAITING_ON_DEPENDENCY
                o.event("waiting_on_dependency", nid, keys=list(result.unresolved))

            await self._commit(state, graph, wait, f"wait_dependencies:{nid}")
            return None

        if state.status == ExecutionStatus.WAITING_ON_DEPENDENCY:

            def resume(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_current(s, nid)
                s.node(nid).status = NodeStatus.ACTIVE
                s.status = ExecutionStatus.RUNNING
                o.event("dependencies_resolved", nid, resolved=result.resolved, skipped=result.skipped)

            return await self._commit(state, graph, resume, f"dependencies_resolved:{nid}")
        return None

    def _completion(self, graph: ProcedureGraph, node_id: str, output: dict[str, Any] | None = None) -> Step:
        def step(s: ExecutionState, o: StepOutcome) -> None:
            self._expect_active(s, node_id)
            complete_node(s, graph, node_id, o, output)

        return step

    async def _run_action(
        self, state: ExecutionState, graph: ProcedureGraph, node: IRNode, retry_node: str | None
    ) -> StepOutcome | None:
        nid = node.node_id
        ns = state.node_states[nid]
        if ns.status != NodeStatus.ACTIVE:
            return None
        now = utcnow()
        if ns.next_attempt_at is not None and ns.next_attempt_at > now and retry_node != nid:
            # Backoff still running (after a restart or rollback): re-arm and wait.
            self._schedule_retry(state.execution_id, nid, ns.attempts, (ns.next_attempt_at - now).total_seconds())
            return None

        handler = self.handlers.get(node.handler)
        if handler is None:

            def missing(s: ExecutionState, o: StepOutcome) -> None:
                self._expect_active(s, nid)
                fail_node(s, graph, nid, o, NodeErrorKind.MISSING_HANDLER, f"No handler registered as '{node.handler}'")

            return await self._commit(state, graph, missing, f"missing_handler:{nid}")

        remaining: float | None = None
        if node.timeout_s and ns.entered_at is not None:
            remaining = (ns.entered_at + timedelta(seconds=node.timeout_s) - now).total_seconds()
        attempts_before = ns.attempts

        if remaining is not None and remaining <= 0:
            result = None
        else:
            logger.info("Invoking handler %s for %s (attempt %d)", node.handler, nid, attempts_before + 1)
            try:
                result = await invoke_handler(handler, node, copy.deepcopy(condition_context(state)), remaining)
            except asyncio.TimeoutError:
                result = None

        def fold(s: ExecutionState, o: StepOutcome) -> None:
            self._expect_active(s, nid)
            if s.node(nid).attempts != attempts_before:
                raise StaleStep
            if result is None:
                fail_node(s, graph, nid, o, NodeErrorKind.TIMEOUT, f"Node '{nid}' exceeded its {node.timeout_s}s timeout")
            else:
                apply_handler_result(s, graph, node, result, o, self._rng)

        return await self._commit(state, graph, fold, f"action:{nid}")

    # ── Timers and child notifications ──────────────────────────

    async def _on_timeout(self, event: ExecutionEvent) -> None:
        state = await self.store.get(event.execution_id)
        nid = event.node_id
        if state.is_terminal or state.current_node != nid:
            return
        graph = await self._graph_for(state)
        node = graph.nodes[nid]
        entered = datetime.fromisoformat(event.payload["entered_at"])
        ns = state.node_states.get(nid)
        if ns is None or ns.entered_at is None or ns.entered_at != entered:
            return
        if ns.status not in (NodeStatus.ACTIVE, NodeStatus.WAITING):
            return

        abandoned: list[str] = []

        def expire(s: ExecutionState, o: StepOutcome) -> None:
            self._expect_current(s, nid)
            cur = s.node(nid)
            if cur.entered_at is None or cur.entered_at != entered:
                raise StaleStep
            abandoned[:] = self._abandon_running(s, node, f"Node '{nid}' timed out while waiting")
            s.status = ExecutionStatus.RUNNING
            fail_node(
                s, graph, nid, o, NodeErrorKind.TIMEOUT,
                f"Node '{nid}' exceeded its {node.timeout_s}s timeout",
                count_attempt=node.kind != NodeKind.ACTION,
            )

        outcome = await self._commit_leaving(state, graph, expire, f"timeout:{nid}", abandoned)
        if outcome is None:
            return
        logger.warning("Node %s of %s timed out", nid, event.execution_id)
        if outcome.state.status in _SELF_DRIVEN:
            await self._advance(event.execution_id)

    async def _on_child_terminal(self, event: ExecutionEvent) -> None:
        parent = await self.store.get(event.execution_id)
        if parent.is_terminal or not parent.current_node:
            return
        graph = await self._graph_for(parent)
        node = graph.nodes.get(parent.current_node)
        child_id = event.payload.get("child_execution_id")
        result = await self.resolver.on_child_terminal(parent.execution_id, child_id, node)
        if result is None:
            return
        await self._advance(parent.execution_id)

    @staticmethod
    def _abandon_running(s: ExecutionState, node: IRNode, reason: str) -> list[str]:
        """Mark *node*'s in-flight dependency entries failed; returns the children to cancel."""
        keys = {ref.key for ref in node.dependencies}
        abandoned: list[str] = []
        for key, entry in (s.context.get("dependencies") or {}).items():
            if key in keys and entry.get("status") == DependencyStatus.RUNNING.value:
                if entry.get("execution_id"):
                    abandoned.append(entry["execution_id"])
                entry["status"] = DependencyStatus.FAILED.value
                entry["execution_id"] = None
                entry["error"] = reason
        return abandoned

    async def _cancel_untracked_children(self, state: ExecutionState, reason: str) -> None:
        tracked = {
            entry.get("execution_id")
            for entry in (state.context.get("dependencies") or {}).values()
            if entry.get("status") == DependencyStatus.RUNNING.value
        }
        for child in await self.store.list_children(state.execution_id):
            if not child.is_terminal and child.execution_id not in tracked:
                await self.cancel(child.execution_id, reason)

    # ── Commit helpers ──────────────────────────────────────────

    async def _commit(
        self, state: ExecutionState, graph: ProcedureGraph | None, step: Step, caused_by: str
    ) -> StepOutcome | None:
        """Apply *step* with compare-and-swap, re-deriving it on conflicts.

        Returns ``None`` when the step no longer applies to the reloaded state.
        """
        current = state
        for _ in range(self.cfg.CONFLICT_RETRY_LIMIT):
            outcome = StepOutcome()

            def mutation(s: ExecutionState) -> None:
                step(s, outcome)
                outcome.state = s

            try:
                version = await self.store.apply_transition(
                    current.execution_id, current.version, mutation, caused_by, outcome.events
                )
            except StaleStep:
                return None
            except ConflictError:
                record_transition_conflict()
                current = await self.store.get(current.execution_id)
                if graph is not None and current.graph_version != graph.version:
                    return None
                continue
            outcome.state.version = version
            await self._after_commit(outcome)
            return outcome
        raise ConflictError(state.execution_id, current.version, None)

    async def _commit_leaving(
        self,
        state: ExecutionState,
        graph: ProcedureGraph,
        step: Step,
        caused_by: str,
        abandoned: list[str],
    ) -> StepOutcome | None:
        """``_commit`` for a step that stops waiting on children; *abandoned* is filled by the step."""
        outcome = await self._commit(state, graph, step, caused_by)
        if outcome is not None:
            for child_id in abandoned:
                await self.cancel(child_id, f"parent abandoned the dependency ({caused_by})")
        return outcome

    async def _commit_external(
        self,
        state: ExecutionState,
        graph: ProcedureGraph,
        step: Step,
        caused_by: str,
        expected_version: int | None,
    ) -> StepOutcome:
        """Single CAS attempt on behalf of an outside caller; conflicts propagate."""
        outcome = StepOutcome()

        def mutation(s: ExecutionState) -> None:
            step(s, outcome)
            outcome.state = s

        version = await self.store.apply_transition(
            state.execution_id,
            state.version if expected_version is None else expected_version,
            mutation,
            caused_by,
            outcome.events,
        )
        outcome.state.version = version
        await self._after_commit(outcome)
        if outcome.state.status in _SELF_DRIVEN:
            self.dispatcher.enqueue(ExecutionEvent(EventKind.ADVANCE, state.execution_id))
        return outcome

    async def _after_commit(self, outcome: StepOutcome) -> None:
        state = outcome.state
        eid = state.execution_id
        for kind, status in outcome.node_results:
            record_node_execution(kind, status)
        for nid in outcome.left_nodes:
            self.dispatcher.cancel_timer(_timeout_key(eid, nid))
            self.dispatcher.cancel_timer(_retry_key(eid, nid))
        if not state.is_terminal:
            for nid, entered, delay in outcome.timeouts:
                self.dispatcher.schedule(
                    ExecutionEvent(EventKind.TIMEOUT, eid, nid, {"entered_at": entered}),
                    delay, _timeout_key(eid, nid),
                )
            if outcome.retry is not None:
                nid, attempt, delay = outcome.retry
                record_retry_attempt(nid)
                logger.info("Retrying %s/%s in %.2fs (attempt %d failed)", eid, nid, delay, attempt)
                self._schedule_retry(eid, nid, attempt, delay)
            return
        await self._on_terminal(state, outcome.escalate)

    async def _on_terminal(self, state: ExecutionState, escalate: bool) -> None:
        eid = state.execution_id
        self.dispatcher.forget(eid)
        duration = (state.updated_at - state.created_at).total_seconds()
        record_execution_finished(duration, state.status.value)
        logger.info("Execution %s finished: %s", eid, state.status.value)

        if escalate:
            await self._escalate(state)
        for child_id in state.child_execution_ids:
            child = await self.store.get(child_id)
            if not child.is_terminal:
                await self.cancel(child_id, f"parent execution {state.status.value}")
        if state.parent_execution_id:
            self.dispatcher.enqueue(
                ExecutionEvent(
                    EventKind.CHILD_TERMINAL,
                    state.parent_execution_id,
                    payload={"child_execution_id": eid, "status": state.status.value},
                )
            )

    async def _escalate(self, state: ExecutionState) -> None:
        checkpoints = await self.store.list_checkpoints(state.execution_id)
        payload = redact_sensitive_data(
            {
                "execution_id": state.execution_id,
                "state": state.model_dump(mode="json"),
                "checkpoints": [c.model_dump(mode="json") for c in checkpoints],
            },
            patterns=self._redaction_patterns,
        )
        await self.store.emit_event(state.execution_id, "escalation", state.current_node, payload=payload)
        record_escalation()
        try:
            await self.escalation_sink.escalate(payload)
        except Exception:
            logger.exception("Escalation sink failed for execution %s", state.execution_id)

    def _schedule_retry(self, execution_id: str, node_id: str, attempt: int, delay: float) -> None:
        self.dispatcher.schedule(
            ExecutionEvent(EventKind.RETRY_DUE, execution_id, node_id, {"attempt": attempt}),
            delay, _retry_key(execution_id, node_id), blocking=True,
        )

    async def _rearm(self, state: ExecutionState) -> None:
        """Re-create timers implied by the persisted state of the current node."""
        if not state.current_node:
            return
        graph = await self._graph_for(state)
        node = graph.nodes.get(state.current_node)
        ns = state.node_states.get(state.current_node)
        if node is None or ns is None or ns.status not in (NodeStatus.ACTIVE, NodeStatus.WAITING):
            return
        now = utcnow()
        if node.timeout_s and ns.entered_at is not None:
            remaining = (ns.entered_at + timedelta(seconds=node.timeout_s) - now).total_seconds()
            self.dispatcher.schedule(
                ExecutionEvent(
                    EventKind.TIMEOUT, state.execution_id, node.node_id,
                    {"entered_at": ns.entered_at.isoformat()},
                ),
                remaining, _timeout_key(state.execution_id, node.node_id),
            )
        if ns.next_attempt_at is not None and ns.status == NodeStatus.ACTIVE:
            self._schedule_retry(
                state.execution_id, node.node_id, ns.attempts, (ns.next_attempt_at - now).total_seconds()
            )

    # ── Guards ──────────────────────────────────────────────────

    @staticmethod
    def _check_version(state: ExecutionState, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != state.version:
            raise ConflictError(state.execution_id, expected_version, state.version)

    async def _graph_for(self, state: ExecutionState) -> ProcedureGraph:
        return await self.registry.get(state.graph_id, state.graph_version)

    @staticmethod
    def _expect_current(s: ExecutionState, node_id: str) -> None:
        if s.is_terminal or s.current_node != node_id:
            raise StaleStep

    @staticmethod
    def _expect_active(s: ExecutionState, node_id: str) -> None:
        if (
            s.status != ExecutionStatus.RUNNING
            or s.current_node != node_id
            or s.node(node_id).status != NodeStatus.ACTIVE
        ):
            raise StaleStep

    @staticmethod
    def _check_waiting(s: ExecutionState, graph: ProcedureGraph, node_id: str, kind: str) -> None:
        node = graph.nodes.get(node_id)
        if node is None or node.kind != kind:
            raise InvalidReviewState(f"Node '{node_id}' is not a {kind} node")
        ns = s.node_states.get(node_id)
        if (
            s.status != ExecutionStatus.WAITING_EXTERNAL
            or s.current_node != node_id
            or ns is None
            or ns.status != NodeStatus.WAITING
        ):
            raise InvalidReviewState(
                f"Execution {s.execution_id} is not waiting on '{node_id}' "
                f"(status={s.status.value}, current={s.current_node})"
            )
