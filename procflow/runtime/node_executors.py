"""Per-node execution logic.

Everything here either runs a handler (async, outside any transaction) or
mutates an ``ExecutionState`` copy inside ``ExecutionStore.apply_transition``.
Mutation helpers never touch the database; they record what must happen
after the commit (timers, escalation, timeline events) on a ``StepOutcome``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from procflow.compiler.ir import IRNode, NodeKind, ProcedureGraph, RetryPolicy
from procflow.connectors.handlers import ActionHandler, HandlerOutcome, HandlerResult
from procflow.errors import NodeErrorKind
from procflow.runtime.state import ExecutionState, ExecutionStatus, NodeStatus, utcnow
from procflow.services.execution_store import EventSpec
from procflow.templating.expressions import evaluate_condition

logger = logging.getLogger("procflow.runtime.nodes")


class StaleStep(Exception):
    """The persisted state moved on; the step being applied no longer makes sense."""


@dataclass
class StepOutcome:
    """Side effects collected while a mutation runs, applied after commit."""

    events: list[EventSpec] = field(default_factory=list)
    state: ExecutionState | None = None
    # (node_id, entered_at iso, delay seconds)
    timeouts: list[tuple[str, str, float]] = field(default_factory=list)
    # (node_id, attempt, delay seconds)
    retry: tuple[str, int, float] | None = None
    escalate: bool = False
    left_nodes: list[str] = field(default_factory=list)
    # (node kind, status) pairs for metrics
    node_results: list[tuple[str, str]] = field(default_factory=list)

    def event(self, event_type: str, node_id: str | None = None, attempt: int | None = None, **payload: Any) -> None:
        self.events.append(EventSpec(event_type, node_id, attempt, payload or None))


# ── Condition context ───────────────────────────────────────────


def condition_context(state: ExecutionState) -> dict[str, Any]:
    """Namespace edge conditions and handlers see.

    ``dependencies`` is keyed by dependency graph id so conditions can say
    ``{{dependencies.identity_check.status}} == 'satisfied'``.
    """
    deps: dict[str, Any] = {}
    for entry in (state.context.get("dependencies") or {}).values():
        deps.setdefault(entry.get("graph_id"), entry)
    return {
        "context": state.context,
        "outputs": {nid: ns.output_data for nid, ns in state.node_states.items()},
        "dependencies": deps,
        "execution": {
            "execution_id": state.execution_id,
            "graph_id": state.graph_id,
            "graph_version": state.graph_version,
            "owner_id": state.owner_id,
            "depth": state.depth,
            "parent_execution_id": state.parent_execution_id,
        },
    }


def select_edge(graph: ProcedureGraph, node_id: str, ctx: dict[str, Any]) -> str | None:
    """First normal edge (ascending priority) whose condition holds."""
    for edge in graph.normal_edges(node_id):
        if evaluate_condition(edge.condition, ctx):
            return edge.target
    return None


# ── Retry backoff ───────────────────────────────────────────────


def compute_backoff(policy: RetryPolicy, attempts: int, rng: random.Random | None = None) -> float:
    """``base * factor ** attempts`` plus up to ``jitter`` of that delay at random."""
    delay = policy.backoff_base_s * (policy.backoff_factor ** attempts)
    if policy.jitter > 0 and delay > 0:
        delay += (rng or random).uniform(0, policy.jitter * delay)
    return delay


# ── State transitions ───────────────────────────────────────────


def enter_node(state: ExecutionState, graph: ProcedureGraph, node_id: str, outcome: StepOutcome) -> None:
    """Make *node_id* current and active.  Attempts carry over from earlier visits."""
    now = utcnow()
    node = graph.nodes[node_id]
    ns = state.node(node_id)
    ns.status = NodeStatus.ACTIVE
    ns.entered_at = now
    ns.completed_at = None
    ns.next_attempt_at = None
    ns.error_kind = None
    ns.recovery_options = []
    if state.current_node and state.current_node != node_id:
        outcome.left_nodes.append(state.current_node)
    state.current_node = node_id
    outcome.event("node_entered", node_id, ns.attempts)
    if node.timeout_s:
        outcome.timeouts.append((node_id, now.isoformat(), node.timeout_s))


def complete_node(
    state: ExecutionState,
    graph: ProcedureGraph,
    node_id: str,
    outcome: StepOutcome,
    output_data: dict[str, Any] | None = None,
) -> None:
    """Mark the node completed and follow the first satisfied normal edge.

    End nodes complete the execution; no satisfied edge fails the node with
    ``no_matching_edge``.
    """
    node = graph.nodes[node_id]
    ns = state.node(node_id)
    ns.status = NodeStatus.COMPLETED
    ns.completed_at = utcnow()
    ns.next_attempt_at = None
    if output_data:
        ns.output_data = {**ns.output_data, **output_data}
    outcome.node_results.append((node.kind, "completed"))
    outcome.event("node_completed", node_id, ns.attempts)

    if node.kind == NodeKind.END:
        state.status = ExecutionStatus.COMPLETED
        state.error = None
        outcome.event("execution_completed", node_id)
        return

    target = select_edge(graph, node_id, condition_context(state))
    if target is None:
        # Action attempts were counted when the handler ran.
        fail_node(
            state, graph, node_id, outcome,
            NodeErrorKind.NO_MATCHING_EDGE,
            f"No outgoing edge of '{node_id}' matched the current context",
            count_attempt=node.kind != NodeKind.ACTION,
        )
        return
    outcome.event("transition", node_id, target=target)
    enter_node(state, graph, target, outcome)


def fail_node(
    state: ExecutionState,
    graph: ProcedureGraph,
    node_id: str,
    outcome: StepOutcome,
    error_kind: str,
    message: str,
    *,
    count_attempt: bool = True,
) -> None:
    """Record the failure and take the first eligible recovery edge.

    A recovery target is eligible when its condition holds and it still has
    attempts left.  With no eligible target, or for a hard failure, the
    execution fails and is escalated.
    """
    node = graph.nodes[node_id]
    ns = state.node(node_id)
    if count_attempt:
        ns.attempts += 1
    ns.status = NodeStatus.FAILED
    ns.completed_at = utcnow()
    ns.next_attempt_at = None
    ns.last_error = message
    ns.error_kind = error_kind
    outcome.node_results.append((node.kind, "failed"))

    edges = [] if error_kind in NodeErrorKind.HARD_FAILURES else graph.recovery_edges(node_id)
    ns.recovery_options = [e.target for e in edges]
    outcome.event(
        "node_failed", node_id, ns.attempts,
        error_kind=error_kind, message=message, recovery_options=ns.recovery_options,
    )

    ctx = condition_context(state)
    for edge in edges:
        target = graph.nodes[edge.target]
        target_state = state.node_states.get(edge.target)
        target_attempts = target_state.attempts if target_state else 0
        if target_attempts >= target.retry_policy.max_attempts:
            continue
        if not evaluate_condition(edge.condition, ctx):
            continue
        logger.info("Node %s failed (%s); recovering via %s", node_id, error_kind, edge.target)
        outcome.event("recovery", node_id, target=edge.target, error_kind=error_kind)
        enter_node(state, graph, edge.target, outcome)
        return

    fail_execution(
        state, outcome,
        {"error_kind": error_kind, "node_id": node_id, "message": message,
         "recovery_options": list(ns.recovery_options)},
    )


def fail_execution(state: ExecutionState, outcome: StepOutcome, error: dict[str, Any]) -> None:
    state.status = ExecutionStatus.FAILED
    state.error = error
    outcome.escalate = True
    outcome.event("execution_failed", error.get("node_id"), **error)


def reach_terminal(state: ExecutionState, graph: ProcedureGraph, node_id: str, outcome: StepOutcome) -> None:
    """A designated failure node was reached: the execution fails with escalation."""
    ns = state.node(node_id)
    ns.status = NodeStatus.COMPLETED
    ns.completed_at = utcnow()
    outcome.node_results.append((NodeKind.TERMINAL, "completed"))
    cause = _last_failure(state, exclude=node_id)
    error: dict[str, Any] = {
        "error_kind": NodeErrorKind.TERMINAL_NODE,
        "node_id": node_id,
        "message": graph.nodes[node_id].description or f"Reached terminal node '{node_id}'",
    }
    if cause:
        error["cause"] = cause
    fail_execution(state, outcome, error)


def schedule_retry(
    state: ExecutionState,
    node: IRNode,
    outcome: StepOutcome,
    message: str,
    error_kind: str,
    rng: random.Random | None = None,
) -> None:
    ns = state.node(node.node_id)
    delay = compute_backoff(node.retry_policy, ns.attempts, rng)
    ns.status = NodeStatus.ACTIVE
    ns.last_error = message
    ns.error_kind = error_kind
    ns.next_attempt_at = utcnow() + timedelta(seconds=delay)
    state.status = ExecutionStatus.RUNNING
    outcome.retry = (node.node_id, ns.attempts, delay)
    outcome.event(
        "retry_scheduled", node.node_id, ns.attempts,
        delay_s=round(delay, 3), error_kind=error_kind, message=message,
    )


def apply_handler_result(
    state: ExecutionState,
    graph: ProcedureGraph,
    node: IRNode,
    result: HandlerResult,
    outcome: StepOutcome,
    rng: random.Random | None = None,
    *,
    count_attempt: bool = True,
) -> None:
    """Fold a handler answer into the state.

    Each handler invocation counts one attempt; an integration result for a
    pending invocation does not count again.
    """
    ns = state.node(node.node_id)
    if count_attempt:
        ns.attempts += 1
    if result.outcome == HandlerOutcome.SUCCESS:
        state.status = ExecutionStatus.RUNNING
        complete_node(state, graph, node.node_id, outcome, result.output_data)
    elif result.outcome == HandlerOutcome.PENDING:
        ns.status = NodeStatus.WAITING
        if result.output_data:
            ns.output_data = {**ns.output_data, **result.output_data}
        state.status = ExecutionStatus.WAITING_EXTERNAL
        outcome.event("integration_pending", node.node_id, ns.attempts)
    else:
        error_kind = result.error_kind or NodeErrorKind.HANDLER_FAILURE
        message = result.message or "handler reported failure"
        state.status = ExecutionStatus.RUNNING
        if result.retryable and ns.attempts < node.retry_policy.max_attempts:
            schedule_retry(state, node, outcome, message, error_kind, rng)
        else:
            fail_node(state, graph, node.node_id, outcome, error_kind, message, count_attempt=False)


async def invoke_handler(
    handler: ActionHandler,
    node: IRNode,
    ctx: dict[str, Any],
    timeout_s: float | None,
) -> HandlerResult:
    """Run the handler; exceptions become retryable ``handler_error`` failures.

    ``asyncio.TimeoutError`` propagates so the caller can route it as a node
    timeout instead of a retry.
    """
    try:
        if timeout_s is not None:
            return await asyncio.wait_for(handler.invoke(node.config, ctx), timeout_s)
        return await handler.invoke(node.config, ctx)
    except asyncio.TimeoutError:
        raise
    except Exception as exc:
        logger.warning("Handler %s on node %s raised: %s", node.handler, node.node_id, exc)
        return HandlerResult.failure(NodeErrorKind.HANDLER_ERROR, f"{type(exc).__name__}: {exc}", retryable=True)


def _last_failure(state: ExecutionState, exclude: str) -> dict[str, Any] | None:
    failed = [
        (nid, ns) for nid, ns in state.node_states.items()
        if nid != exclude and ns.status == NodeStatus.FAILED and ns.completed_at
    ]
    if not failed:
        return None
    nid, ns = max(failed, key=lambda item: item[1].completed_at)
    return {"node_id": nid, "error_kind": ns.error_kind, "message": ns.last_error}
