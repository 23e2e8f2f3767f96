"""Dependency resolver: launches and tracks nested executions of prerequisite graphs.

Bookkeeping lives in the parent's ``context["dependencies"]`` keyed by
``DependencyRef.key``::

    {
      "graph_id": "identity_check", "version": None, "required": True,
      "status": "running" | "satisfied" | "failed" | "skipped",
      "candidate": 0,                 # index into ref.candidates
      "execution_id": "...",          # child in flight for that candidate
      "resolved_version": "1.0.0",
      "attempts": [{"graph_id", "version", "execution_id", "status", "error"}],
      "outputs": {node_id: output_data},   # of the satisfying child
      "node_id": "collect", "entry": "<entered_at of the requesting visit>",
    }

Resolution is idempotent: a satisfied entry is never launched again (unless a
dependency gate forces a fresh resolution on a new visit), and a running entry
only reconciles with its child.  Children are enqueued only after the parent
has durably recorded them.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from procflow.compiler.ir import DependencyRef, IRNode
from procflow.config import Settings, settings
from procflow.errors import (
    ConflictError,
    ExecutionNotFound,
    GraphNotFound,
    GraphValidationError,
    NodeErrorKind,
)
from procflow.runtime.scheduler import EventKind, ExecutionEvent
from procflow.runtime.state import DependencyStatus, ExecutionState, ExecutionStatus, utcnow
from procflow.services.execution_store import EventSpec, ExecutionStore
from procflow.services.graph_service import GraphRegistry
from procflow.utils.metrics import record_transition_conflict

logger = logging.getLogger("procflow.runtime.dependencies")


@dataclass
class ResolutionResult:
    resolved: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    launched: list[str] = field(default_factory=list)
    # (error_kind, message) for depth / child-count limits
    hard_failure: tuple[str, str] | None = None

    @property
    def ready(self) -> bool:
        return not self.unresolved and not self.failed and self.hard_failure is None


class DependencyResolver:
    def __init__(
        self,
        store: ExecutionStore,
        registry: GraphRegistry,
        enqueue: Callable[[ExecutionEvent], None],
        cfg: Settings = settings,
    ):
        self._store = store
        self._registry = registry
        self._enqueue = enqueue
        self._cfg = cfg

    async def resolve(self, execution_id: str, node: IRNode, *, force: bool = False) -> ResolutionResult:
        """Drive every dependency of *node* one step further.

        *force* re-resolves refs that were settled during an earlier visit of a
        node (used by dependency gates); within one visit it is idempotent.
        """
        for _ in range(self._cfg.CONFLICT_RETRY_LIMIT):
            state = await self._store.get(execution_id)
            try:
                return await self._resolve_once(state, node, force)
            except ConflictError:
                record_transition_conflict()
                logger.debug("Conflict resolving dependencies of %s; reloading", execution_id)
        raise ConflictError(execution_id, -1, None)

    async def on_child_terminal(self, parent_id: str, child_id: str, node: IRNode | None) -> ResolutionResult | None:
        """Fold a finished child into its parent's bookkeeping.

        Returns ``None`` when the child is no longer tracked by the parent's
        current node (stale notification).
        """
        parent = await self._store.get(parent_id)
        if parent.is_terminal or node is None:
            return None
        keys = {ref.key for ref in node.dependencies}
        tracked = any(
            key in keys and entry.get("execution_id") == child_id
            for key, entry in (parent.context.get("dependencies") or {}).items()
        )
        if not tracked:
            logger.debug("Child %s no longer tracked by %s", child_id, parent_id)
            return None
        return await self.resolve(parent_id, node, force=False)

    # ── Internals ───────────────────────────────────────────────

    async def _resolve_once(self, state: ExecutionState, node: IRNode, force: bool) -> ResolutionResult:
        ns = state.node_states.get(node.node_id)
        visit = ns.entered_at.isoformat() if ns and ns.entered_at else ""
        deps: dict[str, Any] = copy.deepcopy(state.context.get("dependencies") or {})
        events: list[EventSpec] = []
        launched: list[str] = []
        hard_failure: tuple[str, str] | None = None
        changed = False

        for ref in node.dependencies:
            entry = deps.get(ref.key)
            if entry is None or self._needs_reset(entry, visit, force):
                entry = self._new_entry(ref, node.node_id, visit)
                deps[ref.key] = entry
                changed = True

            if entry["status"] == DependencyStatus.RUNNING.value and entry.get("execution_id"):
                child = await self._load_child(entry["execution_id"])
                if child is None or child.is_terminal:
                    self._record_child(entry, ref, child, events, node.node_id)
                    changed = True

            while entry["status"] == DependencyStatus.RUNNING.value and not entry.get("execution_id"):
                idx = entry["candidate"]
                if idx >= len(ref.candidates):
                    self._exhaust(entry, ref, events, node.node_id)
                    break

                if state.depth + 1 > self._cfg.MAX_DEPENDENCY_DEPTH:
                    hard_failure = (
                        NodeErrorKind.DEPENDENCY_DEPTH_EXCEEDED,
                        f"Dependency '{ref.key}' would nest beyond depth {self._cfg.MAX_DEPENDENCY_DEPTH}",
                    )
                    break
                if len(state.child_execution_ids) + len(launched) >= self._cfg.MAX_CHILD_EXECUTIONS:
                    hard_failure = (
                        NodeErrorKind.EXECUTION_LIMIT_EXCEEDED,
                        f"Execution already spawned {self._cfg.MAX_CHILD_EXECUTIONS} child executions",
                    )
                    break

                candidate = ref.candidates[idx]
                try:
                    graph = await self._registry.ensure_valid(candidate.graph_id, candidate.version)
                except (GraphNotFound, GraphValidationError) as exc:
                    entry["attempts"].append(
                        {"graph_id": candidate.graph_id, "version": candidate.version,
                         "execution_id": None, "status": "unavailable", "error": str(exc)}
                    )
                    entry["candidate"] = idx + 1
                    changed = True
                    continue

                child_id = await self._store.create(
                    graph.graph_id,
                    graph.version,
                    state.owner_id,
                    self._child_context(state, node.node_id),
                    allow_parallel=True,
                    parent_execution_id=state.execution_id,
                    depth=state.depth + 1,
                )
                launched.append(child_id)
                entry["execution_id"] = child_id
                entry["resolved_version"] = graph.version
                entry["attempts"].append(
                    {"graph_id": graph.graph_id, "version": graph.version,
                     "execution_id": child_id, "status": DependencyStatus.RUNNING.value, "error": None}
                )
                events.append(
                    EventSpec(
                        "dependency_launched", node.node_id, len(entry["attempts"]),
                        {"key": ref.key, "graph_id": graph.graph_id, "version": graph.version,
                         "child_execution_id": child_id},
                    )
                )
                changed = True
            if hard_failure:
                break

        if changed:

            def mutation(s: ExecutionState) -> None:
                s.context["dependencies"] = deps
                s.child_execution_ids.extend(launched)

            try:
                await self._store.apply_transition(
                    state.execution_id, state.version, mutation,
                    caused_by=f"resolve_dependencies:{node.node_id}", events=events,
                )
            except ConflictError:
                await self._abandon(launched)
                raise

        for child_id in launched:
            logger.info("Launched dependency child %s for %s/%s", child_id, state.execution_id, node.node_id)
            self._enqueue(ExecutionEvent(EventKind.ADVANCE, child_id))

        result = ResolutionResult(launched=launched, hard_failure=hard_failure)
        for ref in node.dependencies:
            status = deps.get(ref.key, {}).get("status")
            if status == DependencyStatus.SATISFIED.value:
                result.resolved.append(ref.key)
            elif status == DependencyStatus.FAILED.value:
                result.failed.append(ref.key)
            elif status == DependencyStatus.SKIPPED.value:
                result.skipped.append(ref.key)
            else:
                result.unresolved.append(ref.key)
        return result

    @staticmethod
    def _needs_reset(entry: dict[str, Any], visit: str, force: bool) -> bool:
        if entry["status"] == DependencyStatus.RUNNING.value or entry.get("entry") == visit:
            return False
        if force:
            return True
        # A failed ref gets a fresh set of candidates on a new visit; satisfied ones stay cached.
        return entry["status"] in (DependencyStatus.FAILED.value, DependencyStatus.SKIPPED.value)

    @staticmethod
    def _new_entry(ref: DependencyRef, node_id: str, visit: str) -> dict[str, Any]:
        return {
            "graph_id": ref.graph_id,
            "version": ref.version,
            "required": ref.required,
            "status": DependencyStatus.RUNNING.value,
            "candidate": 0,
            "execution_id": None,
            "resolved_version": None,
            "attempts": [],
            "outputs": {},
            "error": None,
            "node_id": node_id,
            "entry": visit,
        }

    async def _load_child(self, child_id: str) -> ExecutionState | None:
        try:
            return await self._store.get(child_id)
        except ExecutionNotFound:
            logger.warning("Dependency child %s vanished", child_id)
            return None

    @staticmethod
    def _record_child(
        entry: dict[str, Any],
        ref: DependencyRef,
        child: ExecutionState | None,
        events: list[EventSpec],
        node_id: str,
    ) -> None:
        child_id = entry["execution_id"]
        status = child.status.value if child else "missing"
        for attempt in entry["attempts"]:
            if attempt["execution_id"] == child_id:
                attempt["status"] = status
                attempt["error"] = child.error if child else "child execution not found"
        if child is not None and child.status == ExecutionStatus.COMPLETED:
            entry["status"] = DependencyStatus.SATISFIED.value
            entry["outputs"] = {
                nid: ns.output_data for nid, ns in child.node_states.items() if ns.output_data
            }
            entry["completed_at"] = utcnow().isoformat()
            events.append(
                EventSpec("dependency_satisfied", node_id, None, {"key": ref.key, "child_execution_id": child_id})
            )
            return
        # Move on to the next alternative; the launch loop picks it up.
        entry["execution_id"] = None
        entry["candidate"] += 1
        events.append(
            EventSpec(
                "dependency_attempt_failed", node_id, None,
                {"key": ref.key, "child_execution_id": child_id, "child_status": status},
            )
        )

    @staticmethod
    def _exhaust(entry: dict[str, Any], ref: DependencyRef, events: list[EventSpec], node_id: str) -> None:
        tried = ", ".join(f"{a['graph_id']}@{a['version'] or 'latest'}={a['status']}" for a in entry["attempts"])
        entry["error"] = f"All candidates for '{ref.key}' failed ({tried or 'none tried'})"
        entry["status"] = (DependencyStatus.FAILED if ref.required else DependencyStatus.SKIPPED).value
        events.append(
            EventSpec(
                "dependency_failed" if ref.required else "dependency_skipped",
                node_id, None, {"key": ref.key, "error": entry["error"]},
            )
        )

    @staticmethod
    def _child_context(parent: ExecutionState, node_id: str) -> dict[str, Any]:
        ctx = {k: copy.deepcopy(v) for k, v in parent.context.items() if k != "dependencies"}
        ctx["parent"] = {
            "execution_id": parent.execution_id,
            "graph_id": parent.graph_id,
            "node_id": node_id,
        }
        return ctx

    async def _abandon(self, child_ids: list[str]) -> None:
        """Cancel children whose launch could not be recorded on the parent."""

        def cancel(s: ExecutionState) -> None:
            s.status = ExecutionStatus.CANCELLED
            s.error = {"error_kind": "abandoned", "message": "parent did not record this launch"}

        for child_id in child_ids:
            await self._store.apply_transition(child_id, 0, cancel, caused_by="abandoned_launch")
