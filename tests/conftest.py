"""Shared fixtures for procflow tests."""

from __future__ import annotations

from typing import Any

import pytest

from procflow.config import Settings
from procflow.connectors.handlers import HandlerRegistry, HandlerResult
from procflow.db.engine import Database
from procflow.main import build_runtime
from procflow.utils.metrics import metrics

MEMORY_URL = "sqlite+aiosqlite:///:memory:"

NO_BACKOFF = {"max_attempts": 3, "backoff_base_s": 0.0, "backoff_factor": 1.0, "jitter": 0.0}


# ── Graph documents ─────────────────────────────────────────────


@pytest.fixture
def linear_graph() -> dict:
    """Start -> Collect -> Verify -> End."""
    return {
        "graph_id": "linear",
        "version": "1.0.0",
        "name": "Linear",
        "entry_node": "start",
        "nodes": {
            "start": {"kind": "start"},
            "collect": {"kind": "action", "handler": "collect", "retry_policy": {**NO_BACKOFF}},
            "verify": {"kind": "action", "handler": "verify", "retry_policy": {**NO_BACKOFF}},
            "end": {"kind": "end"},
        },
        "edges": [
            {"from": "start", "to": "collect"},
            {"from": "collect", "to": "verify"},
            {"from": "verify", "to": "end"},
        ],
    }


@pytest.fixture
def decision_graph() -> dict:
    return {
        "graph_id": "route_by_age",
        "version": "1.0.0",
        "nodes": {
            "start": {"kind": "start"},
            "route": {"kind": "decision"},
            "adult": {"kind": "end"},
            "minor": {"kind": "end"},
        },
        "edges": [
            {"from": "start", "to": "route"},
            {"from": "route", "to": "adult", "condition": "{{context.age}} >= 18", "priority": 0},
            {"from": "route", "to": "minor", "condition": "{{context.age}} < 18", "priority": 1},
        ],
    }


@pytest.fixture
def review_graph() -> dict:
    return {
        "graph_id": "manual_review",
        "version": "1.0.0",
        "nodes": {
            "start": {"kind": "start"},
            "review": {"kind": "human_review", "description": "Officer review"},
            "approved": {"kind": "end"},
            "rejected": {"kind": "terminal", "description": "Application rejected"},
        },
        "edges": [
            {"from": "start", "to": "review"},
            {"from": "review", "to": "approved", "condition": "{{outputs.review.decision}} == 'approve'"},
            {"from": "review", "to": "rejected", "priority": 1},
        ],
    }


@pytest.fixture
def recovery_graph() -> dict:
    """An action whose failure routes to a fallback action, then to a terminal node."""
    return {
        "graph_id": "with_recovery",
        "version": "1.0.0",
        "nodes": {
            "start": {"kind": "start"},
            "primary": {"kind": "action", "handler": "flaky",
                        "retry_policy": {**NO_BACKOFF, "max_attempts": 2}},
            "fallback": {"kind": "action", "handler": "collect", "retry_policy": {**NO_BACKOFF}},
            "done": {"kind": "end"},
            "abort": {"kind": "terminal"},
        },
        "edges": [
            {"from": "start", "to": "primary"},
            {"from": "primary", "to": "done"},
            {"from": "primary", "to": "fallback", "kind": "recovery", "priority": 0},
            {"from": "fallback", "to": "done"},
            {"from": "fallback", "to": "abort", "kind": "recovery"},
        ],
    }


def _dependency_graph(graph_id: str, handler: str = "collect", version: str = "1.0.0") -> dict:
    """A one-action graph usable as a dependency."""
    return {
        "graph_id": graph_id,
        "version": version,
        "nodes": {
            "start": {"kind": "start"},
            "work": {"kind": "action", "handler": handler, "retry_policy": {**NO_BACKOFF, "max_attempts": 1}},
            "end": {"kind": "end"},
        },
        "edges": [{"from": "start", "to": "work"}, {"from": "work", "to": "end"}],
    }


def _parent_graph(dependencies: list, graph_id: str = "parent", gate: bool = False) -> dict:
    """start -> step (depends on *dependencies*) -> end, with a terminal recovery node."""
    kind = "dependency_gate" if gate else "action"
    step: dict[str, Any] = {"kind": kind, "dependencies": dependencies,
                            "retry_policy": {**NO_BACKOFF, "max_attempts": 1}}
    if not gate:
        step["handler"] = "collect"
    return {
        "graph_id": graph_id,
        "version": "1.0.0",
        "nodes": {
            "start": {"kind": "start"},
            "step": step,
            "end": {"kind": "end"},
            "abort": {"kind": "terminal"},
        },
        "edges": [
            {"from": "start", "to": "step"},
            {"from": "step", "to": "end"},
            {"from": "step", "to": "abort", "kind": "recovery"},
        ],
    }


@pytest.fixture
def make_dependency_graph():
    return _dependency_graph


@pytest.fixture
def make_parent_graph():
    return _parent_graph


# ── Handlers / sinks ────────────────────────────────────────────


class ScriptedHandler:
    """Returns scripted results in order (the last one repeats); records each call."""

    def __init__(self, *results: HandlerResult | Exception):
        self.results = list(results) or [HandlerResult.success()]
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, node_config, context):
        self.calls.append({"config": dict(node_config), "context": context})
        result = self.results[min(len(self.calls), len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSink:
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    async def escalate(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        DB_URL=MEMORY_URL,
        WORKER_CONCURRENCY=4,
        DEFAULT_BACKOFF_BASE_S=0.0,
        DEFAULT_JITTER=0.0,
        MAX_DEPENDENCY_DEPTH=3,
        MAX_CHILD_EXECUTIONS=8,
    )


@pytest.fixture
def handlers() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("collect", ScriptedHandler(HandlerResult.success({"documents": ["passport"]})))
    registry.register("verify", ScriptedHandler(HandlerResult.success({"verified": True})))
    registry.register("fail", ScriptedHandler(HandlerResult.failure("upstream_down", "service unavailable")))
    registry.register("flaky", ScriptedHandler(RuntimeError("connection reset")))
    return registry


@pytest.fixture
def scripted():
    """Factory for ScriptedHandler instances."""
    return ScriptedHandler


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def database(cfg):
    db = Database.from_settings(cfg, MEMORY_URL)
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
async def runtime(database, handlers, cfg, sink):
    rt = build_runtime(database, handlers, cfg, escalation_sink=sink)
    await rt.executor.dispatcher.start()
    yield rt
    await rt.executor.dispatcher.stop()


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def registry(runtime):
    return runtime.registry


@pytest.fixture
def executor(runtime):
    return runtime.executor
