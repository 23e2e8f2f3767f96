"""Tests for GraphRegistry: registration, versions and deletion."""

from __future__ import annotations

import copy

import pytest

from procflow.compiler.validator import ValidationErrorKind
from procflow.config import settings
from procflow.errors import GraphInUse, GraphNotFound, GraphVersionExists
from procflow.services.execution_store import ExecutionStore
from procflow.services.graph_service import GraphRegistry


@pytest.fixture
def registry(database) -> GraphRegistry:
    return GraphRegistry(database, ExecutionStore(database))


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_valid_graph(self, registry, linear_graph):
        result = await registry.register(linear_graph)
        assert result.ok
        assert result.created
        assert result.graph.graph_id == "linear"
        graph = await registry.get("linear", "1.0.0")
        assert graph is result.graph

    @pytest.mark.asyncio
    async def test_invalid_graph_rejected_with_all_errors(self, registry, linear_graph):
        linear_graph["nodes"]["orphan"] = {"kind": "end"}
        linear_graph["edges"].append({"from": "verify", "to": "ghost"})
        result = await registry.register(linear_graph)
        assert not result.ok
        kinds = {e.kind for e in result.errors}
        assert {ValidationErrorKind.UNREACHABLE_NODE, ValidationErrorKind.DANGLING_EDGE} <= kinds
        with pytest.raises(GraphNotFound):
            await registry.get("linear", "1.0.0")

    @pytest.mark.asyncio
    async def test_unparseable_document_rejected(self, registry):
        result = await registry.register({"version": "1.0.0"})
        assert not result.ok
        assert result.graph is None
        assert "graph_id" in result.error_messages()[0]

    @pytest.mark.asyncio
    async def test_identical_reregistration_is_idempotent(self, registry, linear_graph):
        await registry.register(linear_graph)
        again = await registry.register(copy.deepcopy(linear_graph))
        assert again.ok
        assert not again.created
        assert len(await registry.list_versions("linear")) == 1

    @pytest.mark.asyncio
    async def test_different_definition_same_version(self, registry, linear_graph):
        await registry.register(linear_graph)
        changed = copy.deepcopy(linear_graph)
        changed["nodes"]["verify"]["handler"] = "verify_v2"
        with pytest.raises(GraphVersionExists):
            await registry.register(changed)


class TestVersions:
    @pytest.mark.asyncio
    async def test_latest_resolves_to_newest(self, registry, linear_graph):
        await registry.register(linear_graph)
        v2 = copy.deepcopy(linear_graph)
        v2["version"] = "2.0.0"
        await registry.register(v2)

        assert (await registry.get("linear")).version == "2.0.0"
        assert (await registry.get("linear", "latest")).version == "2.0.0"
        assert (await registry.get("linear", "1.0.0")).version == "1.0.0"

        rows = await registry.list_versions("linear")
        assert [(r.version, r.status) for r in rows] == [("2.0.0", "active"), ("1.0.0", "superseded")]

    @pytest.mark.asyncio
    async def test_unknown_graph(self, registry):
        with pytest.raises(GraphNotFound):
            await registry.get("nope")
        with pytest.raises(GraphNotFound):
            await registry.get("nope", "1.0.0")

    @pytest.mark.asyncio
    async def test_reload_keeps_registered_retry_defaults(self, database, registry, decision_graph, monkeypatch):
        await registry.register(decision_graph)
        registered = (await registry.get("route_by_age", "1.0.0")).nodes["route"].retry_policy

        monkeypatch.setattr(settings, "DEFAULT_MAX_ATTEMPTS", settings.DEFAULT_MAX_ATTEMPTS + 6)
        monkeypatch.setattr(settings, "DEFAULT_BACKOFF_BASE_S", settings.DEFAULT_BACKOFF_BASE_S + 4.0)
        fresh = GraphRegistry(database, ExecutionStore(database))
        reloaded = (await fresh.get("route_by_age", "1.0.0")).nodes["route"].retry_policy
        assert reloaded == registered

    @pytest.mark.asyncio
    async def test_ensure_valid_returns_graph(self, registry, decision_graph):
        await registry.register(decision_graph)
        graph = await registry.ensure_valid("route_by_age")
        assert graph.entry_node == "start"


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_promotes_previous_version(self, registry, linear_graph):
        await registry.register(linear_graph)
        v2 = copy.deepcopy(linear_graph)
        v2["version"] = "2.0.0"
        await registry.register(v2)

        await registry.delete("linear", "2.0.0")
        with pytest.raises(GraphNotFound):
            await registry.get("linear", "2.0.0")
        rows = await registry.list_versions("linear")
        assert [(r.version, r.status) for r in rows] == [("1.0.0", "active")]

    @pytest.mark.asyncio
    async def test_delete_unknown(self, registry):
        with pytest.raises(GraphNotFound):
            await registry.delete("linear", "9.9.9")

    @pytest.mark.asyncio
    async def test_delete_in_use_rejected(self, database, linear_graph):
        store = ExecutionStore(database)
        registry = GraphRegistry(database, store)
        await registry.register(linear_graph)
        await store.create("linear", "1.0.0", "alice")
        with pytest.raises(GraphInUse):
            await registry.delete("linear", "1.0.0")
