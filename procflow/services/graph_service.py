"""Graph registry: registration, version pinning and the parsed-graph cache."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import select, update

from procflow.compiler.ir import ProcedureGraph
from procflow.compiler.parser import parse_graph, stored_document
from procflow.compiler.validator import ValidationIssue, validate_graph
from procflow.db.engine import Database
from procflow.db.models import GraphDefinition
from procflow.errors import (
    GraphInUse,
    GraphNotFound,
    GraphParseError,
    GraphValidationError,
    GraphVersionExists,
)
from procflow.services.execution_store import ExecutionStore

logger = logging.getLogger("procflow.registry")

_LATEST = (None, "", "latest")


@dataclass
class RegistrationResult:
    ok: bool
    graph: ProcedureGraph | None = None
    errors: list[ValidationIssue | str] = field(default_factory=list)
    created: bool = False

    def error_messages(self) -> list[str]:
        return [str(e) for e in self.errors]


class GraphRegistry:
    """Stores immutable graph versions and hands out shared ``ProcedureGraph`` instances."""

    def __init__(self, database: Database, store: ExecutionStore):
        self._db = database
        self._store = store
        self._cache: dict[tuple[str, str], ProcedureGraph] = {}
        # Versions that passed the pre-use validation in this process.
        self._checked: set[tuple[str, str]] = set()

    async def register(self, document: dict[str, Any]) -> RegistrationResult:
        """Parse, validate and persist a graph version.

        Registering an identical document twice is a no-op.  A different
        document under an already-registered ``(graph_id, version)`` raises
        ``GraphVersionExists``.
        """
        try:
            graph = parse_graph(document)
        except GraphParseError as exc:
            return RegistrationResult(ok=False, errors=[str(exc)])

        result = validate_graph(graph)
        if not result.ok:
            logger.info(
                "Rejected graph %s@%s: %s",
                graph.graph_id, graph.version, [e.kind for e in result.errors],
            )
            return RegistrationResult(ok=False, graph=graph, errors=list(result.errors))

        canonical = json.dumps(stored_document(graph), sort_keys=True)
        async with self._db.session() as db:
            existing = (
                await db.execute(
                    select(GraphDefinition).where(
                        GraphDefinition.graph_id == graph.graph_id,
                        GraphDefinition.version == graph.version,
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                if json.dumps(json.loads(existing.definition_json), sort_keys=True) != canonical:
                    raise GraphVersionExists(
                        f"Graph {graph.graph_id}@{graph.version} is already registered "
                        f"with a different definition; publish a new version instead."
                    )
                return RegistrationResult(ok=True, graph=self._cached(existing), created=False)

            await db.execute(
                update(GraphDefinition)
                .where(GraphDefinition.graph_id == graph.graph_id, GraphDefinition.status == "active")
                .values(status="superseded")
            )
            db.add(
                GraphDefinition(
                    graph_id=graph.graph_id,
                    version=graph.version,
                    name=graph.name or graph.graph_id,
                    status="active",
                    definition_json=canonical,
                )
            )

        self._cache[(graph.graph_id, graph.version)] = graph
        self._checked.add((graph.graph_id, graph.version))
        logger.info("Registered graph %s@%s", graph.graph_id, graph.version)
        return RegistrationResult(ok=True, graph=graph, created=True)

    async def get(self, graph_id: str, version: str | None = None) -> ProcedureGraph:
        """Return the graph for an exact version, or the newest one for None/"latest"."""
        if version not in _LATEST and (graph_id, version) in self._cache:
            return self._cache[(graph_id, version)]

        async with self._db.session() as db:
            stmt = select(GraphDefinition).where(GraphDefinition.graph_id == graph_id)
            if version in _LATEST:
                stmt = stmt.order_by(GraphDefinition.created_at.desc(), GraphDefinition.id.desc()).limit(1)
            else:
                stmt = stmt.where(GraphDefinition.version == version)
            row = (await db.execute(stmt)).scalars().first()
        if row is None:
            raise GraphNotFound(graph_id, version)
        return self._cached(row)

    async def ensure_valid(self, graph_id: str, version: str | None = None) -> ProcedureGraph:
        """Fetch a graph and re-run validation before its first use in this process."""
        graph = await self.get(graph_id, version)
        key = (graph.graph_id, graph.version)
        if key not in self._checked:
            result = validate_graph(graph)
            if not result.ok:
                raise GraphValidationError(result.errors)
            self._checked.add(key)
        return graph

    async def list_versions(self, graph_id: str | None = None) -> list[GraphDefinition]:
        async with self._db.session() as db:
            stmt = select(GraphDefinition).order_by(
                GraphDefinition.graph_id.asc(), GraphDefinition.created_at.desc(), GraphDefinition.id.desc()
            )
            if graph_id:
                stmt = stmt.where(GraphDefinition.graph_id == graph_id)
            return list((await db.execute(stmt)).scalars().all())

    async def delete(self, graph_id: str, version: str) -> None:
        if await self._store.is_graph_in_use(graph_id, version):
            raise GraphInUse(f"Graph {graph_id}@{version} is pinned by an active execution")
        async with self._db.session() as db:
            result = await db.execute(
                sa_delete(GraphDefinition).where(
                    GraphDefinition.graph_id == graph_id, GraphDefinition.version == version
                )
            )
            if result.rowcount == 0:
                raise GraphNotFound(graph_id, version)
            # Promote the newest remaining version back to active.
            newest = (
                await db.execute(
                    select(GraphDefinition)
                    .where(GraphDefinition.graph_id == graph_id)
                    .order_by(GraphDefinition.created_at.desc(), GraphDefinition.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if newest is not None:
                newest.status = "active"
        self._cache.pop((graph_id, version), None)
        self._checked.discard((graph_id, version))
        logger.info("Deleted graph %s@%s", graph_id, version)

    def _cached(self, row: GraphDefinition) -> ProcedureGraph:
        key = (row.graph_id, row.version)
        graph = self._cache.get(key)
        if graph is None:
            graph = parse_graph(json.loads(row.definition_json))
            self._cache[key] = graph
        return graph
