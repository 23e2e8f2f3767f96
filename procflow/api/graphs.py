"""Graph registry API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from procflow.api.deps import get_registry
from procflow.compiler.validator import ValidationIssue
from procflow.schemas.graphs import GraphDetail, GraphOut, GraphRegister, RegistrationOut, ValidationIssueOut
from procflow.services.graph_service import GraphRegistry

router = APIRouter()


@router.post("", response_model=RegistrationOut)
async def register_graph(body: GraphRegister, response: Response, registry: GraphRegistry = Depends(get_registry)):
    result = await registry.register(body.document)
    errors = [
        ValidationIssueOut(**e.to_dict()) if isinstance(e, ValidationIssue) else ValidationIssueOut(message=str(e))
        for e in result.errors
    ]
    if not result.ok:
        response.status_code = 422
    elif result.created:
        response.status_code = 201
    return RegistrationOut(
        ok=result.ok,
        graph_id=result.graph.graph_id if result.graph else _text(body.document.get("graph_id")),
        version=result.graph.version if result.graph else _text(body.document.get("version")),
        created=result.created,
        errors=errors,
    )


@router.get("", response_model=list[GraphOut])
async def list_graphs(registry: GraphRegistry = Depends(get_registry)):
    return await registry.list_versions()


@router.get("/{graph_id}/versions", response_model=list[GraphOut])
async def list_versions(graph_id: str, registry: GraphRegistry = Depends(get_registry)):
    return await registry.list_versions(graph_id)


@router.get("/{graph_id}", response_model=GraphDetail)
async def get_latest(graph_id: str, registry: GraphRegistry = Depends(get_registry)):
    graph = await registry.get(graph_id)
    return _detail(await registry.list_versions(graph_id), graph.version)


@router.get("/{graph_id}/{version}", response_model=GraphDetail)
async def get_version(graph_id: str, version: str, registry: GraphRegistry = Depends(get_registry)):
    graph = await registry.get(graph_id, version)
    return _detail(await registry.list_versions(graph_id), graph.version)


@router.delete("/{graph_id}/{version}", status_code=204)
async def delete_graph(graph_id: str, version: str, registry: GraphRegistry = Depends(get_registry)):
    await registry.delete(graph_id, version)
    return Response(status_code=204)


def _detail(rows, version: str) -> GraphDetail:
    row = next(r for r in rows if r.version == version)
    return GraphDetail.model_validate(row)


def _text(value) -> str | None:
    return None if value is None else str(value)
