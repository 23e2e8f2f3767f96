"""Executions API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from procflow.api.deps import get_executor, get_store
from procflow.runtime.executor import GraphExecutor
from procflow.runtime.state import ExecutionState
from procflow.schemas.executions import (
    CancelRequest,
    CheckpointCreate,
    CheckpointOut,
    EventOut,
    ExecutionCreate,
    ExecutionOut,
    IntegrationResultIn,
    MigrateRequest,
    RollbackRequest,
)
from procflow.services.execution_store import ExecutionStore

router = APIRouter()


def _out(state: ExecutionState) -> ExecutionOut:
    return ExecutionOut.model_validate(state.model_dump(mode="json"))


@router.post("", response_model=ExecutionOut, status_code=201)
async def start_execution(body: ExecutionCreate, executor: GraphExecutor = Depends(get_executor)):
    state = await executor.start(
        body.graph_id,
        body.owner_id,
        body.context,
        version=body.version,
        allow_parallel=body.allow_parallel,
    )
    return _out(state)


@router.get("/{execution_id}", response_model=ExecutionOut)
async def get_execution(execution_id: str, store: ExecutionStore = Depends(get_store)):
    return _out(await store.get(execution_id))


@router.get("/{execution_id}/children", response_model=list[ExecutionOut])
async def list_children(execution_id: str, store: ExecutionStore = Depends(get_store)):
    await store.get(execution_id)
    return [_out(s) for s in await store.list_children(execution_id)]


@router.get("/{execution_id}/events", response_model=list[EventOut])
async def list_events(execution_id: str, event_type: str | None = None, store: ExecutionStore = Depends(get_store)):
    await store.get(execution_id)
    return await store.list_events(execution_id, event_type)


@router.get("/{execution_id}/checkpoints", response_model=list[CheckpointOut])
async def list_checkpoints(execution_id: str, store: ExecutionStore = Depends(get_store)):
    await store.get(execution_id)
    return [CheckpointOut.model_validate(c.model_dump()) for c in await store.list_checkpoints(execution_id)]


@router.post("/{execution_id}/checkpoints", response_model=CheckpointOut, status_code=201)
async def create_checkpoint(execution_id: str, body: CheckpointCreate, store: ExecutionStore = Depends(get_store)):
    checkpoint_id = await store.checkpoint(execution_id, body.description)
    checkpoint = await store.get_checkpoint(execution_id, checkpoint_id)
    return CheckpointOut.model_validate(checkpoint.model_dump())


@router.post("/{execution_id}/rollback", response_model=ExecutionOut)
async def rollback_execution(
    execution_id: str, body: RollbackRequest, executor: GraphExecutor = Depends(get_executor)
):
    return _out(await executor.rollback(execution_id, body.checkpoint_id))


@router.post("/{execution_id}/cancel", response_model=ExecutionOut)
async def cancel_execution(
    execution_id: str, body: CancelRequest | None = None, executor: GraphExecutor = Depends(get_executor)
):
    reason = body.reason if body else "cancelled by request"
    return _out(await executor.cancel(execution_id, reason))


@router.post("/{execution_id}/migrate", response_model=ExecutionOut)
async def migrate_execution(
    execution_id: str, body: MigrateRequest, executor: GraphExecutor = Depends(get_executor)
):
    state = await executor.migrate(execution_id, body.expected_version, body.target_version, body.node_mapping)
    return _out(state)


@router.post("/{execution_id}/nodes/{node_id}/result", response_model=ExecutionOut)
async def submit_integration_result(
    execution_id: str,
    node_id: str,
    body: IntegrationResultIn,
    executor: GraphExecutor = Depends(get_executor),
):
    result = body.model_dump(exclude={"expected_version"})
    state = await executor.submit_integration_result(execution_id, node_id, result, body.expected_version)
    return _out(state)
