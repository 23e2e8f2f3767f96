"""Human-review API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from procflow.api.deps import get_executor
from procflow.api.executions import _out
from procflow.runtime.executor import GraphExecutor
from procflow.schemas.executions import ExecutionOut
from procflow.schemas.reviews import ReviewDecision

router = APIRouter()


@router.post("/{execution_id}/reviews/{node_id}", response_model=ExecutionOut)
async def submit_decision(
    execution_id: str,
    node_id: str,
    body: ReviewDecision,
    executor: GraphExecutor = Depends(get_executor),
):
    state = await executor.submit_decision(
        execution_id,
        node_id,
        body.decision,
        notes=body.notes,
        expected_version=body.expected_version,
        decided_by=body.decided_by,
    )
    return _out(state)
