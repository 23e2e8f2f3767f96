"""Pydantic models for executions, checkpoints and the execution timeline."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


class ExecutionCreate(BaseModel):
    graph_id: str
    owner_id: str
    version: str | None = None
    context: dict[str, Any] | None = None
    allow_parallel: bool = False


class NodeStateOut(BaseModel):
    status: str
    attempts: int
    entered_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    error_kind: str | None = None
    output_data: dict[str, Any] = {}
    recovery_options: list[str] = []
    next_attempt_at: datetime | None = None

    model_config = {"from_attributes": True}


class ExecutionOut(BaseModel):
    execution_id: str
    graph_id: str
    graph_version: str
    owner_id: str
    status: str
    current_node: str | None = None
    node_states: dict[str, NodeStateOut] = {}
    context: dict[str, Any] = {}
    parent_execution_id: str | None = None
    child_execution_ids: list[str] = []
    depth: int = 0
    version: int
    error: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CheckpointOut(BaseModel):
    checkpoint_id: str
    execution_id: str
    seq: int
    caused_by: str
    created_at: datetime
    superseded: bool = False

    model_config = {"from_attributes": True}


class CheckpointCreate(BaseModel):
    description: str = "manual"


class RollbackRequest(BaseModel):
    checkpoint_id: str


class CancelRequest(BaseModel):
    reason: str = "cancelled by request"


class MigrateRequest(BaseModel):
    expected_version: int
    target_version: str
    node_mapping: dict[str, str] = Field(default_factory=dict)


class IntegrationResultIn(BaseModel):
    status: str = "success"  # success | failure
    output: dict[str, Any] | None = None
    error_kind: str | None = None
    message: str | None = None
    retryable: bool = True
    expected_version: int | None = None


class EventOut(BaseModel):
    event_id: int
    execution_id: str
    ts: datetime
    event_type: str
    node_id: str | None = None
    attempt: int | None = None
    payload: dict[str, Any] | None = None

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def _parse_payload(cls, data: Any) -> Any:
        if hasattr(data, "payload_json"):
            return {
                "event_id": data.event_id,
                "execution_id": data.execution_id,
                "ts": data.ts,
                "event_type": data.event_type,
                "node_id": data.node_id,
                "attempt": data.attempt,
                "payload": json.loads(data.payload_json) if data.payload_json else None,
            }
        return data
