"""Pydantic models for graph registration."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, model_validator


class GraphRegister(BaseModel):
    """Body for POST /api/graphs: the raw graph document."""
    document: dict[str, Any]


class GraphOut(BaseModel):
    graph_id: str
    version: str
    name: str
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class GraphDetail(GraphOut):
    document: dict[str, Any]

    @model_validator(mode="before")
    @classmethod
    def _parse_definition(cls, data: Any) -> Any:
        if hasattr(data, "definition_json"):
            return {
                "graph_id": data.graph_id,
                "version": data.version,
                "name": data.name,
                "status": data.status,
                "created_at": data.created_at,
                "document": json.loads(data.definition_json),
            }
        return data


class ValidationIssueOut(BaseModel):
    kind: str | None = None
    message: str
    node_id: str | None = None


class RegistrationOut(BaseModel):
    ok: bool
    graph_id: str | None = None
    version: str | None = None
    created: bool = False
    errors: list[ValidationIssueOut] = []
