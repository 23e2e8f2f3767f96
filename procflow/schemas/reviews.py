"""Pydantic models for human-review decisions."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class ReviewDecision(BaseModel):
    decision: Literal["approve", "reject", "request_more_info"]
    notes: str | None = None
    decided_by: str | None = None
    expected_version: int | None = None
