"""Request-scoped access to the runtime components held on ``app.state``."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from procflow.db.engine import Database
from procflow.runtime.executor import GraphExecutor
from procflow.services.execution_store import ExecutionStore
from procflow.services.graph_service import GraphRegistry


@dataclass
class Runtime:
    database: Database
    store: ExecutionStore
    registry: GraphRegistry
    executor: GraphExecutor


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_executor(request: Request) -> GraphExecutor:
    return request.app.state.runtime.executor


def get_store(request: Request) -> ExecutionStore:
    return request.app.state.runtime.store


def get_registry(request: Request) -> GraphRegistry:
    return request.app.state.runtime.registry
