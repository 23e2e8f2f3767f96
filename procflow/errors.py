"""Exception hierarchy for the engine.

Node-level failures are never raised past the executor; they become
``NodeState.error_kind`` values (see ``NodeErrorKind``).  The exceptions below
cover registration, store and caller-facing errors.
"""

from __future__ import annotations

from typing import Any


class ProcflowError(Exception):
    """Base class for all engine errors."""


# ── Graph definition ────────────────────────────────────────────


class GraphParseError(ProcflowError):
    """The graph document cannot be turned into a ProcedureGraph."""


class GraphValidationError(ProcflowError):
    def __init__(self, errors: list[Any]):
        self.errors = errors
        super().__init__(f"Graph validation failed: {[str(e) for e in errors]}")


class GraphNotFound(ProcflowError):
    def __init__(self, graph_id: str, version: str | None = None):
        self.graph_id = graph_id
        self.version = version
        super().__init__(f"Graph not found: {graph_id}@{version or 'latest'}")


class GraphVersionExists(ProcflowError):
    """A different definition is already registered under this (id, version)."""


class GraphInUse(ProcflowError):
    """The graph version is pinned by a non-terminal execution."""


# ── Execution store ─────────────────────────────────────────────


class ExecutionNotFound(ProcflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class DuplicateExecution(ProcflowError):
    def __init__(self, graph_id: str, owner_id: str, existing_id: str):
        self.graph_id = graph_id
        self.owner_id = owner_id
        self.existing_id = existing_id
        super().__init__(
            f"Active execution {existing_id} already exists for graph '{graph_id}' "
            f"and owner '{owner_id}'"
        )


class ConflictError(ProcflowError):
    """The expected version is stale; reload and retry the transition."""

    def __init__(self, execution_id: str, expected_version: int, actual_version: int | None):
        self.execution_id = execution_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on execution {execution_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class InvalidCheckpoint(ProcflowError):
    pass


# ── Executor caller errors ──────────────────────────────────────


class InvalidReviewState(ProcflowError):
    """A review decision or integration result does not match a waiting node."""


class MigrationError(ProcflowError):
    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


class NodeErrorKind:
    """Error kinds recorded on failed node states."""

    HANDLER_ERROR = "handler_error"
    HANDLER_FAILURE = "handler_failure"
    TIMEOUT = "timeout"
    NO_MATCHING_EDGE = "no_matching_edge"
    UNRESOLVED_DEPENDENCY = "unresolved_dependency"
    DEPENDENCY_DEPTH_EXCEEDED = "dependency_depth_exceeded"
    EXECUTION_LIMIT_EXCEEDED = "execution_limit_exceeded"
    MISSING_HANDLER = "missing_handler"
    TERMINAL_NODE = "terminal_node"

    # Resource limits are hard failures: no retry, no recovery edge.
    HARD_FAILURES = frozenset({DEPENDENCY_DEPTH_EXCEEDED, EXECUTION_LIMIT_EXCEEDED})
