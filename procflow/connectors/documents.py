"""Document collaborator contract and the action handler that calls it.

The engine never inspects document contents itself.  A deployment plugs in
its own ``DocumentService``; ``DocumentValidationHandler`` is the only place
the engine talks to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from procflow.connectors.handlers import HandlerResult
from procflow.templating.engine import resolve_path

logger = logging.getLogger("procflow.connectors.documents")


@dataclass(frozen=True)
class DocumentRequirement:
    document_type: str
    required_fields: tuple[str, ...] = ()
    accepted_formats: tuple[str, ...] = ()
    max_age_days: int | None = None


@dataclass
class DocumentValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


class DocumentService(Protocol):
    async def get_requirement(self, node_id: str) -> DocumentRequirement:
        ...

    async def validate(self, document: Mapping[str, Any], requirement: DocumentRequirement) -> DocumentValidation:
        ...


class DocumentValidationHandler:
    """Validates the document found at ``config.document_path`` in the context.

    Config keys: ``node_id`` (requirement lookup key), ``document_path``
    (dotted path into the handler context, default ``context.document``).
    Invalid documents are non-retryable failures; a missing document is
    reported as ``document_missing`` and may be retried once it is uploaded.
    """

    def __init__(self, service: DocumentService):
        self._service = service

    async def invoke(self, node_config: Mapping[str, Any], context: dict[str, Any]) -> HandlerResult:
        requirement = await self._service.get_requirement(node_config.get("node_id", ""))
        path = node_config.get("document_path", "context.document")
        document = resolve_path(path, context)
        if not isinstance(document, Mapping):
            return HandlerResult.failure(
                "document_missing", f"No {requirement.document_type} document at '{path}'"
            )

        outcome = await self._service.validate(document, requirement)
        if not outcome.valid:
            logger.info("Document %s rejected: %s", requirement.document_type, outcome.errors)
            return HandlerResult.failure(
                "document_invalid", "; ".join(outcome.errors) or "document rejected", retryable=False
            )
        return HandlerResult.success(
            {"document_type": requirement.document_type, "valid": True}
        )
