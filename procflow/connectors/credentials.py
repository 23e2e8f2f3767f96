"""Credential / identity collaborator contract and its action handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from procflow.connectors.handlers import HandlerResult
from procflow.templating.engine import resolve_path

logger = logging.getLogger("procflow.connectors.credentials")


@dataclass(frozen=True)
class CredentialCheck:
    verified: bool
    factor_level: int = 0


class CredentialService(Protocol):
    async def verify(self, user_id: str, method: str) -> CredentialCheck:
        ...


class CredentialVerificationHandler:
    """Verifies the execution owner with the configured method.

    Config keys: ``method`` (default ``"password"``), ``min_factor_level``
    (default 1), ``user_path`` (default ``execution.owner_id``).
    """

    def __init__(self, service: CredentialService):
        self._service = service

    async def invoke(self, node_config: Mapping[str, Any], context: dict[str, Any]) -> HandlerResult:
        method = node_config.get("method", "password")
        user_id = resolve_path(node_config.get("user_path", "execution.owner_id"), context)
        if not user_id:
            return HandlerResult.failure("credential_user_missing", "No user to verify", retryable=False)

        check = await self._service.verify(str(user_id), method)
        min_level = int(node_config.get("min_factor_level", 1))
        if not check.verified:
            return HandlerResult.failure(
                "credential_unverified", f"User {user_id} failed {method} verification", retryable=False
            )
        if check.factor_level < min_level:
            logger.info("User %s verified at level %d < %d", user_id, check.factor_level, min_level)
            return HandlerResult.failure(
                "credential_insufficient",
                f"Factor level {check.factor_level} below required {min_level}",
                retryable=False,
            )
        return HandlerResult.success(
            {"verified": True, "method": method, "factor_level": check.factor_level}
        )
