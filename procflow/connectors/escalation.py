"""Escalation sinks: where unrecoverable execution failures are announced."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from procflow.config import Settings, settings

logger = logging.getLogger("procflow.connectors.escalation")


class EscalationSink(Protocol):
    async def escalate(self, payload: dict[str, Any]) -> None:
        ...


class LoggingEscalationSink:
    async def escalate(self, payload: dict[str, Any]) -> None:
        state = payload.get("state") or {}
        logger.error(
            "ESCALATION execution=%s graph=%s@%s node=%s error=%s",
            payload.get("execution_id"),
            state.get("graph_id"),
            state.get("graph_version"),
            state.get("current_node"),
            state.get("error"),
        )


class WebhookEscalationSink:
    """POSTs the escalation payload as JSON; delivery errors are logged, not raised."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def escalate(self, payload: dict[str, Any]) -> None:
        headers = {"X-Procflow-Execution-ID": str(payload.get("execution_id", ""))}
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
            logger.info("Escalation for %s delivered to %s", payload.get("execution_id"), self.url)
        except httpx.HTTPError as exc:
            logger.error("Escalation webhook %s failed: %s", self.url, exc)


def build_escalation_sink(cfg: Settings = settings) -> EscalationSink:
    if cfg.ESCALATION_WEBHOOK_URL:
        return WebhookEscalationSink(cfg.ESCALATION_WEBHOOK_URL, cfg.ESCALATION_WEBHOOK_TIMEOUT_S)
    return LoggingEscalationSink()
