"""Action handler contract and the name → handler registry used by action nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable


class HandlerOutcome:
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


@dataclass(frozen=True)
class HandlerResult:
    outcome: str
    output_data: dict[str, Any] = field(default_factory=dict)
    error_kind: str | None = None
    message: str | None = None
    retryable: bool = True

    @classmethod
    def success(cls, output_data: dict[str, Any] | None = None) -> "HandlerResult":
        return cls(HandlerOutcome.SUCCESS, output_data=dict(output_data or {}))

    @classmethod
    def failure(cls, error_kind: str, message: str, retryable: bool = True) -> "HandlerResult":
        return cls(HandlerOutcome.FAILURE, error_kind=error_kind, message=message, retryable=retryable)

    @classmethod
    def pending(cls, output_data: dict[str, Any] | None = None) -> "HandlerResult":
        """The work continues outside the engine; resumed by an integration result."""
        return cls(HandlerOutcome.PENDING, output_data=dict(output_data or {}))

    @property
    def ok(self) -> bool:
        return self.outcome == HandlerOutcome.SUCCESS


@runtime_checkable
class ActionHandler(Protocol):
    async def invoke(self, node_config: Mapping[str, Any], context: dict[str, Any]) -> HandlerResult:
        ...


class FunctionHandler:
    """Adapts a plain ``async def fn(node_config, context)`` to ``ActionHandler``."""

    def __init__(self, fn: Callable[[Mapping[str, Any], dict[str, Any]], Awaitable[HandlerResult]]):
        self._fn = fn
        self.__name__ = getattr(fn, "__name__", "handler")

    async def invoke(self, node_config: Mapping[str, Any], context: dict[str, Any]) -> HandlerResult:
        return await self._fn(node_config, context)


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler | Callable[..., Awaitable[HandlerResult]]) -> None:
        if not isinstance(handler, ActionHandler):
            handler = FunctionHandler(handler)
        self._handlers[name] = handler

    def get(self, name: str | None) -> ActionHandler | None:
        if not name:
            return None
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers
