"""Typed session events with a small async fan-out bus."""

from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()


class SessionEventKind(StrEnum):
    GATEWAY_CONNECTED = "gateway.connected"
    GATEWAY_AUTHENTICATED = "gateway.authenticated"
    GATEWAY_AUTH_FAILED = "gateway.auth_failed"
    GATEWAY_DISCONNECTED = "gateway.disconnected"
    GATEWAY_RECONNECT_EXHAUSTED = "gateway.reconnect_exhausted"
    GATEWAY_PUSH = "gateway.push"
    WECHAT_CONNECTED = "wechat.connected"
    WECHAT_DISCONNECTED = "wechat.disconnected"
    WECHAT_RECONNECT_EXHAUSTED = "wechat.reconnect_exhausted"
    WECHAT_MESSAGE = "wechat.message"
    WECHAT_QR_CODE = "wechat.qr_code"
    WECHAT_LOGGED_IN = "wechat.logged_in"
    BRIDGE_STARTED = "bridge.started"
    BRIDGE_STOPPED = "bridge.stopped"


class SessionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SessionEventKind
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[SessionEvent], Coroutine[Any, Any, None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[SessionEventKind, list[EventHandler]] = {}

    def subscribe(self, kind: SessionEventKind, handler: EventHandler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    async def emit(self, event: SessionEvent) -> None:
        for handler in self._handlers.get(event.kind, []):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_error",
                    event_kind=str(event.kind),
                    handler_name=getattr(handler, "__name__", repr(handler)),
                )
