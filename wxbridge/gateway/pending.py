"""Correlation of gateway responses to waiting callers.

Key derivation: every outstanding call is keyed by the request id the client
generated. Plain requests use a bare uuid4; agent calls use ``agent-<uuid4>``
and send that same value as ``idempotencyKey``, and the gateway echoes it as
the stream's ``runId``. A ``res`` frame (looked up by ``id``) and an
``event: agent`` frame (looked up by ``payload.runId``) therefore hit the
same entry, so there is a single table and a single lookup path.

An entry leaves the table exactly once. Whichever of terminal response,
terminal stream event, timeout or disconnect comes first pops it; the later
paths find nothing and become no-ops.
"""

from __future__ import annotations

import asyncio
import uuid
from enum import StrEnum
from typing import Any

import structlog

from wxbridge.exceptions import RequestTimeoutError
from wxbridge.gateway.protocol import (
    AGENT_ID_PREFIX,
    PHASE_END,
    PHASE_ERROR,
    STREAM_ASSISTANT,
    STREAM_LIFECYCLE,
    AgentEvent,
)

logger = structlog.get_logger()


def new_request_key() -> str:
    return str(uuid.uuid4())


def new_agent_key() -> str:
    return f"{AGENT_ID_PREFIX}{uuid.uuid4()}"


class StreamOutcome(StrEnum):
    CONTINUE = "continue"
    END = "end"
    ERROR = "error"


class PendingRequest:
    __slots__ = ("accumulator", "future", "key", "method", "streamed", "timeout_handle")

    def __init__(
        self,
        key: str,
        future: asyncio.Future[dict[str, Any]],
        *,
        method: str,
        streamed: bool,
    ) -> None:
        self.key = key
        self.future = future
        self.method = method
        self.streamed = streamed
        self.accumulator = ""
        self.timeout_handle: asyncio.TimerHandle | None = None

    def feed(self, event: AgentEvent) -> StreamOutcome:
        """Apply one streamed agent event to the text buffer.

        ``assistant`` frames carry either a full ``text`` snapshot, which
        replaces the buffer, or a ``delta``, which is appended. Only a
        ``lifecycle`` frame can end the stream.
        """
        data = event.data
        if event.stream == STREAM_ASSISTANT:
            text = data.get("text")
            delta = data.get("delta")
            if isinstance(text, str):
                self.accumulator = text
            elif isinstance(delta, str):
                self.accumulator += delta
            return StreamOutcome.CONTINUE
        if event.stream == STREAM_LIFECYCLE:
            phase = data.get("phase")
            if phase == PHASE_END:
                return StreamOutcome.END
            if phase == PHASE_ERROR:
                return StreamOutcome.ERROR
        return StreamOutcome.CONTINUE


class PendingTable:
    def __init__(self) -> None:
        self._entries: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str | None) -> PendingRequest | None:
        if key is None:
            return None
        return self._entries.get(key)

    def register(
        self,
        key: str,
        *,
        method: str,
        timeout: float,
        streamed: bool = False,
    ) -> PendingRequest:
        if key in self._entries:
            raise ValueError(f"duplicate correlation key: {key}")
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            key, loop.create_future(), method=method, streamed=streamed
        )
        entry.timeout_handle = loop.call_later(timeout, self._expire, key, timeout)
        self._entries[key] = entry
        return entry

    def _pop(self, key: str) -> PendingRequest | None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.timeout_handle is not None:
            entry.timeout_handle.cancel()
        return entry

    def resolve(self, key: str, result: dict[str, Any]) -> bool:
        entry = self._pop(key)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, key: str, exc: BaseException) -> bool:
        entry = self._pop(key)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(exc)
        return True

    def discard(self, key: str) -> None:
        """Drop an entry whose caller went away, without completing it."""
        self._pop(key)

    def reject_all(self, exc_factory: type[BaseException], message: str) -> int:
        keys = list(self._entries)
        for key in keys:
            self.reject(key, exc_factory(message))
        return len(keys)

    def _expire(self, key: str, timeout: float) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        logger.error(
            "gateway_request_timeout",
            request_id=key,
            method=entry.method,
            timeout=timeout,
        )
        self.reject(key, RequestTimeoutError(f"{entry.method} timed out after {timeout}s"))
