"""Gateway session: one authenticated RPC channel to the AI backend."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
import websockets
from pydantic import BaseModel, ConfigDict

from wxbridge import __version__
from wxbridge.core.connection import ConnectionState, ReconnectTracker
from wxbridge.core.events import EventBus, SessionEvent, SessionEventKind
from wxbridge.exceptions import (
    AuthError,
    ConnectionClosedError,
    NotAuthenticatedError,
    NotConnectedError,
    ProtocolError,
    RemoteError,
    TransportError,
)
from wxbridge.gateway.pending import (
    PendingTable,
    StreamOutcome,
    new_agent_key,
    new_request_key,
)
from wxbridge.gateway.protocol import (
    AGENT_METHOD,
    CONNECT_REQUEST_ID,
    EVENT_AGENT,
    EVENT_CHALLENGE,
    EVENT_CONNECTED,
    EVENT_MESSAGE,
    STATUS_ACCEPTED,
    Frame,
    build_connect_params,
    encode_request,
    error_message,
    parse_agent_event,
    parse_frame,
)

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = structlog.get_logger()

_OPEN_TIMEOUT = 15.0
_HANDSHAKE_TIMEOUT = 10.0
_RAW_PREVIEW_LENGTH = 100
_MESSAGE_PREVIEW_LENGTH = 30


class GatewayStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ConnectionState
    connected: bool
    authenticated: bool
    reconnect_attempts: int
    pending_requests: int


class AgentReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    run_id: str


def _no_token() -> str:
    return ""


class GatewaySession:
    """Auto-reconnecting WebSocket RPC client for the gateway.

    Lifecycle: ``disconnected -> connecting -> connected -> authenticated``,
    back to ``disconnected`` on any close. Credentials are only sent in
    answer to the server's ``connect.challenge`` event.
    """

    def __init__(
        self,
        url: str,
        *,
        token_loader: Callable[[], str] = _no_token,
        event_bus: EventBus | None = None,
        channel_name: str = "wechat",
        locale: str = "zh-CN",
        request_timeout: float = 30.0,
        agent_timeout: float = 120.0,
        open_timeout: float = _OPEN_TIMEOUT,
        reconnect: ReconnectTracker | None = None,
        connect_factory: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self._token = token_loader() or ""
        self._event_bus = event_bus or EventBus()
        self._channel_name = channel_name
        self._locale = locale
        self._request_timeout = request_timeout
        self._agent_timeout = agent_timeout
        self._open_timeout = open_timeout
        self._reconnect = reconnect or ReconnectTracker("gateway")
        self._connect_factory = connect_factory

        self._ws: ClientConnection | None = None
        self._state = ConnectionState.DISCONNECTED
        self._should_reconnect = True
        self._pending = PendingTable()
        self._auth_failure: str | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED)

    @property
    def authenticated(self) -> bool:
        return self._state == ConnectionState.AUTHENTICATED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect.attempts

    def status(self) -> GatewayStatus:
        return GatewayStatus(
            state=self._state,
            connected=self.connected,
            authenticated=self.authenticated,
            reconnect_attempts=self._reconnect.attempts,
            pending_requests=len(self._pending),
        )

    # --- connection lifecycle ---

    async def connect(self) -> None:
        """Open the transport. Raises TransportError if it does not open in time."""
        self._should_reconnect = True
        await self._open()

    async def _open(self) -> None:
        if self._ws is not None:
            return
        self._state = ConnectionState.CONNECTING
        logger.info("gateway_connecting", url=self.url)
        try:
            ws = await asyncio.wait_for(
                self._connect_factory(
                    self.url, open_timeout=_HANDSHAKE_TIMEOUT, max_size=None
                ),
                timeout=self._open_timeout,
            )
        except (TimeoutError, OSError, websockets.WebSocketException) as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("gateway_connect_failed", url=self.url, error=str(e))
            raise TransportError(f"cannot connect to gateway at {self.url}: {e}") from e

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._auth_failure = None
        logger.info("gateway_connected", url=self.url)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._emit(SessionEventKind.GATEWAY_CONNECTED)

    async def disconnect(self) -> None:
        """Stop reconnecting, fail every outstanding call, close the transport."""
        self._should_reconnect = False
        rejected = self._pending.reject_all(
            ConnectionClosedError, "gateway connection closed"
        )

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None

        ws, self._ws = self._ws, None
        self._state = ConnectionState.DISCONNECTED
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("gateway_close_error", error=str(e))

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        logger.info("gateway_disconnected", rejected_requests=rejected)

    async def _read_loop(self, ws: ClientConnection) -> None:
        code: int | None = None
        reason = ""
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except websockets.ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
        finally:
            if ws.close_code is not None:
                code = ws.close_code
                reason = ws.close_reason or reason
            await self._on_closed(ws, code, reason)

    async def _on_closed(self, ws: ClientConnection, code: int | None, reason: str) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader_task = None
        self._state = ConnectionState.DISCONNECTED
        logger.warning("gateway_connection_closed", code=code, reason=reason or None)
        await self._emit(
            SessionEventKind.GATEWAY_DISCONNECTED, {"code": code, "reason": reason}
        )
        if self._should_reconnect:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._should_reconnect:
            delay = self._reconnect.next_delay()
            if delay is None:
                logger.error(
                    "gateway_reconnect_exhausted",
                    attempts=self._reconnect.attempts,
                    max_attempts=self._reconnect.max_attempts,
                )
                await self._emit(SessionEventKind.GATEWAY_RECONNECT_EXHAUSTED)
                return
            await asyncio.sleep(delay)
            if not self._should_reconnect:
                return
            try:
                await self._open()
                return
            except TransportError as e:
                logger.warning(
                    "gateway_reconnect_failed",
                    attempt=self._reconnect.attempts,
                    error=str(e),
                )

    # --- inbound frames ---

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            frame = parse_frame(raw)
        except ProtocolError as e:
            logger.warning(
                "gateway_frame_dropped",
                error=str(e),
                raw=str(raw)[:_RAW_PREVIEW_LENGTH],
            )
            return
        try:
            await self._dispatch(frame)
        except Exception:
            logger.exception("gateway_frame_handler_error", frame_type=frame.type)

    async def _dispatch(self, frame: Frame) -> None:
        logger.debug(
            "gateway_frame_received",
            frame_type=frame.type,
            gateway_event=frame.event,
            request_id=frame.id,
        )
        if frame.type == "event":
            await self._handle_event(frame)
        elif frame.type == "res":
            await self._handle_response(frame)
        else:
            await self._emit(
                SessionEventKind.GATEWAY_PUSH,
                frame.model_dump(exclude_none=True),
            )

    async def _handle_event(self, frame: Frame) -> None:
        if frame.event == EVENT_CHALLENGE:
            await self._answer_challenge(frame.payload_dict.get("nonce"))
        elif frame.event == EVENT_AGENT:
            await self._handle_agent_event(frame)
        elif frame.event == EVENT_CONNECTED:
            await self._mark_authenticated(via="event")
        elif frame.event == EVENT_MESSAGE:
            await self._emit(SessionEventKind.GATEWAY_PUSH, frame.payload_dict)
        else:
            logger.debug("gateway_event_ignored", gateway_event=frame.event)

    async def _answer_challenge(self, nonce: Any) -> None:
        logger.info("gateway_challenge_received", has_nonce=nonce is not None)
        params = build_connect_params(
            self._token, version=__version__, locale=self._locale
        )
        await self._send_frame(CONNECT_REQUEST_ID, "connect", params)

    async def _mark_authenticated(self, *, via: str) -> None:
        if self._ws is None:
            return
        already = self._state == ConnectionState.AUTHENTICATED
        self._state = ConnectionState.AUTHENTICATED
        self._reconnect.reset()
        self._auth_failure = None
        if not already:
            logger.info("gateway_authenticated", via=via)
            await self._emit(SessionEventKind.GATEWAY_AUTHENTICATED)

    async def _handle_agent_event(self, frame: Frame) -> None:
        event = parse_agent_event(frame.payload)
        entry = self._pending.get(event.run_id if event else None)
        if event is None or entry is None or not entry.streamed:
            await self._emit(SessionEventKind.GATEWAY_PUSH, frame.payload_dict)
            return

        outcome = entry.feed(event)
        if outcome == StreamOutcome.END:
            text = entry.accumulator.strip()
            logger.info("agent_completed", run_id=entry.key, response_length=len(text))
            self._pending.resolve(entry.key, {"text": text})
        elif outcome == StreamOutcome.ERROR:
            message = str(event.data.get("message") or "agent error")
            logger.error("agent_failed", run_id=entry.key, error=message)
            self._pending.reject(entry.key, RemoteError(message))

    async def _handle_response(self, frame: Frame) -> None:
        if frame.id == CONNECT_REQUEST_ID:
            if frame.ok:
                await self._mark_authenticated(via="response")
            else:
                message = error_message(frame.error, "handshake rejected")
                logger.error("gateway_auth_failed", error=message)
                self._auth_failure = message
                await self._emit(
                    SessionEventKind.GATEWAY_AUTH_FAILED, {"error": message}
                )
            return

        entry = self._pending.get(frame.id)
        if entry is None:
            logger.debug("gateway_response_unmatched", request_id=frame.id)
            return

        if entry.streamed and frame.payload_dict.get("status") == STATUS_ACCEPTED:
            logger.info("agent_accepted", run_id=entry.key)
            return

        if frame.ok:
            self._pending.resolve(entry.key, frame.payload_dict)
        else:
            self._pending.reject(entry.key, RemoteError(error_message(frame.error)))

    # --- outbound calls ---

    def _require_authenticated(self) -> None:
        if self._ws is None or not self.connected:
            raise NotConnectedError("gateway is not connected")
        if self._auth_failure is not None:
            raise AuthError(f"gateway rejected the handshake: {self._auth_failure}")
        if not self.authenticated:
            raise NotAuthenticatedError("gateway is not authenticated")

    async def _send_frame(
        self, request_id: str, method: str, params: dict[str, Any]
    ) -> None:
        ws = self._ws
        if ws is None:
            raise NotConnectedError(f"gateway is not connected, cannot send {method}")
        try:
            await ws.send(encode_request(request_id, method, params))
        except websockets.ConnectionClosed as e:
            raise ConnectionClosedError(f"gateway closed while sending {method}") from e

    async def _call(
        self,
        key: str,
        method: str,
        params: dict[str, Any],
        *,
        timeout: float,
        streamed: bool,
    ) -> dict[str, Any]:
        entry = self._pending.register(
            key, method=method, timeout=timeout, streamed=streamed
        )
        try:
            await self._send_frame(key, method, params)
        except (ConnectionClosedError, NotConnectedError) as e:
            self._pending.reject(key, e)
        try:
            return await entry.future
        finally:
            self._pending.discard(key)

    async def request(
        self, method: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Send one request and wait for its ``res`` frame."""
        self._require_authenticated()
        return await self._call(
            new_request_key(),
            method,
            params or {},
            timeout=self._request_timeout,
            streamed=False,
        )

    async def call_agent(self, params: dict[str, Any]) -> AgentReply:
        """Invoke the agent and wait for its streamed reply to finish."""
        self._require_authenticated()
        key = new_agent_key()
        preview = str(params.get("message") or "")[:_MESSAGE_PREVIEW_LENGTH]
        logger.info(
            "agent_calling",
            run_id=key,
            agent_id=params.get("agentId"),
            session_key=params.get("sessionKey"),
            message_preview=preview,
        )
        result = await self._call(
            key,
            AGENT_METHOD,
            {**params, "idempotencyKey": key},
            timeout=self._agent_timeout,
            streamed=True,
        )
        return AgentReply(text=str(result.get("text") or "").strip(), run_id=key)

    async def send_message(
        self, from_user: str, content: str, message_type: str = "text"
    ) -> dict[str, Any]:
        try:
            return await self.request(
                "send",
                {
                    "channel": self._channel_name,
                    "message": {
                        "from": from_user,
                        "content": content,
                        "type": message_type,
                    },
                },
            )
        except Exception as e:
            logger.error("gateway_send_message_failed", from_user=from_user, error=str(e))
            raise

    async def _emit(
        self, kind: SessionEventKind, data: dict[str, Any] | None = None
    ) -> None:
        await self._event_bus.emit(SessionEvent(kind=kind, data=data or {}))
