"""Gateway wire protocol: JSON frames over one WebSocket.

Client -> server::

    {"type": "req", "id": ..., "method": ..., "params": {...}}

Server -> client::

    {"type": "event", "event": "connect.challenge", "payload": {"nonce": ...}}
    {"type": "event", "event": "agent", "payload": {"runId", "stream", "data"}}
    {"type": "res", "id": ..., "ok": bool, "payload" | "error": ...}
"""

from __future__ import annotations

import json
import sys
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wxbridge.exceptions import ProtocolError

PROTOCOL_VERSION = 3
CONNECT_REQUEST_ID = "connect"
AGENT_METHOD = "agent"
AGENT_ID_PREFIX = "agent-"

EVENT_CHALLENGE = "connect.challenge"
EVENT_CONNECTED = "connected"
EVENT_AGENT = "agent"
EVENT_MESSAGE = "message"

STREAM_ASSISTANT = "assistant"
STREAM_LIFECYCLE = "lifecycle"
PHASE_END = "end"
PHASE_ERROR = "error"
STATUS_ACCEPTED = "accepted"

CLIENT_ID = "gateway-client"
CLIENT_MODE = "backend"
CLIENT_ROLE = "operator"
CLIENT_SCOPES = ("operator.read", "operator.write")
USER_AGENT = "openclaw-wechat-bridge"


class Frame(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["req", "res", "event"]
    id: str | None = None
    method: str | None = None
    params: dict[str, Any] | None = None
    event: str | None = None
    payload: Any = None
    ok: bool | None = None
    error: Any = None

    @property
    def payload_dict(self) -> dict[str, Any]:
        return self.payload if isinstance(self.payload, dict) else {}


class AgentEvent(BaseModel):
    """Payload of an ``event: agent`` frame."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    run_id: str | None = Field(default=None, alias="runId")
    stream: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def parse_frame(raw: str | bytes) -> Frame:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not valid UTF-8: {e}") from e
    if not raw.strip():
        raise ProtocolError("empty frame")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"frame must be a JSON object, got {type(data).__name__}")
    try:
        return Frame.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"frame has unexpected shape: {e.error_count()} errors") from e


def parse_agent_event(payload: Any) -> AgentEvent | None:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if data is not None and not isinstance(data, dict):
        payload = {**payload, "data": {}}
    try:
        return AgentEvent.model_validate(payload)
    except ValidationError:
        return None


def encode_request(request_id: str, method: str, params: dict[str, Any]) -> str:
    return json.dumps(
        {"type": "req", "id": request_id, "method": method, "params": params},
        ensure_ascii=False,
    )


def build_connect_params(token: str, *, version: str, locale: str) -> dict[str, Any]:
    return {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {
            "id": CLIENT_ID,
            "version": version,
            "platform": sys.platform,
            "mode": CLIENT_MODE,
        },
        "role": CLIENT_ROLE,
        "scopes": list(CLIENT_SCOPES),
        "auth": {"token": token},
        "locale": locale,
        "userAgent": USER_AGENT,
    }


def error_message(error: Any, default: str = "request failed") -> str:
    if isinstance(error, dict | list):
        return json.dumps(error, ensure_ascii=False)
    if error:
        return str(error)
    return default
