"""WeChat connector: HTTP API plus the push WebSocket of the iPad-protocol service."""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

import httpx
import structlog
import websockets
from pydantic import BaseModel, ConfigDict

from wxbridge.connectors.base import BaseConnector, DownloadedFile
from wxbridge.connectors.metadata import parse_app_message
from wxbridge.core.connection import ReconnectTracker
from wxbridge.core.events import EventBus, SessionEvent, SessionEventKind
from wxbridge.core.models import ContentType, InboundMessage
from wxbridge.exceptions import (
    ConnectorError,
    LoginTimeoutError,
    MetadataParseError,
    TransportError,
)
from wxbridge.storage.files import AuthKeyStore

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = structlog.get_logger()

HTTP_TIMEOUT_SECONDS = 30.0
DOWNLOAD_TIMEOUT_SECONDS = 60.0
_WS_HANDSHAKE_TIMEOUT = 10.0
_WS_OPEN_TIMEOUT = 15.0
_VIDEO_SIZE_WARNING_BYTES = 20 * 1024 * 1024
_SUPPORTED_VOICE_FORMATS = frozenset({"silk", "amr", "slk"})
_API_SUCCESS_CODE = 200
_LOGGED_IN = 1
_AUTH_KEY_VALID_DAYS = 365

# Outbound MsgType codes differ from the inbound msg_type codes below.
_SEND_TEXT = 1
_SEND_IMAGE = 2
_SEND_VOICE = 3
_SEND_VIDEO = 4
_SEND_FILE = 6

_INBOUND_TYPES: dict[int, ContentType] = {
    1: ContentType.TEXT,
    3: ContentType.IMAGE,
    34: ContentType.VOICE,
    47: ContentType.EMOJI,
    49: ContentType.APP,
}


class LoginState(StrEnum):
    UNKNOWN = "unknown"
    LOGGED_OUT = "logged_out"
    LOGGED_IN = "logged_in"


class WechatStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    login_state: LoginState
    ws_connected: bool
    has_auth_key: bool
    reconnect_attempts: int


def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return default


def _wrapped_str(value: Any) -> str:
    """Push frames wrap strings as ``{"str": "..."}``."""
    if isinstance(value, dict):
        inner = value.get("str")
        return inner if isinstance(inner, str) else ""
    return value if isinstance(value, str) else ""


def _is_ok(body: dict[str, Any]) -> bool:
    return body.get("Code") == _API_SUCCESS_CODE


def _send_succeeded(body: dict[str, Any]) -> bool:
    if not _is_ok(body):
        return False
    results = body.get("Data")
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        return False
    first = results[0]
    resp = first.get("resp")
    base_response = resp.get("baseResponse") if isinstance(resp, dict) else None
    if isinstance(base_response, dict) and base_response.get("ret") == 0:
        return True
    return bool(first.get("isSendSuccess"))


def unwrap_qr_url(url: str) -> str:
    """Return the target of a ``...?data=<url>`` redirect, else ``url`` unchanged."""
    if "data=" not in url:
        return url
    values = parse_qs(urlsplit(url).query).get("data")
    return values[0] if values and values[0] else url


def parse_push_frame(frame: Any) -> InboundMessage | None:
    """Turn one push-socket frame into an InboundMessage.

    Frames missing a sender or recipient, or with empty content, yield None.
    App messages (49) with sub-type 6 become FILE and carry the title as
    ``file_name``.
    """
    if not isinstance(frame, dict):
        return None
    if not frame.get("from_user_name") or not frame.get("to_user_name"):
        return None
    sender = _wrapped_str(frame.get("from_user_name"))
    recipient = _wrapped_str(frame.get("to_user_name"))
    content = _wrapped_str(frame.get("content"))
    if not content:
        return None

    msg_type = _to_int(frame.get("msg_type"), default=-1)
    content_type = _INBOUND_TYPES.get(msg_type, ContentType.UNKNOWN)
    file_name: str | None = None
    if content_type == ContentType.APP:
        try:
            info = parse_app_message(content)
        except MetadataParseError as e:
            logger.debug("wechat_app_metadata_unparsed", error=str(e))
        else:
            file_name = info.title
            if info.is_file:
                content_type = ContentType.FILE

    msg_id = frame.get("msg_id")
    create_time = _to_int(frame.get("create_time"))
    fields: dict[str, Any] = {}
    if create_time > 0:
        fields["timestamp"] = datetime.fromtimestamp(create_time, UTC)
    return InboundMessage(
        sender_id=sender,
        recipient_id=recipient,
        raw_content=content,
        content_type=content_type,
        provider_msg_id=_to_int(msg_id) if msg_id is not None else None,
        file_name=file_name,
        **fields,
    )


class WechatSession(BaseConnector):
    def __init__(
        self,
        base_url: str,
        ws_url: str,
        *,
        auth_key: str = "",
        admin_key: str = "daidai",
        event_bus: EventBus | None = None,
        reconnect: ReconnectTracker | None = None,
        http_client: httpx.AsyncClient | None = None,
        connect_factory: Callable[..., Any] = websockets.connect,
        poll_interval: float = 2.0,
        login_timeout: float = 120.0,
        auth_keys: AuthKeyStore | None = None,
    ) -> None:
        self.base_url = base_url
        self.ws_url = ws_url
        self.auth_key = auth_key
        self.admin_key = admin_key
        self._event_bus = event_bus or EventBus()
        self._reconnect = reconnect or ReconnectTracker("wechat")
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=HTTP_TIMEOUT_SECONDS
        )
        self._connect_factory = connect_factory
        self._poll_interval = poll_interval
        self._login_timeout = login_timeout
        self._auth_keys = auth_keys

        self._login_state = LoginState.UNKNOWN
        self._ws: ClientConnection | None = None
        self._should_reconnect = True
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def login_state(self) -> LoginState:
        return self._login_state

    @property
    def logged_in(self) -> bool:
        return self._login_state == LoginState.LOGGED_IN

    @property
    def ws_connected(self) -> bool:
        return self._ws is not None

    def status(self) -> WechatStatus:
        return WechatStatus(
            login_state=self._login_state,
            ws_connected=self.ws_connected,
            has_auth_key=bool(self.auth_key),
            reconnect_attempts=self._reconnect.attempts,
        )

    # --- HTTP plumbing ---

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        key: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http.request(
                method,
                path,
                params={"key": self.auth_key if key is None else key},
                json=payload,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ConnectorError(f"{method} {path} failed: {e}") from e
        if not isinstance(body, dict):
            raise ConnectorError(f"{method} {path} returned a non-object body")
        return body

    async def _post(
        self,
        path: str,
        payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        return await self._request("POST", path, payload or {}, **kwargs)

    async def _send_item(self, path: str, item: dict[str, Any]) -> bool:
        try:
            body = await self._post(path, {"MsgItem": [item]})
        except ConnectorError as e:
            logger.error("wechat_send_failed", endpoint=path, error=str(e))
            return False
        if _send_succeeded(body):
            return True
        logger.warning(
            "wechat_send_rejected",
            endpoint=path,
            code=body.get("Code"),
            text=body.get("Text"),
        )
        return False

    async def _read_local(self, file_path: str, kind: str) -> bytes | None:
        path = Path(file_path)
        if not path.is_file():
            logger.error("wechat_send_file_missing", kind=kind, path=file_path)
            return None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.error("wechat_send_file_unreadable", kind=kind, path=file_path, error=str(e))
            return None

    # --- admin / login ---

    async def ensure_auth_key(self) -> str:
        """Use the configured key, else the stored one, else mint and store a new one."""
        if self.auth_key:
            return self.auth_key
        stored = self._auth_keys.load() if self._auth_keys is not None else None
        if stored:
            self.auth_key = stored
            return stored
        logger.warning("wechat_auth_key_missing")
        self.auth_key = await self.gen_auth_key(1, _AUTH_KEY_VALID_DAYS)
        if self._auth_keys is not None:
            self._auth_keys.save(self.auth_key)
        return self.auth_key

    async def prepare(self) -> None:
        await self.ensure_auth_key()
        try:
            await self.check_service()
        except ConnectorError as e:
            logger.error("wechat_service_unreachable", base_url=self.base_url)
            raise ConnectorError(f"messaging service at {self.base_url} is not running") from e
        await self.ensure_login()

    async def gen_auth_key(self, count: int = 1, days: int = 365) -> str:
        body = await self._post(
            "/admin/GenAuthKey1", {"count": count, "days": days}, key=self.admin_key
        )
        keys = body.get("Data")
        if not _is_ok(body) or not isinstance(keys, list) or not keys:
            raise ConnectorError(body.get("Text") or "auth key generation failed")
        logger.info("wechat_auth_key_generated", days=days)
        return str(keys[0])

    async def _apply_login_status(self, data: dict[str, Any]) -> None:
        was_logged_in = self.logged_in
        if _to_int(data.get("loginState")) == _LOGGED_IN:
            self._login_state = LoginState.LOGGED_IN
        else:
            self._login_state = LoginState.LOGGED_OUT
        if self.logged_in and not was_logged_in:
            logger.info(
                "wechat_logged_in",
                login_time=data.get("loginTime"),
                online_time=data.get("onlineTime"),
            )
            await self._emit(SessionEventKind.WECHAT_LOGGED_IN, dict(data))

    async def check_service(self) -> dict[str, Any]:
        """Probe the service; raises ConnectorError when it is unreachable."""
        body = await self._request("GET", "/login/GetLoginStatus")
        data = body.get("Data") if _is_ok(body) else None
        status = data if isinstance(data, dict) else {"loginState": 0}
        await self._apply_login_status(status)
        return status

    async def get_login_status(self) -> dict[str, Any]:
        try:
            return await self.check_service()
        except ConnectorError as e:
            logger.error("wechat_login_status_failed", error=str(e))
            return {"loginState": 0}

    async def wake_up_login(self) -> bool:
        logger.info("wechat_wake_up_login_attempt")
        try:
            body = await self._post("/login/WakeUpLogin")
        except ConnectorError as e:
            logger.warning("wechat_wake_up_login_failed", error=str(e))
            return False
        if _is_ok(body):
            logger.info("wechat_wake_up_login_sent")
            return True
        logger.warning("wechat_wake_up_login_failed", error=body.get("Text"))
        return False

    async def get_login_qr_code(self) -> str:
        body = await self._post("/login/GetLoginQrCodeNew")
        data = body.get("Data")
        if not _is_ok(body) or not isinstance(data, dict):
            raise ConnectorError(body.get("Text") or "QR code request failed")
        url = unwrap_qr_url(str(data.get("QrCodeUrl") or ""))
        if url:
            await self._emit(SessionEventKind.WECHAT_QR_CODE, {"url": url})
        return url

    async def wait_for_login(
        self, interval: float | None = None, timeout: float | None = None
    ) -> None:
        interval = self._poll_interval if interval is None else interval
        timeout = self._login_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            await self.get_login_status()
            if self.logged_in:
                return
            await asyncio.sleep(interval)
        raise LoginTimeoutError(
            f"not logged in after {timeout:.0f}s, restart to retry the login"
        )

    async def ensure_login(self) -> None:
        """Wake-up login first, QR login as the fallback."""
        status = await self.get_login_status()
        if self.logged_in:
            logger.info(
                "wechat_already_logged_in",
                login_time=status.get("loginTime"),
                online_time=status.get("onlineTime"),
            )
            return
        if await self.wake_up_login():
            await self.wait_for_login()
            return
        logger.warning("wechat_qr_login_required")
        await self.get_login_qr_code()
        await self.wait_for_login()

    # --- contacts ---

    async def get_contact_list(self) -> list[str]:
        body = await self._post("/friend/GetContactList")
        if not _is_ok(body):
            raise ConnectorError(body.get("Text") or "contact list request failed")
        data = body.get("Data") or {}
        contacts = (data.get("ContactList") or {}) if isinstance(data, dict) else {}
        names = contacts.get("contactUsernameList") if isinstance(contacts, dict) else None
        return list(names or [])

    async def get_contact_details(self, user_names: list[str]) -> list[dict[str, Any]]:
        body = await self._post("/friend/GetContactDetailsList", {"UserNames": user_names})
        if not _is_ok(body):
            raise ConnectorError(body.get("Text") or "contact details request failed")
        data = body.get("Data") or {}
        details = data.get("contactList") if isinstance(data, dict) else None
        return list(details or [])

    async def search_contact(self, keyword: str) -> list[Any]:
        try:
            body = await self._post("/friend/SearchContact", {"keyword": keyword})
        except ConnectorError as e:
            logger.error("wechat_search_contact_failed", error=str(e))
            return []
        if not _is_ok(body):
            return []
        data = body.get("Data") or []
        return data if isinstance(data, list) else [data]

    # --- sends ---

    async def send_text(self, to_user: str, content: str) -> bool:
        ok = await self._send_item(
            "/message/SendTextMessage",
            {
                "ToUserName": to_user,
                "MsgType": _SEND_TEXT,
                "Content": content,
                "TextContent": content,
            },
        )
        logger.info("wechat_text_sent", to_user=to_user, length=len(content), ok=ok)
        return ok

    async def send_image(self, to_user: str, image_path: str) -> bool:
        data = await self._read_local(image_path, "image")
        if data is None:
            return False
        logger.info("wechat_image_sending", to_user=to_user, size=len(data))
        return await self._send_item(
            "/message/SendImageNewMessage",
            {
                "ToUserName": to_user,
                "MsgType": _SEND_IMAGE,
                "ImageContent": base64.b64encode(data).decode("ascii"),
            },
        )

    async def send_file(
        self, to_user: str, file_path: str, file_name: str | None = None
    ) -> bool:
        """Send a document. Tries SendFileMessage, then SendAppMessage."""
        data = await self._read_local(file_path, "file")
        if data is None:
            return False
        name = file_name or Path(file_path).name
        item = {
            "ToUserName": to_user,
            "MsgType": _SEND_FILE,
            "FileContent": base64.b64encode(data).decode("ascii"),
            "FileName": name,
            "FileSize": len(data),
        }
        logger.info("wechat_file_sending", to_user=to_user, file_name=name, size=len(data))
        for endpoint in ("/message/SendFileMessage", "/message/SendAppMessage"):
            if await self._send_item(endpoint, item):
                logger.info("wechat_file_sent", file_name=name, endpoint=endpoint)
                return True
        return False

    async def send_video(self, to_user: str, video_path: str) -> bool:
        data = await self._read_local(video_path, "video")
        if data is None:
            return False
        if len(data) > _VIDEO_SIZE_WARNING_BYTES:
            logger.warning(
                "wechat_video_large",
                size_mb=round(len(data) / 1024 / 1024),
                path=video_path,
            )
        return await self._send_item(
            "/message/SendVideoMessage",
            {
                "ToUserName": to_user,
                "MsgType": _SEND_VIDEO,
                "VideoContent": base64.b64encode(data).decode("ascii"),
            },
        )

    async def send_voice(
        self, to_user: str, voice_path: str, duration_ms: int = 0
    ) -> bool:
        data = await self._read_local(voice_path, "voice")
        if data is None:
            return False
        ext = Path(voice_path).suffix.lstrip(".").lower()
        if ext and ext not in _SUPPORTED_VOICE_FORMATS:
            logger.warning("wechat_voice_format_unsupported", extension=ext)
        return await self._send_item(
            "/message/SendVoiceMessage",
            {
                "ToUserName": to_user,
                "MsgType": _SEND_VOICE,
                "VoiceContent": base64.b64encode(data).decode("ascii"),
                "VoiceLength": duration_ms,
            },
        )

    async def revoke_message(self, msg_id: int, to_user: str) -> bool:
        try:
            body = await self._post(
                "/message/RevokeMsg", {"MsgId": msg_id, "ToUserName": to_user}
            )
        except ConnectorError as e:
            logger.error("wechat_revoke_failed", msg_id=msg_id, error=str(e))
            return False
        return _is_ok(body)

    # --- downloads ---

    async def _fetch_chunks(
        self,
        path: str,
        base: dict[str, Any],
        total_len: int,
        *,
        strict: bool,
        timeout: float | None = None,
    ) -> bytes | None:
        """Page through ``path`` by ``Section.StartPos`` until ``total_len``.

        Stops early on an empty chunk. A non-200 answer aborts the whole
        download when ``strict``, otherwise keeps what arrived so far. The
        offset always advances by at least the bytes received.
        """
        chunks: list[bytes] = []
        start = 0
        while start < total_len:
            body = await self._post(
                path, {**base, "Section": {"StartPos": start}}, timeout=timeout
            )
            if not _is_ok(body):
                logger.warning(
                    "wechat_chunk_rejected", endpoint=path, start=start, text=body.get("Text")
                )
                if strict:
                    return None
                break
            data = body.get("Data")
            inner = data.get("Data") if isinstance(data, dict) else None
            if not isinstance(inner, dict) or _to_int(inner.get("iLen")) <= 0:
                break
            chunk = base64.b64decode(inner.get("buffer") or "")
            if not chunk:
                break
            chunks.append(chunk)
            next_start = _to_int(data.get("StartPos"), start) + _to_int(
                data.get("DataLen"), len(chunk)
            )
            start = next_start if next_start > start else start + len(chunk)
            logger.debug("wechat_download_progress", received=start, total=total_len)
        return b"".join(chunks) if chunks else None

    async def download_image(
        self, msg_id: int, total_len: int, from_user: str, to_user: str
    ) -> bytes | None:
        if not msg_id or total_len <= 0:
            logger.warning("wechat_image_download_missing_params", msg_id=msg_id)
            return None
        logger.info("wechat_image_download_started", msg_id=msg_id, size=total_len)
        base = {
            "MsgId": msg_id,
            "TotalLen": total_len,
            "ToUserName": to_user,
            "FromUserName": from_user,
            "CompressType": 0,
        }
        try:
            data = await self._fetch_chunks(
                "/message/GetMsgBigImg", base, total_len, strict=True
            )
        except (ConnectorError, binascii.Error) as e:
            logger.error("wechat_image_download_failed", msg_id=msg_id, error=str(e))
            return None
        if data is not None:
            logger.info("wechat_image_downloaded", msg_id=msg_id, size=len(data))
        return data

    async def download_file(self, message: InboundMessage) -> DownloadedFile | None:
        try:
            info = parse_app_message(message.raw_content)
        except MetadataParseError as e:
            logger.warning("wechat_file_metadata_invalid", error=str(e))
            return None
        if not info.downloadable:
            logger.warning("wechat_file_not_downloadable", msg_id=message.provider_msg_id)
            return None

        file_name = info.title or message.file_name
        logger.info(
            "wechat_file_download_started",
            file_name=file_name,
            attach_id=info.attach_id,
            size=info.total_len,
        )
        base = {
            "AttachId": info.attach_id,
            "MsgId": message.provider_msg_id,
            "TotalLen": info.total_len,
            "FromUserName": message.sender_id,
            "ToUserName": message.recipient_id,
            "CdnUrl": info.cdn_url,
        }

        try:
            body = await self._post(
                "/message/DownloadAttach",
                {**base, "Section": {"StartPos": 0}},
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
            )
            data = body.get("Data")
            if _is_ok(body) and isinstance(data, dict):
                inner = data.get("Data") if isinstance(data.get("Data"), dict) else {}
                encoded = inner.get("buffer") or data.get("buffer") or data.get("data")
                if isinstance(encoded, str) and encoded:
                    content = base64.b64decode(encoded)
                    logger.info("wechat_file_downloaded", file_name=file_name, size=len(content))
                    return DownloadedFile(content=content, file_name=file_name)
        except (ConnectorError, binascii.Error) as e:
            logger.warning("wechat_file_whole_download_failed", error=str(e))

        try:
            content = await self._fetch_chunks(
                "/message/DownloadAttach",
                base,
                info.total_len,
                strict=False,
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
            )
        except (ConnectorError, binascii.Error) as e:
            logger.warning("wechat_file_chunked_download_failed", error=str(e))
            content = None
        if content is None:
            logger.error("wechat_file_download_failed", file_name=file_name)
            return None
        logger.info("wechat_file_downloaded", file_name=file_name, size=len(content), chunked=True)
        return DownloadedFile(content=content, file_name=file_name)

    # --- push socket ---

    async def start(self) -> None:
        self._should_reconnect = True
        await self._open_push()

    async def _open_push(self) -> None:
        if self._ws is not None:
            return
        logger.info("wechat_ws_connecting", url=self.ws_url)
        try:
            ws = await asyncio.wait_for(
                self._connect_factory(
                    f"{self.ws_url}?key={self.auth_key}",
                    open_timeout=_WS_HANDSHAKE_TIMEOUT,
                    max_size=None,
                ),
                timeout=_WS_OPEN_TIMEOUT,
            )
        except (TimeoutError, OSError, websockets.WebSocketException) as e:
            logger.error("wechat_ws_connect_failed", error=str(e))
            raise TransportError(f"cannot connect to messaging push socket: {e}") from e

        self._ws = ws
        self._reconnect.reset()
        logger.info("wechat_ws_connected")
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._emit(SessionEventKind.WECHAT_CONNECTED)

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                await self._handle_push(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._on_closed(ws)

    async def _handle_push(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("wechat_push_parse_failed", error=str(e))
            return
        message = parse_push_frame(frame)
        if message is None:
            logger.debug("wechat_push_ignored")
            return
        logger.info(
            "wechat_message_received",
            sender_id=message.sender_id,
            content_type=str(message.content_type),
            msg_id=message.provider_msg_id,
        )
        await self._emit(SessionEventKind.WECHAT_MESSAGE, {"message": message})

    async def _on_closed(self, ws: ClientConnection) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader_task = None
        logger.warning("wechat_ws_closed", code=ws.close_code)
        await self._emit(SessionEventKind.WECHAT_DISCONNECTED, {"code": ws.close_code})
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
                logger.error("wechat_reconnect_exhausted", attempts=self._reconnect.attempts)
                await self._emit(SessionEventKind.WECHAT_RECONNECT_EXHAUSTED)
                return
            await asyncio.sleep(delay)
            if not self._should_reconnect:
                return
            try:
                await self._open_push()
                return
            except TransportError as e:
                logger.warning(
                    "wechat_reconnect_failed", attempt=self._reconnect.attempts, error=str(e)
                )

    async def disconnect_push(self) -> None:
        self._should_reconnect = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("wechat_ws_close_error", error=str(e))
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

    async def stop(self) -> None:
        await self.disconnect_push()
        if self._owns_http:
            await self._http.aclose()
        logger.info("wechat_session_stopped")

    # --- events ---

    async def _emit(
        self, kind: SessionEventKind, data: dict[str, Any] | None = None
    ) -> None:
        await self._event_bus.emit(SessionEvent(kind=kind, data=data or {}))

