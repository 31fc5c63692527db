"""Bridge orchestrator: inbound WeChat messages to the agent and back."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog

from wxbridge.connectors.metadata import parse_image_message
from wxbridge.core.events import SessionEvent, SessionEventKind
from wxbridge.core.models import Attachment, ContentType, InboundMessage, OutboundReply
from wxbridge.core.reply_paths import ReplyPath, ReplyPathExtractor, replace_paths
from wxbridge.exceptions import MediaError, MetadataParseError
from wxbridge.middleware.base import MessageContext, MiddlewareChain

if TYPE_CHECKING:
    from wxbridge.connectors.base import BaseConnector
    from wxbridge.core.config import BridgeConfig
    from wxbridge.core.events import EventBus
    from wxbridge.core.media import MediaStore
    from wxbridge.gateway.session import GatewaySession

logger = structlog.get_logger()

APOLOGY = "Sorry, something went wrong while processing your message. Please try again later."
FILE_PLACEHOLDER = "[File]"
IMAGE_PLACEHOLDER = "[Image]"
FILE_SENT_PROMPT = "[User sent a file: {name}]"
FILE_FAILED_PROMPT = "[User sent a file, but the download failed]"
IMAGE_SENT_PROMPT = "[User sent an image]"
IMAGE_FAILED_PROMPT = "[User sent an image, but the download failed]"
_SEND_FAILED_NOTICE = "Failed to send {kind}, path: {path}"
_PLACEHOLDERS = {"file": FILE_PLACEHOLDER, "image": IMAGE_PLACEHOLDER}
_LOG_PREVIEW_LENGTH = 50


class Bridge:
    def __init__(
        self,
        config: BridgeConfig,
        gateway: GatewaySession,
        wechat: BaseConnector,
        *,
        event_bus: EventBus,
        media: MediaStore,
        middleware_chain: MiddlewareChain | None = None,
        path_extractor: ReplyPathExtractor | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.wechat = wechat
        self.event_bus = event_bus
        self.media = media
        self.middleware_chain = middleware_chain or MiddlewareChain()
        self.path_extractor = path_extractor or ReplyPathExtractor(
            config.reply_path_roots
        )
        self._running = False
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()

        event_bus.subscribe(SessionEventKind.WECHAT_MESSAGE, self._on_wechat_message)
        event_bus.subscribe(SessionEventKind.GATEWAY_PUSH, self._on_gateway_push)

    @property
    def running(self) -> bool:
        return self._running

    # --- lifecycle ---

    async def start(self) -> None:
        if self._running:
            logger.warning("bridge_already_running")
            return
        self._running = True
        try:
            await self.wechat.prepare()
            await self.gateway.connect()
            await self.wechat.start()
        except Exception:
            logger.exception("bridge_start_failed")
            await self.stop()
            raise
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("bridge_started", gateway_url=self.gateway.url)
        await self.event_bus.emit(SessionEvent(kind=SessionEventKind.BRIDGE_STARTED))

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in (self._heartbeat_task, *self._handler_tasks) if t]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._heartbeat_task = None
        self._handler_tasks.clear()

        await self.gateway.disconnect()
        await self.wechat.stop()
        logger.info("bridge_stopped")
        await self.event_bus.emit(SessionEvent(kind=SessionEventKind.BRIDGE_STOPPED))

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            self.heartbeat()

    def heartbeat(self) -> None:
        """Log link health. Reconnection is left to each session."""
        if not self.gateway.connected:
            logger.warning("gateway_disconnected_waiting")
        if not self.wechat.logged_in:
            logger.warning("wechat_not_logged_in")

    # --- inbound ---

    async def _on_wechat_message(self, event: SessionEvent) -> None:
        message = event.data.get("message")
        if not isinstance(message, InboundMessage):
            return
        self._spawn(self.handle_message(message))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def handle_message(self, message: InboundMessage) -> None:
        logger.info(
            "message_received",
            user_id=message.sender_id,
            content_type=str(message.content_type),
        )
        ctx = MessageContext(message=message)
        await self.middleware_chain.run(ctx, self._process_authorized)

    async def _process_authorized(self, ctx: MessageContext) -> None:
        message = ctx.message
        try:
            prompt, attachments = await self._prepare_prompt(message)
            params: dict[str, Any] = {
                "message": prompt,
                "agentId": self.config.agent_id,
                "sessionKey": self._session_key(message.sender_id),
                "deliver": False,
            }
            if attachments:
                params["attachments"] = [a.to_wire() for a in attachments]
            reply = await self.gateway.call_agent(params)
            if reply.text:
                logger.info(
                    "agent_replied",
                    user_id=message.sender_id,
                    preview=reply.text[:_LOG_PREVIEW_LENGTH],
                )
                await self.deliver_reply(message.sender_id, reply.text)
        except Exception:
            logger.exception("message_handling_failed", user_id=message.sender_id)
            try:
                await self.wechat.send_text(message.sender_id, APOLOGY)
            except Exception:
                logger.exception("apology_send_failed", user_id=message.sender_id)

    def _session_key(self, sender_id: str) -> str:
        return (
            f"agent:{self.config.agent_id}:{self.config.channel_name}:{sender_id}"
        )

    async def _prepare_prompt(
        self, message: InboundMessage
    ) -> tuple[str, list[Attachment]]:
        if message.is_attachment:
            path = await self._save_file(message)
            if path is None:
                return FILE_FAILED_PROMPT, []
            return FILE_SENT_PROMPT.format(name=Path(path).name), [
                Attachment(kind="file", local_path=path)
            ]

        if message.content_type == ContentType.IMAGE and message.provider_msg_id:
            try:
                info = parse_image_message(message.raw_content)
            except MetadataParseError as e:
                logger.warning("image_metadata_invalid", error=str(e))
                return IMAGE_FAILED_PROMPT, []
            path = await self._save_image(message, info.total_length)
            if path is None:
                return IMAGE_FAILED_PROMPT, []
            return IMAGE_SENT_PROMPT, [Attachment(kind="image", local_path=path)]

        return message.raw_content, []

    async def _save_file(self, message: InboundMessage) -> str | None:
        downloaded = await self.wechat.download_file(message)
        if downloaded is None:
            logger.warning("file_download_failed", msg_id=message.provider_msg_id)
            return None
        try:
            path = await self.media.save_file(
                downloaded.content,
                downloaded.file_name or message.file_name,
                message.provider_msg_id,
            )
        except MediaError:
            logger.exception("file_save_failed", msg_id=message.provider_msg_id)
            return None
        return str(path)

    async def _save_image(self, message: InboundMessage, total_len: int) -> str | None:
        msg_id = message.provider_msg_id
        if msg_id is None or total_len <= 0:
            return None
        content = await self.wechat.download_image(
            msg_id, total_len, message.sender_id, message.recipient_id
        )
        if content is None:
            logger.warning("image_download_failed", msg_id=msg_id)
            return None
        try:
            return str(await self.media.save_image(content, msg_id))
        except MediaError:
            logger.exception("image_save_failed", msg_id=msg_id)
            return None

    # --- outbound ---

    def plan_reply(self, to_user: str, text: str) -> OutboundReply:
        """Turn local files mentioned in the reply into attachments.

        File paths take precedence; images are only considered when the
        reply mentions no file. Mentioned paths are replaced in the text by
        a placeholder.
        """
        text = text.strip()
        kind: Literal["image", "file"] = "file"
        paths: list[ReplyPath] = self.path_extractor.file_paths(text)
        if not paths:
            kind = "image"
            paths = self.path_extractor.image_paths(text)
        if not paths:
            return OutboundReply(target_id=to_user, text=text)
        return OutboundReply(
            target_id=to_user,
            text=replace_paths(text, paths, _PLACEHOLDERS[kind]),
            attachments=[Attachment(kind=kind, local_path=p.resolved) for p in paths],
        )

    async def deliver_reply(self, to_user: str, text: str) -> None:
        await self.dispatch_reply(self.plan_reply(to_user, text))

    async def dispatch_reply(self, reply: OutboundReply) -> None:
        to_user = reply.target_id
        if not reply.attachments:
            await self.wechat.send_text(to_user, reply.text)
            return

        placeholder = _PLACEHOLDERS[reply.attachments[0].kind]
        if reply.text and reply.text != placeholder:
            await self.wechat.send_text(to_user, reply.text)

        for attachment in reply.attachments:
            path = attachment.local_path
            if attachment.kind == "file":
                ok = await self.wechat.send_file(to_user, path)
            else:
                ok = await self.wechat.send_image(to_user, path)
            if ok:
                logger.info("reply_attachment_sent", kind=attachment.kind, path=path)
                continue
            logger.warning("reply_attachment_failed", kind=attachment.kind, path=path)
            await self.wechat.send_text(
                to_user, _SEND_FAILED_NOTICE.format(kind=attachment.kind, path=path)
            )

    async def _on_gateway_push(self, event: SessionEvent) -> None:
        """Relay gateway-initiated messages that name a WeChat recipient."""
        payload = event.data
        to_user = payload.get("from")
        content = payload.get("content") or payload.get("message")
        if not isinstance(to_user, str) or not to_user or not isinstance(content, str):
            return
        if not content:
            return
        self._spawn(self._relay_push(to_user, content))

    async def _relay_push(self, to_user: str, content: str) -> None:
        try:
            await self.wechat.send_text(to_user, content)
        except Exception:
            logger.exception("gateway_push_relay_failed", to_user=to_user)
            return
        logger.info("gateway_push_relayed", to_user=to_user)
