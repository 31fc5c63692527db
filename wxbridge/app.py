"""Bootstrap: wires all components together."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

import structlog

from wxbridge.connectors.wechat import WechatSession
from wxbridge.core.bridge import Bridge
from wxbridge.core.config import BridgeConfig, ensure_dirs, load_config
from wxbridge.core.connection import ReconnectTracker
from wxbridge.core.events import EventBus, SessionEvent, SessionEventKind
from wxbridge.core.media import MediaStore
from wxbridge.gateway.session import GatewaySession
from wxbridge.middleware.auth import PairingAuthMiddleware
from wxbridge.middleware.base import MiddlewareChain
from wxbridge.status import StatusServer, create_status_app
from wxbridge.storage.files import (
    AuthKeyStore,
    FileAllowList,
    FilePairingCodeStore,
    load_gateway_token,
)

logger = structlog.get_logger()


def _configure_logging(config: BridgeConfig, *, log_dir: Path | None = None) -> None:
    """Set up structlog with console output and optional rotating JSON file handler."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
        )
    )
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "bridge.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
            )
        )
        root_logger.addHandler(file_handler)

    # Transport chatter from HTTP and WebSocket clients floods INFO/DEBUG.
    for noisy_logger in ("httpx", "httpcore", "websockets", "uvicorn", "uvicorn.error"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def _show_qr_code(event: SessionEvent) -> None:
    url = event.data.get("url", "")
    logger.info("wechat_qr_code", url=url)
    print(f"\nScan with WeChat to log in:\n{url}\n")


async def _log_auth_failure(event: SessionEvent) -> None:
    logger.error("gateway_handshake_rejected", error=event.data.get("error"))


def _reconnect_tracker(name: str, config: BridgeConfig) -> ReconnectTracker:
    return ReconnectTracker(
        name,
        max_attempts=config.max_reconnect_attempts,
        base_delay=config.reconnect_base_delay,
        max_delay=config.reconnect_max_delay,
    )


def build_bridge(config: BridgeConfig | None = None) -> Bridge:
    if config is None:
        config = load_config()

    ensure_dirs(config)
    _configure_logging(config, log_dir=config.log_dir or config.logs_dir)

    event_bus = EventBus()
    event_bus.subscribe(SessionEventKind.WECHAT_QR_CODE, _show_qr_code)
    event_bus.subscribe(SessionEventKind.GATEWAY_AUTH_FAILED, _log_auth_failure)

    token_file = config.resolved_gateway_token_file
    gateway = GatewaySession(
        config.gateway_url,
        token_loader=lambda: load_gateway_token(token_file),
        event_bus=event_bus,
        channel_name=config.channel_name,
        locale=config.locale,
        request_timeout=config.request_timeout_seconds,
        agent_timeout=config.agent_timeout_seconds,
        reconnect=_reconnect_tracker("gateway", config),
    )
    wechat = WechatSession(
        config.wechat_base_url,
        config.wechat_ws_url,
        auth_key=config.wechat_auth_key or "",
        admin_key=config.wechat_admin_key,
        event_bus=event_bus,
        reconnect=_reconnect_tracker("wechat", config),
        poll_interval=config.login_poll_interval_seconds,
        login_timeout=config.login_timeout_seconds,
        auth_keys=AuthKeyStore(config.auth_key_file),
    )

    middleware_chain = MiddlewareChain()
    middleware_chain.add(
        PairingAuthMiddleware(
            FileAllowList(config.allowed_users_file),
            FilePairingCodeStore(config.pairing_code_file),
            wechat.send_text,
        )
    )

    logger.info(
        "bridge_built",
        gateway_url=config.gateway_url,
        wechat_url=config.wechat_base_url,
        agent_id=config.agent_id,
        max_reconnect_attempts=config.max_reconnect_attempts,
        log_level=config.log_level,
    )

    return Bridge(
        config,
        gateway,
        wechat,
        event_bus=event_bus,
        media=MediaStore(config.media_dir),
        middleware_chain=middleware_chain,
    )


def build_status_server(bridge: Bridge) -> StatusServer | None:
    config = bridge.config
    if config.status_port <= 0 or not isinstance(bridge.wechat, WechatSession):
        return None
    app = create_status_app(bridge.gateway, bridge.wechat)
    return StatusServer(app, config.status_host, config.status_port)
