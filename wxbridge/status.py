"""Local read-only status endpoint."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import structlog
import uvicorn
from fastapi import FastAPI

from wxbridge import __version__

if TYPE_CHECKING:
    from wxbridge.connectors.wechat import WechatSession
    from wxbridge.gateway.session import GatewaySession

logger = structlog.get_logger()


def build_status(gateway: GatewaySession, wechat: WechatSession) -> dict[str, Any]:
    gw = gateway.status()
    wx = wechat.status()
    healthy = gw.authenticated and wx.ws_connected
    return {
        "status": "running" if healthy else "degraded",
        "gateway": {
            "state": str(gw.state),
            "connected": gw.connected,
            "authenticated": gw.authenticated,
            "reconnectAttempts": gw.reconnect_attempts,
            "pendingRequests": gw.pending_requests,
        },
        "wechat": {
            "loginState": str(wx.login_state),
            "wsConnected": wx.ws_connected,
            "hasAuthKey": wx.has_auth_key,
            "reconnectAttempts": wx.reconnect_attempts,
        },
        "version": __version__,
    }


def create_status_app(gateway: GatewaySession, wechat: WechatSession) -> FastAPI:
    app = FastAPI(title="wxbridge", version=__version__)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return build_status(gateway, wechat)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class StatusServer:
    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._server = _EmbeddedServer(
            uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
        )
        self._task: asyncio.Task[None] | None = None

    async def _serve(self) -> None:
        # uvicorn raises SystemExit when the port cannot be bound.
        try:
            await self._server.serve()
        except SystemExit:
            logger.error("status_server_bind_failed", host=self.host, port=self.port)

    async def start(self) -> None:
        self._task = asyncio.create_task(self._serve())
        logger.info("status_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        except Exception:
            logger.exception("status_server_error")
        self._task = None
        logger.info("status_server_stopped")
