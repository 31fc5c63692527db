"""Shared fixtures, fake transports and a mock connector for testing."""

from __future__ import annotations

import asyncio
import json
import os

import pytest
import structlog
import websockets

from wxbridge.connectors.base import BaseConnector, DownloadedFile
from wxbridge.core.config import BridgeConfig
from wxbridge.core.connection import ReconnectTracker
from wxbridge.core.events import EventBus
from wxbridge.core.models import InboundMessage

_CLOSE = object()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Prevent .env file and shell env from leaking into tests.

    BridgeConfig.model_config has env_file=".env" which loads the project
    .env relative to cwd. Nullify it at the source. CLI tests reconfigure
    structlog onto the captured stderr, so defaults are restored afterwards.
    """
    monkeypatch.setitem(BridgeConfig.model_config, "env_file", None)
    for key in list(os.environ):
        if key.startswith("WXBRIDGE_"):
            monkeypatch.delenv(key, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def config(tmp_path):
    return BridgeConfig(config_dir=tmp_path / "openclaw")


@pytest.fixture
def event_bus():
    return EventBus()


def fast_tracker(name: str = "test", max_attempts: int = 3) -> ReconnectTracker:
    return ReconnectTracker(
        name, max_attempts=max_attempts, base_delay=0.001, max_delay=0.001
    )


async def settle(rounds: int = 10) -> None:
    """Let reader tasks drain whatever was queued."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    def push(self, frame) -> None:
        raw = frame if isinstance(frame, str | bytes) else json.dumps(frame)
        self._incoming.put_nowait(raw)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the remote end going away."""
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeConnect:
    """Callable replacing ``websockets.connect``; records every attempt."""

    def __init__(self, *, fail_next: int = 0, fail_always: bool = False) -> None:
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []
        self.fail_next = fail_next
        self.fail_always = fail_always

    async def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.urls.append(url)
        if self.fail_always or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


class MockConnector(BaseConnector):
    """In-memory messaging connector for testing."""

    def __init__(self) -> None:
        self.texts: list[dict] = []
        self.images: list[dict] = []
        self.files: list[dict] = []
        self.image_downloads: list[dict] = []
        self.file_downloads: list[InboundMessage] = []
        self.started = False
        self.stopped = False
        self.prepared = False
        self.image_result: bytes | None = b"\xff\xd8jpeg"
        self.file_result: DownloadedFile | None = DownloadedFile(
            content=b"%PDF", file_name="report.pdf"
        )
        self.send_ok = True
        self.text_ok = True
        self.text_error: Exception | None = None
        self.prepare_error: Exception | None = None
        self._logged_in = True

    async def prepare(self) -> None:
        if self.prepare_error is not None:
            raise self.prepare_error
        self.prepared = True

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def send_text(self, to_user: str, content: str) -> bool:
        if self.text_error is not None:
            raise self.text_error
        self.texts.append({"to": to_user, "content": content})
        return self.text_ok

    async def send_image(self, to_user: str, image_path: str) -> bool:
        self.images.append({"to": to_user, "path": image_path})
        return self.send_ok

    async def send_file(
        self, to_user: str, file_path: str, file_name: str | None = None
    ) -> bool:
        self.files.append({"to": to_user, "path": file_path})
        return self.send_ok

    async def download_image(
        self, msg_id: int, total_len: int, from_user: str, to_user: str
    ) -> bytes | None:
        self.image_downloads.append(
            {"msg_id": msg_id, "total_len": total_len, "from": from_user, "to": to_user}
        )
        return self.image_result

    async def download_file(self, message: InboundMessage) -> DownloadedFile | None:
        self.file_downloads.append(message)
        return self.file_result

    @property
    def logged_in(self) -> bool:
        return self._logged_in

    def sent_contents(self) -> list[str]:
        return [t["content"] for t in self.texts]


@pytest.fixture
def mock_connector():
    return MockConnector()


@pytest.fixture
def fake_connect():
    return FakeConnect()
