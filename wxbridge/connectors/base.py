"""Abstract messaging connector protocol."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict

from wxbridge.core.models import InboundMessage


class DownloadedFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: bytes
    file_name: str | None = None


class BaseConnector(ABC):
    """What the bridge needs from a messaging account.

    Inbound messages are not returned from any call here; connectors publish
    them as ``WECHAT_MESSAGE`` events on the shared event bus.
    """

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send_text(self, to_user: str, content: str) -> bool: ...

    @abstractmethod
    async def send_image(self, to_user: str, image_path: str) -> bool: ...

    @abstractmethod
    async def send_file(
        self, to_user: str, file_path: str, file_name: str | None = None
    ) -> bool: ...

    @abstractmethod
    async def download_image(
        self, msg_id: int, total_len: int, from_user: str, to_user: str
    ) -> bytes | None: ...

    @abstractmethod
    async def download_file(self, message: InboundMessage) -> DownloadedFile | None: ...

    @property
    def logged_in(self) -> bool:
        return True

    @property
    def ws_connected(self) -> bool:
        return True

    async def prepare(self) -> None:  # noqa: B027
        """Bring the account to a usable state before :meth:`start`. Default: no-op."""
