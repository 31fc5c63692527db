"""Message types that flow between the two sessions."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ContentType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    EMOJI = "emoji"
    FILE = "file"
    APP = "app"
    UNKNOWN = "unknown"


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender_id: str
    recipient_id: str
    raw_content: str
    content_type: ContentType = ContentType.TEXT
    provider_msg_id: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    file_name: str | None = None

    @property
    def is_attachment(self) -> bool:
        return self.content_type in (ContentType.FILE, ContentType.APP)


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["image", "file"]
    local_path: str

    def to_wire(self) -> dict[str, str]:
        return {"type": self.kind, "path": self.local_path}


class OutboundReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_id: str
    text: str
    attachments: list[Attachment] = Field(default_factory=list)
