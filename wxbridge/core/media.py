"""Where downloaded inbound media lands on disk."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import structlog

from wxbridge.exceptions import MediaError

logger = structlog.get_logger()


def _millis() -> int:
    return int(time.time() * 1000)


class MediaStore:
    """Images go to ``<media_dir>/<ms>_<msgid>.jpg``, files to ``<media_dir>/files/<name>``."""

    def __init__(self, media_dir: Path) -> None:
        self.media_dir = media_dir
        self.files_dir = media_dir / "files"

    @staticmethod
    def _write_sync(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def _write(self, path: Path, content: bytes) -> Path:
        try:
            await asyncio.to_thread(self._write_sync, path, content)
        except OSError as e:
            raise MediaError(f"cannot save {path}: {e}") from e
        logger.info("media_saved", path=str(path), size=len(content))
        return path

    async def save_file(
        self, content: bytes, file_name: str | None, msg_id: int | None = None
    ) -> Path:
        # Only the final component of a sender-supplied name is trusted.
        name = Path(file_name).name if file_name else ""
        if not name or name in (".", ".."):
            name = f"{_millis()}_{msg_id or 'file'}"
        return await self._write(self.files_dir / name, content)

    async def save_image(self, content: bytes, msg_id: int) -> Path:
        return await self._write(self.media_dir / f"{_millis()}_{msg_id}.jpg", content)
