"""In-memory stores for tests and ephemeral runs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from wxbridge.storage.files import generate_pairing_code


class MemoryAllowList:
    def __init__(self, user_ids: set[str] | None = None) -> None:
        self._users: dict[str, dict[str, Any]] = {}
        for user_id in user_ids or set():
            self._users[user_id] = _entry(user_id, "")

    async def is_allowed(self, user_id: str) -> bool:
        return user_id in self._users

    async def add(self, user_id: str, nickname: str = "") -> None:
        self._users.setdefault(user_id, _entry(user_id, nickname))

    async def list_users(self) -> list[dict[str, Any]]:
        return list(self._users.values())


class MemoryPairingCode:
    def __init__(self, code: str) -> None:
        self._code = code.upper()

    async def current(self) -> str:
        return self._code

    async def regenerate(self) -> str:
        self._code = generate_pairing_code()
        return self._code


def _entry(user_id: str, nickname: str) -> dict[str, Any]:
    return {
        "wxid": user_id,
        "nickname": nickname,
        "addedAt": datetime.now(UTC).isoformat(),
    }
