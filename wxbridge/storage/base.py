"""Abstract allow-list and pairing-code store protocols."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AllowListStore(Protocol):
    async def is_allowed(self, user_id: str) -> bool: ...

    async def add(self, user_id: str, nickname: str = ...) -> None: ...

    async def list_users(self) -> list[dict[str, Any]]: ...


@runtime_checkable
class PairingCodeStore(Protocol):
    async def current(self) -> str: ...

    async def regenerate(self) -> str: ...
