"""File-backed persisted state under the per-user config directory.

Layout (all paths come from :class:`BridgeConfig`):

* ``secrets/wechat_auth_key``: messaging-service auth key, plain text
* ``secrets/wechat_allowed_users.json``: list of ``{wxid, nickname, addedAt}``
* ``secrets/wechat_pairing_code``: six uppercase alphanumerics
* ``openclaw.json``: gateway config, token at ``gateway.auth.token``

No file locking: one bridge instance owns one identity.
"""

from __future__ import annotations

import json
import secrets
import string
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from wxbridge.exceptions import StorageError

logger = structlog.get_logger()

_PAIRING_ALPHABET = string.ascii_uppercase + string.digits
_PAIRING_CODE_LENGTH = 6


def generate_pairing_code() -> str:
    return "".join(
        secrets.choice(_PAIRING_ALPHABET) for _ in range(_PAIRING_CODE_LENGTH)
    )


def load_gateway_token(path: Path) -> str:
    """Read the gateway bearer token; any problem yields an empty string."""
    if not path.is_file():
        logger.warning("gateway_config_missing", path=str(path))
        return ""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except PermissionError:
        logger.error("gateway_config_unreadable", path=str(path))
        return ""
    except json.JSONDecodeError:
        logger.error("gateway_config_invalid_json", path=str(path))
        return ""
    except OSError as e:
        logger.warning("gateway_token_read_failed", path=str(path), error=str(e))
        return ""

    token = ""
    if isinstance(data, dict):
        gateway = data.get("gateway")
        auth = gateway.get("auth") if isinstance(gateway, dict) else None
        if isinstance(auth, dict) and isinstance(auth.get("token"), str):
            token = auth["token"]
    if not token:
        logger.warning("gateway_token_missing", path=str(path))
    return token


class AuthKeyStore:
    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> str | None:
        if not self._path.is_file():
            return None
        key = self._path.read_text(encoding="utf-8").strip()
        return key or None

    def save(self, auth_key: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(auth_key, encoding="utf-8")
        logger.info("auth_key_saved", path=str(self._path))


class FileAllowList:
    """JSON allow list. Entries are only ever appended."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def _read(self) -> list[dict[str, Any]]:
        if not self._path.is_file():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"cannot read allow list {self._path}: {e}") from e
        if not isinstance(data, list):
            raise StorageError(f"allow list {self._path} must contain a JSON array")
        return [u for u in data if isinstance(u, dict)]

    async def is_allowed(self, user_id: str) -> bool:
        try:
            users = self._read()
        except StorageError:
            logger.exception("allow_list_read_failed", path=str(self._path))
            return False
        return any(u.get("wxid") == user_id for u in users)

    async def add(self, user_id: str, nickname: str = "") -> None:
        # A corrupt file raises here instead of being overwritten, so existing
        # entries are never dropped.
        users = self._read()
        if any(u.get("wxid") == user_id for u in users):
            return
        users.append(
            {
                "wxid": user_id,
                "nickname": nickname,
                "addedAt": datetime.now(UTC).isoformat(),
            }
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            json.dumps(users, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        logger.info("allow_list_user_added", user_id=user_id, total=len(users))

    async def list_users(self) -> list[dict[str, Any]]:
        return self._read()


class FilePairingCodeStore:
    def __init__(self, path: Path) -> None:
        self._path = path

    async def current(self) -> str:
        if self._path.is_file():
            code = self._path.read_text(encoding="utf-8").strip()
            if code:
                return code.upper()
        return await self.regenerate()

    async def regenerate(self) -> str:
        code = generate_pairing_code()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(code, encoding="utf-8")
        logger.info("pairing_code_generated", path=str(self._path))
        return code
