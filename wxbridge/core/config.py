"""Unified configuration via pydantic-settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wxbridge.exceptions import ConfigError

logger = structlog.get_logger()

CONFIG_FILE_NAME = "openclaw-wechat.json"
GATEWAY_CONFIG_FILE_NAME = "openclaw.json"

# Nested keys of the JSON config file -> flat BridgeConfig fields.
_FILE_KEY_MAP: dict[tuple[str, str], str] = {
    ("wechatService", "host"): "wechat_host",
    ("wechatService", "port"): "wechat_port",
    ("wechatService", "authKey"): "wechat_auth_key",
    ("wechatService", "adminKey"): "wechat_admin_key",
    ("gateway", "url"): "gateway_url",
    ("behavior", "maxReconnectAttempts"): "max_reconnect_attempts",
    ("logging", "level"): "log_level",
    ("bridge", "name"): "channel_name",
}


class BridgeConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WXBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    config_dir: Path = Path.home() / ".openclaw"

    # Gateway
    gateway_url: str = "ws://127.0.0.1:18789"
    gateway_token_file: Path | None = None
    agent_id: str = "main"
    channel_name: str = "wechat"
    locale: str = "zh-CN"
    request_timeout_seconds: float = 30.0
    agent_timeout_seconds: float = 120.0

    # Messaging service
    wechat_host: str = "127.0.0.1"
    wechat_port: int = 8099
    wechat_auth_key: str | None = None
    wechat_admin_key: str = "daidai"
    login_poll_interval_seconds: float = 2.0
    login_timeout_seconds: float = 120.0

    # Reconnect policy (shared by both links)
    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 2.0
    reconnect_max_delay: float = 30.0

    # Orchestration
    heartbeat_interval_seconds: float = 30.0
    reply_path_roots: list[str] = ["/Users/", "/tmp/", "~/"]

    # Status endpoint (port 0 disables it)
    status_host: str = "127.0.0.1"
    status_port: int = 18790

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_max_bytes: int = 10_485_760
    log_backup_count: int = 5

    @field_validator("config_dir", mode="after")
    @classmethod
    def expand_config_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("reply_path_roots", mode="before")
    @classmethod
    def parse_reply_path_roots(cls, v: list[str] | str) -> list[str]:
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("max_reconnect_attempts", mode="after")
    @classmethod
    def check_max_reconnect_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_reconnect_attempts must not be negative")
        return v

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def secrets_dir(self) -> Path:
        return self.config_dir / "secrets"

    @property
    def auth_key_file(self) -> Path:
        return self.secrets_dir / "wechat_auth_key"

    @property
    def allowed_users_file(self) -> Path:
        return self.secrets_dir / "wechat_allowed_users.json"

    @property
    def pairing_code_file(self) -> Path:
        return self.secrets_dir / "wechat_pairing_code"

    @property
    def data_dir(self) -> Path:
        return self.config_dir / "data"

    @property
    def logs_dir(self) -> Path:
        return self.config_dir / "logs"

    @property
    def media_dir(self) -> Path:
        return self.config_dir / "media" / "wechat"

    @property
    def resolved_gateway_token_file(self) -> Path:
        if self.gateway_token_file is not None:
            return self.gateway_token_file.expanduser()
        return self.config_dir / GATEWAY_CONFIG_FILE_NAME

    @property
    def wechat_base_url(self) -> str:
        return f"http://{self.wechat_host}:{self.wechat_port}"

    @property
    def wechat_ws_url(self) -> str:
        return f"ws://{self.wechat_host}:{self.wechat_port}/ws/GetSyncMsg"


def ensure_dirs(config: BridgeConfig) -> None:
    for d in (config.config_dir, config.secrets_dir, config.data_dir, config.logs_dir):
        d.mkdir(parents=True, exist_ok=True)


def load_file_overrides(path: Path) -> dict[str, Any]:
    """Flatten the nested JSON config file into BridgeConfig field values.

    A missing file yields no overrides. Unknown keys are ignored.
    """
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")

    overrides: dict[str, Any] = {}
    for (section, key), field in _FILE_KEY_MAP.items():
        section_data = data.get(section)
        if isinstance(section_data, dict) and section_data.get(key) not in (None, ""):
            overrides[field] = section_data[key]
    return overrides


def load_config(config_dir: Path | None = None) -> BridgeConfig:
    """Build config from env, then fill fields env left unset from the JSON file."""
    explicit: dict[str, Any] = {} if config_dir is None else {"config_dir": config_dir}
    config = BridgeConfig(**explicit)
    overrides = load_file_overrides(config.config_file)
    pending = {k: v for k, v in overrides.items() if k not in config.model_fields_set}
    if not pending:
        return config
    logger.debug(
        "config_file_applied", path=str(config.config_file), fields=sorted(pending)
    )
    return BridgeConfig(**explicit, **pending)
