"""Tests for BridgeConfig and the JSON config file overlay."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wxbridge.core.config import (
    BridgeConfig,
    ensure_dirs,
    load_config,
    load_file_overrides,
)
from wxbridge.exceptions import ConfigError


class TestBridgeConfig:
    def test_default_values(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path)
        assert config.gateway_url == "ws://127.0.0.1:18789"
        assert config.wechat_port == 8099
        assert config.wechat_admin_key == "daidai"
        assert config.agent_id == "main"
        assert config.max_reconnect_attempts == 10
        assert config.reconnect_base_delay == 2.0
        assert config.reconnect_max_delay == 30.0
        assert config.request_timeout_seconds == 30.0
        assert config.agent_timeout_seconds == 120.0
        assert config.heartbeat_interval_seconds == 30.0
        assert config.reply_path_roots == ["/Users/", "/tmp/", "~/"]
        assert config.status_port == 18790
        assert config.log_level == "INFO"

    def test_derived_paths(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path)
        assert config.config_file == tmp_path / "openclaw-wechat.json"
        assert config.auth_key_file == tmp_path / "secrets" / "wechat_auth_key"
        assert config.allowed_users_file == tmp_path / "secrets" / "wechat_allowed_users.json"
        assert config.pairing_code_file == tmp_path / "secrets" / "wechat_pairing_code"
        assert config.media_dir == tmp_path / "media" / "wechat"
        assert config.resolved_gateway_token_file == tmp_path / "openclaw.json"

    def test_explicit_token_file_wins(self, tmp_path):
        token_file = tmp_path / "elsewhere.json"
        config = BridgeConfig(config_dir=tmp_path, gateway_token_file=token_file)
        assert config.resolved_gateway_token_file == token_file

    def test_service_urls(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path, wechat_host="10.0.0.2", wechat_port=9000)
        assert config.wechat_base_url == "http://10.0.0.2:9000"
        assert config.wechat_ws_url == "ws://10.0.0.2:9000/ws/GetSyncMsg"

    def test_config_dir_expands_home(self):
        config = BridgeConfig(config_dir=Path("~/bridge-test"))
        assert config.config_dir == Path.home() / "bridge-test"

    def test_reply_roots_from_csv_string(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path, reply_path_roots="/data/, /srv/")
        assert config.reply_path_roots == ["/data/", "/srv/"]

    def test_log_level_uppercased(self, tmp_path):
        assert BridgeConfig(config_dir=tmp_path, log_level="debug").log_level == "DEBUG"

    def test_negative_reconnect_cap_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="must not be negative"):
            BridgeConfig(config_dir=tmp_path, max_reconnect_attempts=-1)

    def test_env_prefix(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WXBRIDGE_CONFIG_DIR", str(tmp_path))
        monkeypatch.setenv("WXBRIDGE_WECHAT_PORT", "9100")
        monkeypatch.setenv("WXBRIDGE_REPLY_PATH_ROOTS", '["/data/"]')
        config = BridgeConfig()
        assert config.config_dir == tmp_path
        assert config.wechat_port == 9100
        assert config.reply_path_roots == ["/data/"]


class TestEnsureDirs:
    def test_creates_layout(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path / "cfg")
        ensure_dirs(config)
        assert config.secrets_dir.is_dir()
        assert config.data_dir.is_dir()
        assert config.logs_dir.is_dir()


class TestFileOverrides:
    def test_missing_file(self, tmp_path):
        assert load_file_overrides(tmp_path / "nope.json") == {}

    def test_nested_keys_flattened(self, tmp_path):
        path = tmp_path / "openclaw-wechat.json"
        path.write_text(
            json.dumps(
                {
                    "wechatService": {"host": "10.1.1.1", "port": 8111, "authKey": ""},
                    "gateway": {"url": "ws://gw:1"},
                    "behavior": {"maxReconnectAttempts": 4},
                    "logging": {"level": "debug"},
                    "unknown": {"x": 1},
                }
            )
        )
        assert load_file_overrides(path) == {
            "wechat_host": "10.1.1.1",
            "wechat_port": 8111,
            "gateway_url": "ws://gw:1",
            "max_reconnect_attempts": 4,
            "log_level": "debug",
        }

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "openclaw-wechat.json"
        path.write_text("{broken")
        with pytest.raises(ConfigError):
            load_file_overrides(path)

    def test_non_object_raises(self, tmp_path):
        path = tmp_path / "openclaw-wechat.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="JSON object"):
            load_file_overrides(path)


class TestLoadConfig:
    def test_file_fills_defaults(self, tmp_path):
        (tmp_path / "openclaw-wechat.json").write_text(
            json.dumps({"wechatService": {"port": 8200}})
        )
        config = load_config(tmp_path)
        assert config.wechat_port == 8200
        assert config.config_dir == tmp_path

    def test_env_beats_file(self, tmp_path, monkeypatch):
        (tmp_path / "openclaw-wechat.json").write_text(
            json.dumps({"wechatService": {"port": 8200}})
        )
        monkeypatch.setenv("WXBRIDGE_WECHAT_PORT", "8300")
        assert load_config(tmp_path).wechat_port == 8300

    def test_no_file(self, tmp_path):
        assert load_config(tmp_path).wechat_port == 8099
