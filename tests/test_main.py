"""Tests for the wxbridge CLI entry point."""

import json
import os
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from wxbridge import __version__
from wxbridge.exceptions import BridgeError, TransportError
from wxbridge.main import _run_bridge, main, run


def _args(tmp_path, *rest):
    return ["--config-dir", str(tmp_path), *rest]


class TestMain:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_config_error_returns_1(self, tmp_path, capsys):
        (tmp_path / "openclaw-wechat.json").write_text("{broken")
        assert main(_args(tmp_path, "pairing-code")) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_pairing_code_created(self, tmp_path, capsys):
        assert main(_args(tmp_path, "pairing-code")) == 0
        captured = capsys.readouterr()
        code = captured.out.strip()
        assert captured.out == f"{code}\n"
        assert "pairing_code_generated" in captured.err
        assert len(code) == 6
        assert (tmp_path / "secrets" / "wechat_pairing_code").read_text() == code

    def test_pairing_code_regenerate(self, tmp_path, capsys):
        path = tmp_path / "secrets" / "wechat_pairing_code"
        path.parent.mkdir(parents=True)
        path.write_text("OLD000")

        assert main(_args(tmp_path, "pairing-code")) == 0
        assert capsys.readouterr().out.strip() == "OLD000"

        assert main(_args(tmp_path, "pairing-code", "--regenerate")) == 0
        new = capsys.readouterr().out.strip()
        assert path.read_text() == new

    def test_allowed_lists_users(self, tmp_path, capsys):
        path = tmp_path / "secrets" / "wechat_allowed_users.json"
        path.parent.mkdir(parents=True)
        path.write_text(
            json.dumps([{"wxid": "wxid_a", "nickname": "Alice", "addedAt": "2024-01-01"}])
        )

        assert main(_args(tmp_path, "allowed")) == 0
        assert capsys.readouterr().out == "wxid_a\tAlice\t2024-01-01\n"

    def test_allowed_corrupt_file(self, tmp_path, capsys):
        path = tmp_path / "secrets" / "wechat_allowed_users.json"
        path.parent.mkdir(parents=True)
        path.write_text("{nope")

        assert main(_args(tmp_path, "allowed")) == 1
        assert "Cannot read allow list" in capsys.readouterr().err

    def test_status_prints_json(self, tmp_path, capsys):
        request = httpx.Request("GET", "http://127.0.0.1:18790/status")
        response = httpx.Response(200, json={"status": "running"}, request=request)
        with patch("wxbridge.main.httpx.get", return_value=response) as get:
            assert main(_args(tmp_path, "status")) == 0
        assert get.call_args.args[0] == "http://127.0.0.1:18790/status"
        assert json.loads(capsys.readouterr().out) == {"status": "running"}

    def test_status_unreachable(self, tmp_path, capsys):
        with patch("wxbridge.main.httpx.get", side_effect=httpx.ConnectError("refused")):
            assert main(_args(tmp_path, "status")) == 1
        assert "not reachable" in capsys.readouterr().err

    def test_run_is_default(self, tmp_path):
        with patch("wxbridge.main._run_bridge", new_callable=AsyncMock) as run_bridge:
            assert main(_args(tmp_path)) == 0
        run_bridge.assert_awaited_once()
        assert run_bridge.await_args.args[0].config_dir == tmp_path

    def test_bridge_error_returns_1(self, tmp_path, capsys):
        with patch(
            "wxbridge.main._run_bridge",
            new_callable=AsyncMock,
            side_effect=TransportError("gateway down"),
        ):
            assert main(_args(tmp_path, "run")) == 1
        assert "gateway down" in capsys.readouterr().err

    def test_unexpected_error_returns_1(self, tmp_path):
        with patch(
            "wxbridge.main._run_bridge",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            assert main(_args(tmp_path, "run")) == 1

    def test_run_exits_with_main_code(self):
        with patch("wxbridge.main.main", return_value=3):
            with pytest.raises(SystemExit) as exc_info:
                run()
        assert exc_info.value.code == 3


class TestRunBridge:
    @pytest.mark.asyncio
    async def test_signal_triggers_shutdown(self, config, capsys):
        bridge = MagicMock()
        bridge.start = AsyncMock(
            side_effect=lambda: os.kill(os.getpid(), signal.SIGTERM)
        )
        bridge.stop = AsyncMock()
        status_server = MagicMock()
        status_server.start = AsyncMock()
        status_server.stop = AsyncMock()

        with (
            patch("wxbridge.main.build_bridge", return_value=bridge),
            patch("wxbridge.main.build_status_server", return_value=status_server),
        ):
            await _run_bridge(config)

        bridge.start.assert_awaited_once()
        bridge.stop.assert_awaited_once()
        status_server.start.assert_awaited_once()
        status_server.stop.assert_awaited_once()
        out = capsys.readouterr().out
        assert "ready" in out
        assert "Shutdown complete." in out

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, config):
        bridge = MagicMock()
        bridge.start = AsyncMock(side_effect=BridgeError("nope"))
        bridge.stop = AsyncMock()

        with (
            patch("wxbridge.main.build_bridge", return_value=bridge),
            patch("wxbridge.main.build_status_server", return_value=None),
            pytest.raises(BridgeError),
        ):
            await _run_bridge(config)
