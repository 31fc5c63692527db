"""Tests for gateway frame parsing and encoding."""

import json

import pytest

from wxbridge.exceptions import ProtocolError
from wxbridge.gateway.protocol import (
    PROTOCOL_VERSION,
    build_connect_params,
    encode_request,
    error_message,
    parse_agent_event,
    parse_frame,
)


class TestParseFrame:
    def test_event_frame(self):
        frame = parse_frame(
            '{"type": "event", "event": "connect.challenge", "payload": {"nonce": "n1"}}'
        )
        assert frame.type == "event"
        assert frame.event == "connect.challenge"
        assert frame.payload_dict == {"nonce": "n1"}

    def test_response_frame(self):
        frame = parse_frame(b'{"type": "res", "id": "abc", "ok": false, "error": "nope"}')
        assert frame.id == "abc"
        assert frame.ok is False
        assert frame.error == "nope"

    def test_payload_dict_for_non_object(self):
        frame = parse_frame('{"type": "res", "id": "x", "ok": true, "payload": [1, 2]}')
        assert frame.payload_dict == {}

    def test_extra_fields_kept(self):
        frame = parse_frame('{"type": "event", "event": "tick", "seq": 4}')
        assert frame.model_extra == {"seq": 4}

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "not json",
            "[1, 2]",
            '"text"',
            '{"type": "bogus"}',
            '{"id": "missing type"}',
            b"\xff\xfe",
        ],
    )
    def test_malformed(self, raw):
        with pytest.raises(ProtocolError):
            parse_frame(raw)


class TestParseAgentEvent:
    def test_runid_alias(self):
        event = parse_agent_event(
            {"runId": "agent-1", "stream": "assistant", "data": {"delta": "hi"}}
        )
        assert event is not None
        assert event.run_id == "agent-1"
        assert event.data == {"delta": "hi"}

    def test_non_dict_data_is_emptied(self):
        event = parse_agent_event({"runId": "r", "stream": "assistant", "data": "oops"})
        assert event is not None
        assert event.data == {}

    def test_not_a_dict(self):
        assert parse_agent_event(None) is None
        assert parse_agent_event("agent") is None


class TestEncoding:
    def test_encode_request(self):
        raw = encode_request("id-1", "send", {"content": "你好"})
        assert "你好" in raw
        assert json.loads(raw) == {
            "type": "req",
            "id": "id-1",
            "method": "send",
            "params": {"content": "你好"},
        }

    def test_connect_params(self):
        params = build_connect_params("tok", version="1.2.3", locale="zh-CN")
        assert params["minProtocol"] == PROTOCOL_VERSION
        assert params["maxProtocol"] == PROTOCOL_VERSION
        assert params["auth"] == {"token": "tok"}
        assert params["client"]["id"] == "gateway-client"
        assert params["client"]["version"] == "1.2.3"
        assert params["client"]["mode"] == "backend"
        assert params["role"] == "operator"
        assert params["scopes"] == ["operator.read", "operator.write"]
        assert params["locale"] == "zh-CN"
        assert params["userAgent"] == "openclaw-wechat-bridge"


class TestErrorMessage:
    def test_string(self):
        assert error_message("bad token") == "bad token"

    def test_structured(self):
        assert error_message({"code": 401}) == '{"code": 401}'

    def test_default(self):
        assert error_message(None) == "request failed"
        assert error_message("", "handshake rejected") == "handshake rejected"
