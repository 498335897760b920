# corsproxy/test_errors.py
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest
from starlette.requests import ClientDisconnect

from corsproxy.errors import (
    Exchange,
    InternalFailure,
    InvalidTarget,
    RequestTooLarge,
    Stage,
    StreamFailure,
    TargetUnreachable,
    classify,
    error_response,
)

TARGET = "https://api.example.com/items"


def _fake_settings(production=False):
    return SimpleNamespace(is_production=production)


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:
    def test_proxy_error_passes_through(self):
        err = InvalidTarget("nope")
        assert classify(err, Stage.EXTRACTING) is err

    @pytest.mark.parametrize("exc", [
        httpx.ConnectError("Connection refused"),
        httpx.ConnectTimeout("timed out"),
        httpx.UnsupportedProtocol("Request URL has an unsupported protocol"),
        httpx.TooManyRedirects("Exceeded maximum allowed redirects."),
        httpx.InvalidURL("Invalid port"),
        asyncio.TimeoutError(),
        ConnectionRefusedError(111, "Connection refused"),
    ])
    def test_forwarding_failures_are_target_unreachable(self, exc):
        err = classify(exc, Stage.FORWARDING, TARGET)
        assert isinstance(err, TargetUnreachable)
        assert err.status_code == 500
        assert err.target == TARGET

    def test_unreachable_keeps_original_message(self):
        err = classify(httpx.ConnectError("Connection refused"), Stage.FORWARDING, TARGET)
        assert err.message == "Connection refused"
        assert err.detail == "ConnectError"

    def test_timeout_without_text_gets_message(self):
        err = classify(asyncio.TimeoutError(), Stage.FORWARDING, TARGET)
        assert "Timed out" in err.message

    @pytest.mark.parametrize("exc", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("peer closed connection without sending complete message body"),
        BrokenPipeError(32, "Broken pipe"),
    ])
    def test_relaying_failures_are_stream_failure(self, exc):
        err = classify(exc, Stage.RELAYING, TARGET)
        assert isinstance(err, StreamFailure)
        assert err.status_code == 500

    def test_unexpected_error_is_internal_failure(self):
        err = classify(KeyError("boom"), Stage.FORWARDING, TARGET)
        assert isinstance(err, InternalFailure)
        assert err.message == "An unexpected error occurred"
        assert "KeyError" in err.detail

    def test_caller_disconnect_is_stream_failure(self):
        err = classify(ClientDisconnect(), Stage.EXTRACTING, TARGET)
        assert isinstance(err, StreamFailure)
        assert err.target == TARGET

    def test_io_error_outside_forwarding_or_relaying_is_internal(self):
        err = classify(httpx.ReadError("x"), Stage.EXTRACTING, None)
        assert isinstance(err, InternalFailure)
        assert err.target is None


# ---------------------------------------------------------------------------
# Payload shape
# ---------------------------------------------------------------------------

class TestPayload:
    def test_invalid_target_payload(self):
        body = InvalidTarget("not-a-url").to_dict(base_url="http://proxy.local")
        assert body == {
            "error": "InvalidTarget",
            "message": "URL must start with http:// or https://",
            "example": "http://proxy.local/https://api.example.com",
            "received": "not-a-url",
        }

    def test_unreachable_payload_includes_target(self):
        body = TargetUnreachable("Connection refused", target=TARGET, detail="ConnectError").to_dict()
        assert body["error"] == "TargetUnreachable"
        assert body["message"] == "Connection refused"
        assert body["target"] == TARGET
        assert body["detail"] == "ConnectError"

    def test_detail_hidden_in_production(self):
        body = TargetUnreachable("Connection refused", target=TARGET, detail="ConnectError").to_dict(production=True)
        assert "detail" not in body
        assert body["target"] == TARGET

    def test_internal_failure_stack_only_outside_production(self):
        try:
            raise RuntimeError("kaboom")
        except RuntimeError as exc:
            err = InternalFailure.from_exception(exc)
        dev = err.to_dict(production=False)
        prod = err.to_dict(production=True)
        assert dev["detail"] == "RuntimeError: kaboom"
        assert any("kaboom" in line for line in dev["stack"])
        assert prod == {"error": "InternalFailure", "message": "An unexpected error occurred"}

    def test_request_too_large_status(self):
        assert RequestTooLarge("too big").status_code == 413

    def test_error_response_renders_json(self):
        with patch("corsproxy.errors.settings", _fake_settings()):
            resp = error_response(InvalidTarget("nope"), base_url="http://proxy.local/")
        assert resp.status_code == 400
        body = json.loads(resp.body)
        assert body["example"] == "http://proxy.local/https://api.example.com"

    def test_error_response_respects_production(self):
        with patch("corsproxy.errors.settings", _fake_settings(production=True)):
            resp = error_response(StreamFailure("reset", target=TARGET, detail="ReadError"))
        assert resp.status_code == 500
        assert "detail" not in json.loads(resp.body)


# ---------------------------------------------------------------------------
# Exchange lifecycle
# ---------------------------------------------------------------------------

class TestExchange:
    def test_happy_path(self):
        ex = Exchange(method="GET")
        assert ex.stage is Stage.RECEIVED
        for stage in (Stage.EXTRACTING, Stage.FORWARDING, Stage.RELAYING):
            ex.advance(stage)
            assert ex.stage is stage
        ex.complete(1024)
        assert ex.stage is Stage.COMPLETED
        assert ex.bytes_sent == 1024
        assert ex.finished

    def test_skipping_a_stage_is_internal_failure(self):
        ex = Exchange(method="GET")
        with pytest.raises(InternalFailure):
            ex.advance(Stage.FORWARDING)

    def test_no_transition_out_of_completed(self):
        ex = Exchange(method="GET", stage=Stage.RELAYING)
        ex.complete(0)
        with pytest.raises(InternalFailure):
            ex.advance(Stage.RELAYING)

    @pytest.mark.parametrize("stage", [Stage.RECEIVED, Stage.EXTRACTING, Stage.FORWARDING, Stage.RELAYING])
    def test_fail_from_any_active_stage(self, stage):
        ex = Exchange(method="POST", stage=stage)
        err = StreamFailure("reset")
        assert ex.fail(err) is err
        assert ex.stage is Stage.FAILED
        assert ex.error is err
        assert ex.finished
