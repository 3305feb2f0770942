"""Tests for the front-end relay client."""
import json
from unittest.mock import MagicMock

import pytest
import requests

from utils.networking.discovery import ClientDiscovery, NoServerFound
from utils.networking.relay_client import SIMULATED_BANNER, RelayClient, RelayRequestError

MESSAGES = [{"role": "user", "content": "hello"}]


def _response(status=200, payload=None, lines=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.headers = headers or {}
    response.json.return_value = payload
    response.iter_lines.return_value = iter(lines or [])
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


def _frame(payload):
    return "data: " + json.dumps(payload)


@pytest.fixture
def discovery():
    discovery = MagicMock()
    discovery.resolve_base_url.return_value = "http://localhost:60886"
    return discovery


@pytest.fixture
def unreachable():
    discovery = MagicMock()
    discovery.resolve_base_url.side_effect = NoServerFound([60886, 60885])
    return discovery


class TestRequests:
    def test_retry_after_connection_error_rediscovers(self, discovery):
        session = MagicMock()
        session.request.side_effect = [
            requests.ConnectionError("refused"),
            _response(payload={"success": True, "status": "connected"}),
        ]
        discovery.resolve_base_url.side_effect = ["http://localhost:60886", "http://localhost:60885"]
        client = RelayClient(discovery, session=session)

        status = client.status()

        assert status["status"] == "connected"
        discovery.invalidate.assert_called_once()
        assert session.request.call_args[0] == ("GET", "http://localhost:60885/api/status")

    def test_draining_relay_is_retried_then_reported(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(status=503)
        client = RelayClient(discovery, session=session)

        with pytest.raises(RelayRequestError, match="draining"):
            client.status()

        assert session.request.call_count == 2
        assert discovery.invalidate.call_count == 2

    def test_error_body_is_surfaced(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(status=400, payload={"success": False, "error": "bad"})
        client = RelayClient(discovery, session=session)

        with pytest.raises(RelayRequestError) as excinfo:
            client.chat(MESSAGES, "gpt-4o")

        assert excinfo.value.message == "bad"
        assert excinfo.value.status_code == 400

    def test_unexpected_status_payload_is_rejected(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(payload={"status": "connected"})
        client = RelayClient(discovery, session=session)

        with pytest.raises(RelayRequestError, match="Unexpected status payload"):
            client.status()

    def test_read_timeout_on_chat_is_not_resent(self, discovery):
        session = MagicMock()
        session.request.side_effect = [
            requests.ReadTimeout("slow"),
            _response(payload={"success": True, "message": {"role": "assistant", "content": "late"}}),
        ]
        client = RelayClient(discovery, session=session)

        with pytest.raises(RelayRequestError, match="slow"):
            client.chat(MESSAGES, "gpt-4o")

        assert session.request.call_count == 1
        discovery.invalidate.assert_called_once()

    def test_refused_chat_is_sent_again_after_rediscovery(self, discovery):
        session = MagicMock()
        session.request.side_effect = [
            requests.ConnectionError("refused"),
            _response(payload={"success": True, "sessionId": "sess-2", "message": {"content": "hi"}}),
        ]
        client = RelayClient(discovery, session=session)

        assert client.chat(MESSAGES, "gpt-4o")["sessionId"] == "sess-2"
        assert session.request.call_count == 2

    def test_read_timeout_on_status_is_retried(self, discovery):
        session = MagicMock()
        session.request.side_effect = [
            requests.ReadTimeout("slow"),
            _response(payload={"success": True, "status": "connected"}),
        ]
        client = RelayClient(discovery, session=session)

        assert client.status()["status"] == "connected"
        assert session.request.call_count == 2


class TestStandaloneFallback:
    def test_status(self, unreachable):
        status = RelayClient(unreachable, session=MagicMock()).status()

        assert status["status"] == "standalone"
        assert status["attemptedPorts"] == [60886, 60885]

    def test_models(self, unreachable):
        body = RelayClient(unreachable, session=MagicMock()).list_models(group_by="vendor")

        assert body["isDevelopmentMode"] is True
        assert "OpenAI" in body["models"]

    def test_chat_is_labelled_simulated(self, unreachable):
        body = RelayClient(unreachable, session=MagicMock()).chat(MESSAGES, "gpt-4o")

        assert body["message"]["content"].startswith(SIMULATED_BANNER)
        assert '"hello"' in body["message"]["content"]

    def test_stream_is_labelled_simulated(self, unreachable):
        text = "".join(RelayClient(unreachable, session=MagicMock()).stream_chat(MESSAGES, "gpt-4o"))

        assert text.startswith(SIMULATED_BANNER)


class TestStreaming:
    def test_stream_chat_yields_content_and_records_session(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(
            headers={"X-Session-Id": "sess-1"},
            lines=[
                ": keep-alive",
                "",
                _frame({"content": "Hel", "done": False}),
                _frame({"content": "lo", "done": False}),
                _frame({"content": "", "done": True, "sessionId": "sess-1"}),
                _frame({"content": "after", "done": False}),
            ],
        )
        client = RelayClient(discovery, session=session)

        assert list(client.stream_chat(MESSAGES, "gpt-4o")) == ["Hel", "lo"]
        assert client.last_session_id == "sess-1"
        assert session.request.call_args[1]["json"]["stream"] is True

    def test_error_frame_raises(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(lines=[
            _frame({"content": "par", "done": False}),
            _frame({"content": "", "done": True, "error": "upstream reset"}),
        ])
        client = RelayClient(discovery, session=session)
        stream = client.stream_chat(MESSAGES, "gpt-4o")

        assert next(stream) == "par"
        with pytest.raises(RelayRequestError, match="upstream reset"):
            next(stream)

    def test_malformed_frame_raises(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(lines=["data: {\"done\": \"soon\"}"])
        client = RelayClient(discovery, session=session)

        with pytest.raises(RelayRequestError, match="Malformed"):
            list(client.stream_chat(MESSAGES, "gpt-4o"))


class TestCancel:
    def test_cancel_defaults_to_last_session(self, discovery):
        session = MagicMock()
        session.request.return_value = _response(payload={"success": True, "cancelled": True})
        client = RelayClient(discovery, session=session)
        client.last_session_id = "sess-9"

        assert client.cancel()["cancelled"] is True
        assert session.request.call_args[0] == ("POST", "http://localhost:60886/api/sessions/sess-9/cancel")

    def test_cancel_without_session_raises(self, discovery):
        with pytest.raises(ValueError):
            RelayClient(discovery, session=MagicMock()).cancel()


def test_stream_broken_mid_response_forgets_relay():
    probe_session = MagicMock()
    probe_session.get.return_value = MagicMock(status_code=200)
    discovery = ClientDiscovery([60886], session=probe_session)
    assert discovery.resolve_base_url() == "http://localhost:60886"

    def broken_lines(**_kwargs):
        yield _frame({"content": "Hel", "done": False})
        raise requests.exceptions.ChunkedEncodingError("connection reset")

    response = _response(headers={"X-Session-Id": "sess-3"})
    response.iter_lines.side_effect = broken_lines
    session = MagicMock()
    session.request.return_value = response
    client = RelayClient(discovery, session=session)
    stream = client.stream_chat(MESSAGES, "gpt-4o")

    assert next(stream) == "Hel"
    with pytest.raises(RelayRequestError, match="interrupted"):
        next(stream)
    assert discovery.cached_base_url is None
