"""Tests for the command-line chat client."""
from unittest.mock import MagicMock

import pytest

import client as chat_client
from utils.networking.discovery import NoServerFound
from utils.networking.relay_client import RelayRequestError

MESSAGES = [{"role": "user", "content": "hi"}]


@pytest.fixture
def relay_client():
    mock = MagicMock()
    mock.last_session_id = None
    mock.stream_chat.return_value = iter(["Hel", "lo"])
    mock.chat.return_value = {"message": {"role": "assistant", "content": "Hello"}}
    return mock


def test_format_message_colours_known_roles():
    assert chat_client.format_message({"role": "user", "content": "hi"}) == "\033[1;34mUser: \033[0mhi"
    assert chat_client.format_message({"role": "system", "content": "x"}).startswith("\033[1;33mSystem")


def test_send_streams_chunks_as_they_arrive(relay_client, capsys):
    reply = chat_client.send(relay_client, MESSAGES, "gpt-4o", stream=True)

    assert reply == "Hello"
    assert capsys.readouterr().out.endswith("Hello\n")
    relay_client.stream_chat.assert_called_once_with(MESSAGES, "gpt-4o")
    relay_client.chat.assert_not_called()


def test_send_without_stream_waits_for_full_reply(relay_client, capsys):
    reply = chat_client.send(relay_client, MESSAGES, "gpt-4o", stream=False)

    assert reply == "Hello"
    assert "Assistant: \033[0mHello" in capsys.readouterr().out
    relay_client.stream_chat.assert_not_called()


def test_interrupted_stream_cancels_session(relay_client, capsys):
    def interrupted(*_args):
        relay_client.last_session_id = "sess-1"
        yield "Hel"
        raise KeyboardInterrupt

    relay_client.stream_chat.side_effect = interrupted

    reply = chat_client.send(relay_client, MESSAGES, "gpt-4o", stream=True)

    assert reply == "Hel"
    relay_client.cancel.assert_called_once_with("sess-1")
    assert "[cancelled]" in capsys.readouterr().out


def test_detect_reports_missing_relay(capsys):
    discovery = MagicMock()
    discovery.resolve_base_url.side_effect = NoServerFound([60886, 60885])

    assert chat_client.detect(discovery) == 1
    assert "tried ports 60886, 60885" in capsys.readouterr().err


def test_detect_prints_relay_url(capsys):
    discovery = MagicMock()
    discovery.resolve_base_url.return_value = "http://localhost:60886"

    assert chat_client.detect(discovery) == 0
    assert capsys.readouterr().out.strip() == "http://localhost:60886"


def test_main_single_message(monkeypatch, relay_client, capsys):
    monkeypatch.setattr(chat_client, "RelayClient", MagicMock(return_value=relay_client))

    assert chat_client.main(["--message", "hi", "--model", "gpt-4o"]) == 0

    relay_client.stream_chat.assert_called_once_with(MESSAGES, "gpt-4o")
    assert "Hello" in capsys.readouterr().out


def test_main_single_message_reports_relay_errors(monkeypatch, relay_client, capsys):
    relay_client.chat.side_effect = RelayRequestError("model unavailable", status_code=502)
    monkeypatch.setattr(chat_client, "RelayClient", MagicMock(return_value=relay_client))

    assert chat_client.main(["--message", "hi", "--no-stream"]) == 1
    assert "Error: model unavailable" in capsys.readouterr().err


def test_chat_loop_keeps_history_and_exits(monkeypatch, relay_client, capsys):
    answers = iter(["hi", "", "exit"])
    monkeypatch.setattr("builtins.input", lambda _prompt: next(answers))

    chat_client.chat_loop(relay_client, "gpt-4o", stream=False)

    sent = relay_client.chat.call_args.args[0]
    assert sent[0] == {"role": "user", "content": "hi"}
    assert relay_client.chat.call_count == 1
    assert "Ending chat session." in capsys.readouterr().out
