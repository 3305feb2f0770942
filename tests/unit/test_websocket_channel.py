"""Message handling of the WebSocket channel, driven through a fake connection."""
import json
import threading
import time

import pytest
from websockets.exceptions import ConnectionClosedOK

from api.v1.models import ModelError
from api.websocket import ClientConnection, WebSocketChannel
from utils.streaming.session import SessionStatus, TransportDisconnect


class FakeWebSocket:
    """Collects frames sent by the channel."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._lock = threading.Lock()

    def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        with self._lock:
            self.sent.append(json.loads(data))

    def close(self, code=1000, reason=''):
        self.closed = True

    def frames(self, kind=None):
        with self._lock:
            return [frame for frame in self.sent if kind is None or frame['type'] == kind]

    def wait_for(self, kind, count=1, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            found = self.frames(kind)
            if len(found) >= count:
                return found
            time.sleep(0.01)
        raise AssertionError(f"no {kind!r} frame within {timeout}s: {self.frames()}")


@pytest.fixture
def channel(runtime):
    channel = WebSocketChannel(runtime, heartbeat_interval=0.05)
    runtime.channel = channel
    return channel


@pytest.fixture
def connection():
    return ClientConnection(FakeWebSocket())


def send(channel, connection, **message):
    channel.dispatch(connection, json.dumps(message))


def test_ping_and_echo(channel, connection):
    send(channel, connection, type='ping')
    send(channel, connection, type='echo', data={'x': 1})

    assert connection.websocket.frames('pong')
    assert connection.websocket.frames('echo')[0]['data'] == {'x': 1}


def test_get_models(channel, connection):
    send(channel, connection, type='getModels')

    (frame,) = connection.websocket.frames('models')
    assert 'gpt-4o' in [model['id'] for model in frame['data']]


def test_get_models_degrades_when_provider_fails(channel, connection, runtime, monkeypatch):
    def broken():
        raise ModelError("upstream down")

    monkeypatch.setattr(runtime.provider, "list_models", broken)

    send(channel, connection, type='getModels')

    (frame,) = connection.websocket.frames('models')
    assert frame['data'] == []
    assert frame['degraded'] is True
    assert frame['error'] == "upstream down"
    assert not connection.websocket.frames('error')


def test_unexpected_handler_error_is_reported_and_connection_survives(channel, connection, runtime, monkeypatch):
    def broken():
        raise RuntimeError("boom")

    monkeypatch.setattr(runtime.provider, "list_models", broken)

    send(channel, connection, type='getModels', requestId='r3')
    send(channel, connection, type='ping')

    (frame,) = connection.websocket.frames('error')
    assert "boom" in frame['error']
    assert frame['requestId'] == 'r3'
    assert connection.websocket.frames('pong')


@pytest.mark.parametrize('raw, fragment', [
    ('not json', 'Invalid JSON'),
    (json.dumps({'type': 'teleport'}), 'Invalid message'),
    (json.dumps({'type': 'chat', 'requestId': 'r1'}), 'Invalid message'),
    (json.dumps({'type': 'cancel'}), 'Invalid message'),
])
def test_invalid_messages_get_error_frames(channel, connection, raw, fragment):
    channel.dispatch(connection, raw)

    (frame,) = connection.websocket.frames('error')
    assert fragment in frame['error']


def test_invalid_chat_body_keeps_request_id(channel, connection):
    send(channel, connection, type='chat', requestId='r7', messages=[])

    (frame,) = connection.websocket.frames('error')
    assert frame['requestId'] == 'r7'


def test_chat_streams_chunks_then_done(channel, connection, runtime):
    send(channel, connection, type='chat', requestId='r1', modelId='gpt-4o',
         messages=[{'role': 'user', 'content': 'hi there'}])

    (started,) = connection.websocket.frames('chatStarted')
    assert started['requestId'] == 'r1'
    (done,) = connection.websocket.wait_for('done')

    chunks = connection.websocket.frames('chunk')
    expected = runtime.provider.respond([{'role': 'user', 'content': 'hi there'}], 'gpt-4o')
    assert ''.join(chunk['content'] for chunk in chunks) == expected
    assert [chunk['index'] for chunk in chunks] == list(range(len(chunks)))
    assert all(chunk['requestId'] == 'r1' for chunk in chunks)
    assert done['sessionId'] == started['sessionId']


def test_subscribe_replays_an_existing_session(channel, connection, runtime):
    session = runtime.sessions.create(model_id='gpt-4o')
    session.start(['a', 'b'], background=False)

    send(channel, connection, type='subscribe', sessionId=session.id)

    (subscribed,) = connection.websocket.frames('subscribed')
    assert subscribed['status'] == 'completed'
    connection.websocket.wait_for('done')
    assert [frame['content'] for frame in connection.websocket.frames('chunk')] == ['a', 'b']


def test_subscribe_to_unknown_session(channel, connection):
    send(channel, connection, type='subscribe', sessionId='sess-' + '0' * 32)

    assert 'not found' in connection.websocket.frames('error')[0]['error']


def test_cancel_acknowledges_and_notifies_subscribers(channel, connection, runtime):
    gate = threading.Event()

    def waiting(cancel_event):
        while not gate.wait(0.01):
            if cancel_event.is_set():
                return
        yield 'never'

    session = runtime.sessions.create(model_id='gpt-4o')
    session.start(waiting)
    send(channel, connection, type='subscribe', sessionId=session.id)

    send(channel, connection, type='cancel', sessionId=session.id)

    (ack,) = connection.websocket.frames('cancelAck')
    assert ack == {'type': 'cancelAck', 'sessionId': session.id, 'cancelled': True}
    assert len(connection.websocket.wait_for('cancelled')) == 1
    assert session.status is SessionStatus.CANCELLED


def test_disconnect_cancels_orphaned_session(channel, connection, runtime):
    gate = threading.Event()

    def waiting(cancel_event):
        while not gate.wait(0.01):
            if cancel_event.is_set():
                return
        yield 'never'

    session = runtime.sessions.create(model_id='gpt-4o')
    session.start(waiting)
    send(channel, connection, type='subscribe', sessionId=session.id)

    channel._release_sinks(connection)

    assert session.wait(timeout=5)
    assert session.status is SessionStatus.CANCELLED


def test_send_after_close_raises_transport_disconnect(connection):
    connection.websocket.close()

    with pytest.raises(TransportDisconnect):
        connection.send_json({'type': 'ping'})
    assert connection.closed.is_set()


def test_handle_runs_a_full_connection(channel, runtime):
    class ScriptedWebSocket(FakeWebSocket):
        request = type('Request', (), {'path': '/ws'})()

        def __iter__(self):
            yield json.dumps({'type': 'ping'})

    websocket = ScriptedWebSocket()

    channel.handle(websocket)

    assert [frame['type'] for frame in websocket.frames()][:2] == ['connected', 'pong']
    assert channel.client_count == 0


def test_handle_rejects_unknown_path(channel):
    class Elsewhere(FakeWebSocket):
        request = type('Request', (), {'path': '/other'})()

    websocket = Elsewhere()

    channel.handle(websocket)

    assert websocket.closed is True
    assert websocket.frames() == []
