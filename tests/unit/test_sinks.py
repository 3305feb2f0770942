"""Unit tests for the concrete session sinks."""
import logging
import threading

from utils.streaming.session import CHUNK, DONE, SessionEvent, StreamSession, TransportDisconnect
from utils.streaming.sinks import CallbackSink, QueueSink, TranscriptSink, WebSocketSink


def test_queue_sink_yields_none_when_idle_and_stops_after_terminal():
    sink = QueueSink()
    events = sink.events(timeout=0.01)

    assert next(events) is None

    sink.deliver(SessionEvent(CHUNK, 's', index=0, content='a'))
    sink.deliver(SessionEvent(DONE, 's'))

    assert next(events).content == 'a'
    assert next(events).kind == DONE
    assert list(events) == []


def test_closed_queue_sink_stops_at_next_idle_period():
    sink = QueueSink()
    sink.close()

    assert list(sink.events(timeout=0.01)) == []


def test_callback_sink_forwards_chunks_and_events():
    chunks, events = [], []
    session = StreamSession()
    session.attach_sink(CallbackSink(on_chunk=chunks.append, on_event=events.append))

    session.start(['a', 'b'], background=False)

    assert chunks == ['a', 'b']
    assert [event.kind for event in events] == [CHUNK, CHUNK, DONE]


def test_transcript_sink_logs_complete_response_and_stats(caplog):
    session = StreamSession()
    session.attach_sink(TranscriptSink())

    with caplog.at_level(logging.DEBUG, logger='modelbridge.transcript'):
        session.start(['Hello', ' there'], background=False)

    assert "CHUNK #0" in caplog.text
    assert "COMPLETE RESPONSE (done)" in caplog.text
    assert "'Hello there'" in caplog.text
    assert "STATS: 2 chunks, 11 chars" in caplog.text


def test_websocket_sink_pumps_formatted_frames():
    frames = []
    finished = threading.Event()

    def send_frame(frame):
        frames.append(frame)
        if frame['type'] == 'done':
            finished.set()

    sink = WebSocketSink(
        send_frame,
        formatter=lambda event: {**event.to_dict(), 'requestId': 'r1'},
        poll_interval=0.01,
    ).start()
    session = StreamSession(session_id='sess-ws')
    session.attach_sink(sink)

    session.start(['a', 'b'], background=False)

    assert finished.wait(5)
    sink.join(5)
    assert frames == [
        {'type': 'chunk', 'sessionId': 'sess-ws', 'index': 0, 'content': 'a', 'requestId': 'r1'},
        {'type': 'chunk', 'sessionId': 'sess-ws', 'index': 1, 'content': 'b', 'requestId': 'r1'},
        {'type': 'done', 'sessionId': 'sess-ws', 'stats': {'chunks': 2, 'length': 2}, 'requestId': 'r1'},
    ]


def test_websocket_sink_reports_disconnect_once():
    disconnected = []

    def send_frame(frame):
        raise TransportDisconnect("socket closed")

    sink = WebSocketSink(send_frame, on_disconnect=disconnected.append, poll_interval=0.01).start()
    sink.deliver(SessionEvent(CHUNK, 's', index=0, content='a'))
    sink.join(5)

    assert disconnected == [sink]
    assert sink.closed is True
