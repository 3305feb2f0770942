"""Streaming sessions and the sinks that consume them."""

from utils.streaming.registry import SessionRegistry
from utils.streaming.session import (
    ErrorInfo,
    SessionEvent,
    SessionProducerError,
    SessionStateError,
    SessionStatus,
    Sink,
    StreamSession,
    TransportDisconnect,
)
from utils.streaming.sinks import CallbackSink, QueueSink, TranscriptSink, WebSocketSink

__all__ = [
    'CallbackSink',
    'ErrorInfo',
    'QueueSink',
    'SessionEvent',
    'SessionProducerError',
    'SessionRegistry',
    'SessionStateError',
    'SessionStatus',
    'Sink',
    'StreamSession',
    'TranscriptSink',
    'TransportDisconnect',
    'WebSocketSink',
]
