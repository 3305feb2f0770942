"""Concrete sinks: SSE queues, WebSocket pumps and in-process callbacks."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, Iterator, Optional

from utils.streaming.session import CHUNK, SessionEvent, Sink, TransportDisconnect

logger = logging.getLogger('modelbridge.sinks')
transcript_logger = logging.getLogger('modelbridge.transcript')

FrameFormatter = Callable[[SessionEvent], Dict[str, Any]]


class QueueSink(Sink):
    """Buffers events for a consumer running on another thread (an SSE response)."""

    kind = 'sse'

    def __init__(self) -> None:
        super().__init__()
        self._queue: 'queue.Queue[SessionEvent]' = queue.Queue()

    def send(self, event: SessionEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        self.closed = True

    def events(self, timeout: Optional[float] = None) -> Iterator[Optional[SessionEvent]]:
        """
        Yield delivered events until the terminal one has been yielded.

        With a ``timeout`` the iterator yields ``None`` whenever nothing arrived
        in time, giving the caller a chance to write a keep-alive. A closed sink
        stops at the next idle period.
        """
        while True:
            try:
                event = self._queue.get(timeout=timeout)
            except queue.Empty:
                if self.closed:
                    return
                yield None
                continue
            yield event
            if event.is_terminal:
                return


class WebSocketSink(QueueSink):
    """
    Forwards events to one WebSocket connection from a dedicated pump thread.

    ``send_frame`` writes one JSON-able dict and raises
    :class:`TransportDisconnect` once the connection is gone; the sink then
    closes and reports itself through ``on_disconnect``.
    """

    kind = 'websocket'

    def __init__(
        self,
        send_frame: Callable[[Dict[str, Any]], None],
        *,
        formatter: Optional[FrameFormatter] = None,
        on_disconnect: Optional[Callable[['WebSocketSink'], None]] = None,
        poll_interval: float = 0.5,
    ) -> None:
        super().__init__()
        self._send_frame = send_frame
        self._formatter = formatter or (lambda event: event.to_dict())
        self._on_disconnect = on_disconnect
        self._poll_interval = poll_interval
        self._pump = threading.Thread(target=self._drain, name='ws-sink-pump', daemon=True)

    def start(self) -> 'WebSocketSink':
        self._pump.start()
        return self

    def join(self, timeout: Optional[float] = None) -> None:
        self._pump.join(timeout)

    def _drain(self) -> None:
        for event in self.events(timeout=self._poll_interval):
            if event is None:
                continue
            try:
                self._send_frame(self._formatter(event))
            except TransportDisconnect:
                logger.info("WebSocket closed while streaming session %s", event.session_id)
                self.closed = True
                if self._on_disconnect is not None:
                    self._on_disconnect(self)
                return


class CallbackSink(Sink):
    """Invokes callbacks synchronously on the delivering thread."""

    kind = 'native-ui'

    def __init__(
        self,
        on_chunk: Optional[Callable[[str], None]] = None,
        on_event: Optional[Callable[[SessionEvent], None]] = None,
    ) -> None:
        super().__init__()
        self.on_chunk = on_chunk
        self.on_event = on_event

    def send(self, event: SessionEvent) -> None:
        if event.kind == CHUNK and self.on_chunk is not None:
            self.on_chunk(event.content)
        if self.on_event is not None:
            self.on_event(event)


class TranscriptSink(CallbackSink):
    """Writes every chunk and the final response to the transcript logger."""

    passive = True

    def __init__(self, logger_: Optional[logging.Logger] = None) -> None:
        super().__init__(on_event=self._record)
        self._logger = logger_ or transcript_logger
        self._parts: list = []

    def _record(self, event: SessionEvent) -> None:
        if event.kind == CHUNK:
            self._parts.append(event.content)
            self._logger.debug("CHUNK #%s (session %s): %r", event.index, event.session_id, event.content)
            return

        stats = event.stats or {}
        self._logger.info(
            "COMPLETE RESPONSE (%s) for session %s: %r",
            event.kind, event.session_id, ''.join(self._parts),
        )
        self._logger.info(
            "STATS: %s chunks, %s chars",
            stats.get('chunks', len(self._parts)),
            stats.get('length', sum(len(part) for part in self._parts)),
        )
