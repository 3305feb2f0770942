"""Single-producer, multi-consumer buffering of a model's token stream."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger('modelbridge.session')

Producer = Union[Iterable[str], Callable[[threading.Event], Iterable[str]]]

CHUNK = 'chunk'
DONE = 'done'
CANCELLED = 'cancelled'
ERROR = 'error'
TERMINAL_KINDS = frozenset({DONE, CANCELLED, ERROR})


class SessionStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.ACTIVE, SessionStatus.CANCELLED},
    SessionStatus.ACTIVE: {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.FAILED},
}


class SessionStateError(RuntimeError):
    """Raised on an illegal status transition, such as starting a session twice."""


class TransportDisconnect(Exception):
    """Raised by a sink whose underlying connection has gone away."""


@dataclass(frozen=True)
class ErrorInfo:
    message: str
    type: str = 'producer_error'

    def to_dict(self) -> Dict[str, str]:
        return {'message': self.message, 'type': self.type}


class SessionProducerError(Exception):
    """The upstream producer failed mid-stream."""

    def __init__(self, info: ErrorInfo):
        self.info = info
        super().__init__(info.message)


@dataclass(frozen=True)
class SessionEvent:
    """One item delivered to sinks: a chunk or one of the three terminal markers."""

    kind: str
    session_id: str
    index: Optional[int] = None
    content: str = ''
    stats: Optional[Dict[str, int]] = None
    error: Optional[ErrorInfo] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'type': self.kind, 'sessionId': self.session_id}
        if self.kind == CHUNK:
            payload['index'] = self.index
            payload['content'] = self.content
        if self.stats is not None:
            payload['stats'] = dict(self.stats)
        if self.error is not None:
            payload['error'] = self.error.message
        return payload


class Sink:
    """
    A consumer attached to a session.

    ``last_delivered_index`` is the watermark into the session's chunk list.
    :meth:`deliver` only forwards the chunk directly after the watermark and at
    most one terminal event, so a sink never sees a chunk twice.
    """

    kind = 'native-ui'
    # Passive sinks observe a session without keeping it alive
    passive = False

    def __init__(self) -> None:
        self.last_delivered_index = -1
        self.terminal_delivered = False
        self.closed = False

    def deliver(self, event: SessionEvent) -> bool:
        if self.closed:
            raise TransportDisconnect(f"{self.kind} sink is closed")
        if event.kind == CHUNK:
            if event.index != self.last_delivered_index + 1:
                return False
            self.send(event)
            self.last_delivered_index = event.index
            return True

        if self.terminal_delivered:
            return False
        self.send(event)
        self.terminal_delivered = True
        return True

    def send(self, event: SessionEvent) -> None:
        raise NotImplementedError


class StreamSession:
    """
    One request/response exchange with a token producer.

    Chunks are appended under the session lock and fanned out to every
    attached sink while the lock is held. Sinks therefore observe one global
    order. A late sink first receives the full history, then live chunks.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        *,
        model_id: Optional[str] = None,
        cancel_when_orphaned: bool = False,
        on_finish: Optional[Callable[['StreamSession'], None]] = None,
    ) -> None:
        self.id = session_id or f"sess-{uuid.uuid4().hex}"
        self.model_id = model_id
        self.cancel_when_orphaned = cancel_when_orphaned
        self.status = SessionStatus.PENDING
        self.created_at = time.time()
        self.updated_at = self.created_at
        self.finished_at: Optional[float] = None
        self.error: Optional[ErrorInfo] = None
        self.cancel_event = threading.Event()

        self._chunks: List[str] = []
        self._subscribers: List[Sink] = []
        self._terminal_event: Optional[SessionEvent] = None
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._thread: Optional[threading.Thread] = None
        self._on_finish = on_finish

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def chunks(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._chunks)

    @property
    def text(self) -> str:
        with self._lock:
            return ''.join(self._chunks)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                'chunks': len(self._chunks),
                'length': sum(len(chunk) for chunk in self._chunks),
            }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'sessionId': self.id,
                'status': self.status.value,
                'modelId': self.model_id,
                'createdAt': self.created_at,
                'updatedAt': self.updated_at,
                'finishedAt': self.finished_at,
                'subscribers': len(self._subscribers),
                'error': self.error.to_dict() if self.error else None,
                **self.stats(),
            }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, status: SessionStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise SessionStateError(
                f"Session {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = time.time()

    def start(self, producer: Producer, *, background: bool = True) -> None:
        """Move to ``active`` and begin consuming ``producer``.

        ``producer`` is an iterable of strings, or a callable that receives the
        cancellation event and returns one. It is consumed on a worker thread
        unless ``background`` is False.
        """
        with self._lock:
            self._transition(SessionStatus.ACTIVE)

        if not background:
            self._run(producer)
            return

        self._thread = threading.Thread(
            target=self._run,
            args=(producer,),
            name=f"stream-{self.id[:13]}",
            daemon=True,
        )
        self._thread.start()

    def _run(self, producer: Producer) -> None:
        iterable: Any = None
        try:
            iterable = producer(self.cancel_event) if callable(producer) else producer
            for chunk in iterable:
                if self.cancel_event.is_set():
                    break
                if chunk:
                    self._append(str(chunk))
        except Exception as exc:
            self._fail(exc)
        else:
            self._finish(SessionStatus.COMPLETED)
        finally:
            close = getattr(iterable, 'close', None)
            if callable(close):
                close()

    def _append(self, chunk: str) -> bool:
        with self._lock:
            if self.status is not SessionStatus.ACTIVE:
                return False
            index = len(self._chunks)
            self._chunks.append(chunk)
            self.updated_at = time.time()
            self._fan_out(SessionEvent(CHUNK, self.id, index=index, content=chunk))
            self._changed.notify_all()
            return True

    def _fail(self, exc: BaseException) -> None:
        info = ErrorInfo(message=str(exc) or exc.__class__.__name__, type=exc.__class__.__name__)
        if self.is_terminal:
            logger.debug("Ignoring producer error on finished session %s: %s", self.id, info.message)
            return
        logger.error(
            "Producer failed for session %s after %s chunk(s)",
            self.id, len(self._chunks), exc_info=(type(exc), exc, exc.__traceback__),
        )
        self._finish(SessionStatus.FAILED, error=info)

    def _finish(self, status: SessionStatus, error: Optional[ErrorInfo] = None) -> bool:
        kinds = {
            SessionStatus.COMPLETED: DONE,
            SessionStatus.CANCELLED: CANCELLED,
            SessionStatus.FAILED: ERROR,
        }
        with self._lock:
            if self.status.is_terminal:
                return False
            self._transition(status)
            self.finished_at = self.updated_at
            self.error = error
            event = SessionEvent(kinds[status], self.id, stats=self.stats(), error=error)
            self._terminal_event = event
            self._fan_out(event)
            # Nothing can follow a terminal event
            self._subscribers.clear()
            self._changed.notify_all()

        if self._on_finish is not None:
            try:
                self._on_finish(self)
            except Exception:
                logger.error("on_finish hook failed for session %s", self.id, exc_info=True)
        return True

    def cancel(self) -> bool:
        """Stop the producer cooperatively and deliver one ``cancelled`` event.

        Returns False when the session had already finished.
        """
        self.cancel_event.set()
        cancelled = self._finish(SessionStatus.CANCELLED)
        if cancelled:
            logger.info("Session %s cancelled after %s chunk(s)", self.id, len(self._chunks))
        return cancelled

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def _has_consumers(self) -> bool:
        return any(not sink.passive for sink in self._subscribers)

    def _fan_out(self, event: SessionEvent) -> None:
        dropped = False
        for sink in list(self._subscribers):
            try:
                sink.deliver(event)
            except TransportDisconnect:
                logger.info("Sink %s disconnected from session %s", sink.kind, self.id)
                self._subscribers.remove(sink)
                dropped = True
        if (
            dropped
            and not self._has_consumers()
            and not event.is_terminal
            and self.cancel_when_orphaned
        ):
            logger.info("Session %s lost its last sink; cancelling", self.id)
            self.cancel_event.set()
            self._finish(SessionStatus.CANCELLED)

    def attach_sink(self, sink: Sink) -> bool:
        """Replay history into ``sink`` then keep it for live delivery.

        Returns False when the sink disconnected during the replay.
        """
        with self._lock:
            try:
                for index, chunk in enumerate(self._chunks):
                    sink.deliver(SessionEvent(CHUNK, self.id, index=index, content=chunk))
                if self._terminal_event is not None:
                    sink.deliver(self._terminal_event)
                    return True
            except TransportDisconnect:
                logger.info("Sink %s disconnected during replay of session %s", sink.kind, self.id)
                return False
            self._subscribers.append(sink)
            return True

    def detach_sink(self, sink: Sink, *, disconnected: bool = False) -> None:
        """Remove ``sink``.

        An explicit detach never affects the session. A transport loss that
        leaves no sinks on a running session cancels it when
        ``cancel_when_orphaned`` is set.
        """
        with self._lock:
            if sink in self._subscribers:
                self._subscribers.remove(sink)
            orphaned = (
                disconnected
                and self.cancel_when_orphaned
                and not self._has_consumers()
                and not self.status.is_terminal
            )
        if orphaned:
            logger.info("Session %s lost its last sink; cancelling", self.id)
            self.cancel()

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session is terminal; False on timeout."""
        with self._changed:
            return self._changed.wait_for(lambda: self.status.is_terminal, timeout)

    def wait_for_chunks(self, count: int, timeout: Optional[float] = None) -> bool:
        """Block until at least ``count`` chunks exist (or the session ends)."""
        with self._changed:
            self._changed.wait_for(
                lambda: len(self._chunks) >= count or self.status.is_terminal,
                timeout,
            )
            return len(self._chunks) >= count

    def result(self, timeout: Optional[float] = None) -> str:
        """Wait for the session and return its full text.

        Raises:
            TimeoutError: the session is still running after ``timeout``
            SessionProducerError: the producer failed
        """
        if not self.wait(timeout):
            raise TimeoutError(f"Session {self.id} still running after {timeout} seconds")
        if self.status is SessionStatus.FAILED and self.error is not None:
            raise SessionProducerError(self.error)
        return self.text

    def __repr__(self) -> str:
        return f"StreamSession(id={self.id!r}, status={self.status.value!r}, chunks={len(self._chunks)})"
