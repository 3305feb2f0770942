"""Process-wide table of streaming sessions."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from prometheus_client import CollectorRegistry

from utils.metrics import SessionMetrics
from utils.streaming.session import Sink, StreamSession

logger = logging.getLogger('modelbridge.sessions')

ListenerFactory = Callable[[StreamSession], Optional[Sink]]


class SessionRegistry:
    """
    Owns every :class:`StreamSession` created by the relay.

    Finished sessions stay addressable for ``retention_seconds`` so late
    subscribers can still replay them. Sessions that stop making progress for
    ``idle_timeout_seconds`` are cancelled. Both are enforced lazily whenever
    the table is touched.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = 60.0,
        idle_timeout_seconds: float = 900.0,
        cancel_when_orphaned: bool = True,
        listeners: Iterable[ListenerFactory] = (),
        metrics_registry: Optional[CollectorRegistry] = None,
    ):
        self.retention_seconds = retention_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self.cancel_when_orphaned = cancel_when_orphaned
        self.listeners: List[ListenerFactory] = list(listeners)
        self.metrics = SessionMetrics(metrics_registry)
        self._sessions: Dict[str, StreamSession] = {}
        self._lock = threading.Lock()

    def create(self, model_id: Optional[str] = None) -> StreamSession:
        """Register a new pending session and attach the in-process listeners."""
        self.prune()
        session = StreamSession(
            model_id=model_id,
            cancel_when_orphaned=self.cancel_when_orphaned,
            on_finish=self._record_finish,
        )
        with self._lock:
            self._sessions[session.id] = session
        self.metrics.active_sessions.inc()

        for factory in self.listeners:
            sink = factory(session)
            if sink is not None:
                session.attach_sink(sink)

        logger.debug("Created session %s for model %s", session.id, model_id)
        return session

    def _record_finish(self, session: StreamSession) -> None:
        self.metrics.active_sessions.dec()
        self.metrics.sessions_total.labels(status=session.status.value).inc()
        self.metrics.chunks_total.inc(len(session.chunks))

    def get(self, session_id: str) -> Optional[StreamSession]:
        self.prune()
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[StreamSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def sessions(self) -> List[StreamSession]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def active_count(self) -> int:
        return sum(1 for session in self.sessions() if not session.is_terminal)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop expired finished sessions and cancel idle ones; return how many were removed."""
        current = time.time() if now is None else now
        idle: List[StreamSession] = []
        removed = 0

        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.is_terminal:
                    finished = session.finished_at or current
                    if session.subscriber_count == 0 and current - finished >= self.retention_seconds:
                        del self._sessions[session_id]
                        removed += 1
                elif current - session.updated_at >= self.idle_timeout_seconds:
                    idle.append(session)

        # an idle session leaves the table only once its cancelled event is delivered
        for session in idle:
            logger.warning(
                "Cancelling session %s after %.0fs without progress",
                session.id, current - session.updated_at,
            )
            session.cancel()
            with self._lock:
                if self._sessions.pop(session.id, None) is not None:
                    removed += 1
        return removed

    def cancel_all(self) -> int:
        """Cancel every running session (used during shutdown)."""
        cancelled = 0
        for session in self.sessions():
            if session.cancel():
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %s running session(s)", cancelled)
        return cancelled
