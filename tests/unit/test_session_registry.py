"""Unit tests for the session table."""
import threading

from prometheus_client import CollectorRegistry

from utils.streaming.registry import SessionRegistry
from utils.streaming.session import SessionStatus
from utils.streaming.sinks import CallbackSink


def _registry(**kwargs):
    metrics = CollectorRegistry()
    return SessionRegistry(metrics_registry=metrics, **kwargs), metrics


def test_create_registers_pending_session():
    registry, metrics = _registry()

    session = registry.create(model_id='gpt-4o')

    assert registry.get(session.id) is session
    assert session.status is SessionStatus.PENDING
    assert session.model_id == 'gpt-4o'
    assert len(registry) == 1
    assert registry.active_count == 1
    assert metrics.get_sample_value('modelbridge_active_sessions') == 1.0


def test_finished_session_updates_metrics():
    registry, metrics = _registry()
    session = registry.create()

    session.start(['a', 'b', 'c'], background=False)

    assert metrics.get_sample_value('modelbridge_active_sessions') == 0.0
    assert metrics.get_sample_value('modelbridge_sessions_total', {'status': 'completed'}) == 1.0
    assert metrics.get_sample_value('modelbridge_chunks_total') == 3.0
    assert registry.active_count == 0


def test_finished_sessions_are_retained_until_expiry():
    registry, _ = _registry(retention_seconds=60)
    session = registry.create()
    session.start(['a'], background=False)

    assert registry.prune(now=session.finished_at + 30) == 0
    assert session.id in [s.id for s in registry.sessions()]

    assert registry.prune(now=session.finished_at + 61) == 1
    assert registry.remove(session.id) is None


def test_idle_running_session_is_cancelled(caplog):
    registry, _ = _registry(idle_timeout_seconds=10)
    session = registry.create()

    removed = registry.prune(now=session.updated_at + 11)

    assert removed == 1
    assert session.status is SessionStatus.CANCELLED
    assert len(registry) == 0
    assert "without progress" in caplog.text


def test_idle_session_stays_listed_until_cancel_is_delivered():
    registry, _ = _registry(idle_timeout_seconds=10)
    session = registry.create()
    listed_at_cancel = []
    session.attach_sink(CallbackSink(on_event=lambda event: listed_at_cancel.append(session in registry.sessions())))

    registry.prune(now=session.updated_at + 11)

    assert listed_at_cancel == [True]
    assert len(registry) == 0


def test_listeners_are_attached_to_new_sessions():
    seen = []
    registry, _ = _registry(listeners=[lambda session: CallbackSink(on_chunk=seen.append), lambda session: None])

    session = registry.create()
    session.start(['x', 'y'], background=False)

    assert seen == ['x', 'y']


def test_orphan_policy_is_passed_to_sessions():
    registry, _ = _registry(cancel_when_orphaned=False)

    assert registry.create().cancel_when_orphaned is False


def test_cancel_all_stops_running_sessions_only():
    registry, metrics = _registry()
    finished = registry.create()
    finished.start(['a'], background=False)

    gate = threading.Event()

    def waiting(cancel_event):
        while not gate.wait(0.01):
            if cancel_event.is_set():
                return
        yield 'never'

    running = registry.create()
    running.start(waiting)

    assert registry.cancel_all() == 1
    assert running.wait(timeout=5)
    assert running.status is SessionStatus.CANCELLED
    assert finished.status is SessionStatus.COMPLETED
    assert metrics.get_sample_value('modelbridge_sessions_total', {'status': 'cancelled'}) == 1.0


def test_two_registries_can_share_a_metrics_registry():
    metrics = CollectorRegistry()
    first = SessionRegistry(metrics_registry=metrics)
    second = SessionRegistry(metrics_registry=metrics)

    first.create()
    second.create()

    assert metrics.get_sample_value('modelbridge_active_sessions') == 2.0
