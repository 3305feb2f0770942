"""Prometheus collectors shared by the relay's HTTP layer and session table."""
from __future__ import annotations

from typing import Optional, Sequence, Type, TypeVar

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

MetricT = TypeVar('MetricT', Counter, Gauge)


def get_or_create_metric(
    metric_cls: Type[MetricT],
    name: str,
    documentation: str,
    labelnames: Sequence[str] = (),
    registry: Optional[CollectorRegistry] = None,
) -> MetricT:
    """Return the collector registered under ``name`` or register a new one.

    Re-importing a module or building a second app against the same registry
    would otherwise raise ``Duplicated timeseries``.
    """
    target = registry if registry is not None else REGISTRY
    existing = getattr(target, '_names_to_collectors', {}).get(name)
    if existing is not None:
        return existing  # type: ignore[return-value]
    return metric_cls(name, documentation, list(labelnames), registry=target)


class SessionMetrics:
    """Counters and gauges describing the session table."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.active_sessions = get_or_create_metric(
            Gauge,
            'modelbridge_active_sessions',
            'Streaming sessions that have not reached a terminal state',
            registry=registry,
        )
        self.sessions_total = get_or_create_metric(
            Counter,
            'modelbridge_sessions_total',
            'Streaming sessions by terminal status',
            ['status'],
            registry=registry,
        )
        self.chunks_total = get_or_create_metric(
            Counter,
            'modelbridge_chunks_total',
            'Chunks produced across all streaming sessions',
            registry=registry,
        )


def request_counter(registry: Optional[CollectorRegistry] = None) -> Counter:
    return get_or_create_metric(
        Counter,
        'modelbridge_relay_requests_total',
        'Total HTTP requests processed by the modelbridge relay',
        ['method', 'endpoint', 'status'],
        registry=registry,
    )
