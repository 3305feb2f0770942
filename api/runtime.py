"""Process-scoped state shared by the relay's HTTP and WebSocket surfaces."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from prometheus_client import CollectorRegistry

from api.v1.models import ModelProvider, create_provider
from utils.lifecycle.cleanup import CleanupCoordinator
from utils.networking.port_arbiter import ConfirmCallback, PortArbiter
from utils.streaming.registry import SessionRegistry
from utils.streaming.sinks import TranscriptSink

if TYPE_CHECKING:
    from api.websocket import WebSocketChannel
    from config import Config


@dataclass
class RelayRuntime:
    """Everything one relay process owns. Built once in ``relay.main`` and injected into the app."""

    config: 'Config'
    arbiter: PortArbiter
    coordinator: CleanupCoordinator
    sessions: SessionRegistry
    provider: ModelProvider
    metrics_registry: CollectorRegistry
    http_port: Optional[int] = None
    ws_port: Optional[int] = None
    channel: Optional['WebSocketChannel'] = None
    started_at: float = field(default_factory=time.time)
    draining: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def from_config(
        cls,
        config: Optional['Config'] = None,
        *,
        provider: Optional[ModelProvider] = None,
        arbiter: Optional[PortArbiter] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> 'RelayRuntime':
        if config is None:
            from config import get_config
            config = get_config()

        relay = config.relay_settings
        metrics_registry = CollectorRegistry()
        arbiter = arbiter or PortArbiter(
            relay.get('host', '127.0.0.1'),
            max_attempts=relay.get('max_port_attempts', 10),
            confirm=confirm,
        )
        listeners = [lambda _session: TranscriptSink()] if relay.get('transcript') else []
        sessions = SessionRegistry(
            retention_seconds=relay.get('session_retention_seconds', 60.0),
            idle_timeout_seconds=relay.get('session_idle_timeout_seconds', 900.0),
            cancel_when_orphaned=relay.get('cancel_on_orphan', True),
            listeners=listeners,
            metrics_registry=metrics_registry,
        )
        return cls(
            config=config,
            arbiter=arbiter,
            coordinator=CleanupCoordinator(arbiter),
            sessions=sessions,
            provider=provider or create_provider(config),
            metrics_registry=metrics_registry,
        )

    @property
    def clients(self) -> int:
        return self.channel.client_count if self.channel is not None else 0

    def status(self) -> dict:
        self.sessions.prune()
        return {
            'port': self.http_port,
            'wsPort': self.ws_port,
            'clients': self.clients,
            'activeSessionCount': self.sessions.active_count,
            'uptimeSeconds': round(time.time() - self.started_at, 3),
            'provider': self.provider.name,
        }
