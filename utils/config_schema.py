"""Typed configuration schema and defaults for :mod:`modelbridge`.

This module centralises the structure of the application's configuration tree.  It
provides ``TypedDict`` based views for each section together with the default
configuration payload and the environment specific overrides that are merged at
runtime.
"""

from __future__ import annotations

from typing import Dict, List, Optional, TypedDict


class RelaySettings(TypedDict, total=False):
    host: str
    port: int
    websocket_port: Optional[int]
    max_port_attempts: int
    auto_reclaim: bool
    auto_open: bool
    heartbeat_interval: float
    session_retention_seconds: float
    session_idle_timeout_seconds: float
    chat_timeout_seconds: float
    cancel_on_orphan: bool
    cleanup_on_signal: bool
    upstream_url: str
    panel_url: str
    transcript: bool


class DiscoverySettings(TypedDict, total=False):
    host: str
    candidate_ports: List[int]
    probe_timeout: float
    cache_ttl_seconds: float
    request_timeout: float


class ModelSettings(TypedDict, total=False):
    use_mock: bool
    default_model: str
    mock_chunk_delay: float
    request_timeout: float


class LoggingSettings(TypedDict, total=False):
    level: str
    json: bool


class AppConfig(TypedDict):
    relay: RelaySettings
    discovery: DiscoverySettings
    model: ModelSettings
    logging: LoggingSettings


class PartialAppConfig(TypedDict, total=False):
    relay: RelaySettings
    discovery: DiscoverySettings
    model: ModelSettings
    logging: LoggingSettings


# Candidate ports probed by front-end processes, most likely first.
DEFAULT_CANDIDATE_PORTS: List[int] = [60886, 60885, 60887, 60888]


# Default configuration values used to seed :class:`~config.Config`.
DEFAULT_CONFIG: AppConfig = {
    "relay": {
        "host": "127.0.0.1",
        "port": 60886,
        "websocket_port": None,
        "max_port_attempts": 10,
        "auto_reclaim": True,
        "auto_open": False,
        "heartbeat_interval": 5.0,
        "session_retention_seconds": 60.0,
        "session_idle_timeout_seconds": 900.0,
        "chat_timeout_seconds": 300.0,
        "cancel_on_orphan": True,
        "cleanup_on_signal": False,
        "upstream_url": "",
        "panel_url": "",
        "transcript": False,
    },
    "discovery": {
        "host": "localhost",
        "candidate_ports": list(DEFAULT_CANDIDATE_PORTS),
        "probe_timeout": 0.5,
        "cache_ttl_seconds": 300.0,
        "request_timeout": 30.0,
    },
    "model": {
        "use_mock": False,
        "default_model": "gpt-4o",
        "mock_chunk_delay": 0.03,
        "request_timeout": 60.0,
    },
    "logging": {
        "level": "INFO",
        "json": True,
    },
}


ENV_OVERRIDES: Dict[str, PartialAppConfig] = {
    "development": {
        "relay": {
            "cleanup_on_signal": True,
            "transcript": True,
        },
        "logging": {
            "level": "DEBUG",
        },
    },
    "testing": {
        "relay": {
            "auto_reclaim": False,
            "heartbeat_interval": 0.2,
            "session_retention_seconds": 1.0,
        },
        "discovery": {
            "probe_timeout": 0.2,
        },
        "model": {
            "use_mock": True,
            "mock_chunk_delay": 0.0,
        },
    },
    "production": {
        "relay": {
            "cleanup_on_signal": False,
        },
        "logging": {
            "level": "WARNING",
        },
    },
}
