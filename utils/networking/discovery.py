"""Locate a running relay from a front-end process."""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

import requests

from utils.config_schema import DEFAULT_CANDIDATE_PORTS

if TYPE_CHECKING:
    from config import Config

logger = logging.getLogger('modelbridge.discovery')

PREFERRED_PORT_VAR = 'MODELBRIDGE_RELAY_PORT'
HEALTH_PATH = '/api/health'


class NoServerFound(Exception):
    """No candidate port answered the health probe."""

    def __init__(self, attempted_ports: Iterable[int]):
        self.attempted_ports = list(attempted_ports)
        ports = ', '.join(str(port) for port in self.attempted_ports)
        super().__init__(f"No relay answered on ports: {ports}")


def _preferred_port_from_env() -> Optional[int]:
    raw = os.environ.get(PREFERRED_PORT_VAR, '').strip()
    if not raw:
        return None
    try:
        port = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value: %s", PREFERRED_PORT_VAR, raw)
        return None
    return port if 1 <= port <= 65535 else None


class ClientDiscovery:
    """
    Probes candidate ports for a live relay and caches the winner.

    The cached URL is reused without touching the network until it expires or
    a caller reports it stale through :meth:`invalidate`.
    """

    def __init__(
        self,
        candidate_ports: Optional[Iterable[int]] = None,
        host: str = 'localhost',
        *,
        probe_timeout: float = 0.5,
        cache_ttl: float = 300.0,
        preferred_port: Optional[int] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if preferred_port is None:
            preferred_port = _preferred_port_from_env()

        ordered: List[int] = []
        for port in ([preferred_port] if preferred_port else []) + list(candidate_ports or DEFAULT_CANDIDATE_PORTS):
            if port not in ordered:
                ordered.append(port)

        self.candidate_ports = ordered
        self.host = host
        self.probe_timeout = probe_timeout
        self.cache_ttl = cache_ttl
        self.session = session or requests.Session()
        self.probe_count = 0
        self._clock = clock
        self._cached_url: Optional[str] = None
        self._cached_at = 0.0
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: Optional['Config'] = None, **kwargs) -> 'ClientDiscovery':
        if config is None:
            from config import get_config
            config = get_config()
        settings = config.discovery_settings
        return cls(
            settings.get('candidate_ports'),
            settings.get('host', 'localhost'),
            probe_timeout=settings.get('probe_timeout', 0.5),
            cache_ttl=settings.get('cache_ttl_seconds', 300.0),
            **kwargs,
        )

    def url_for(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    @property
    def cached_base_url(self) -> Optional[str]:
        with self._lock:
            if self._cached_url is None:
                return None
            if self._clock() - self._cached_at >= self.cache_ttl:
                return None
            return self._cached_url

    def probe(self, base_url: str) -> bool:
        """Return True when ``base_url`` answers the health check with 200."""
        self.probe_count += 1
        try:
            response = self.session.get(f"{base_url}{HEALTH_PATH}", timeout=self.probe_timeout)
        except requests.RequestException as exc:
            logger.debug("Probe of %s failed: %s", base_url, exc)
            return False
        return response.status_code == 200

    def resolve_base_url(self) -> str:
        """Return the relay URL, probing candidates in order when nothing is cached."""
        with self._lock:
            cached = self.cached_base_url
            if cached is not None:
                return cached

            for port in self.candidate_ports:
                url = self.url_for(port)
                if self.probe(url):
                    self._cached_url = url
                    self._cached_at = self._clock()
                    logger.info("Discovered relay at %s", url)
                    return url

            self._cached_url = None
            logger.warning("No relay found on ports %s", self.candidate_ports)
            raise NoServerFound(self.candidate_ports)

    def invalidate(self) -> None:
        with self._lock:
            if self._cached_url is not None:
                logger.info("Forgetting cached relay URL %s", self._cached_url)
            self._cached_url = None
            self._cached_at = 0.0

    def validate_cached(self) -> bool:
        """Health-check the cached URL, forgetting it when the relay is gone."""
        with self._lock:
            cached = self.cached_base_url
            if cached is None:
                return False
            if self.probe(cached):
                return True
            self.invalidate()
            return False
