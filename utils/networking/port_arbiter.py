"""Port reservation for the relay: find, claim and forcibly reclaim TCP ports."""
from __future__ import annotations

import logging
import os
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import psutil

logger = logging.getLogger('modelbridge.ports')

ConfirmCallback = Callable[[int, List[int]], bool]

MIN_PORT = 1
MAX_PORT = 65535


class PortError(Exception):
    """Base class for port arbitration failures."""


class NoPortAvailable(PortError):
    """Raised when no free port exists within the attempt budget."""

    def __init__(self, base_port: int, attempts: int):
        self.base_port = base_port
        self.attempts = attempts
        super().__init__(
            f"No available port found in {attempts} attempt(s) starting from {base_port}"
        )


class PortBusyRequiresConfirmation(PortError):
    """Raised when a busy port may only be reclaimed with the operator's consent."""

    def __init__(self, port: int, holders: List[int]):
        self.port = port
        self.holders = list(holders)
        super().__init__(
            f"Port {port} is in use by {len(self.holders)} process(es) and reclaiming it was not confirmed"
        )


@dataclass(frozen=True)
class PortReservation:
    """A port claimed by this process."""

    port: int
    requested_port: int
    owner_pid: int = field(default_factory=os.getpid)
    reserved_at: float = field(default_factory=time.time)

    @property
    def substituted(self) -> bool:
        return self.port != self.requested_port


def prompt_confirmation(port: int, holders: List[int]) -> bool:
    """Ask on the terminal before killing whatever holds ``port``.

    Non-interactive processes always decline.
    """
    stdin = sys.stdin
    if stdin is None or not stdin.isatty():
        logger.warning(
            "Port %s is held by %s; declining to terminate without an interactive terminal",
            port, holders,
        )
        return False

    pids = ", ".join(str(pid) for pid in holders)
    answer = input(
        f"Port {port} is already in use by {len(holders)} process(es) (PIDs: {pids}). Kill them? [y/N] "
    )
    return answer.strip().lower() in {'y', 'yes'}


class PortArbiter:
    """
    Guarantees the relay binds to a usable port without colliding with stale processes.

    Every successful :meth:`reserve` lands in the reservation set so that the
    cleanup coordinator can release it at shutdown. One arbiter is created per
    process and handed to the components that need it.
    """

    def __init__(
        self,
        host: str = '127.0.0.1',
        *,
        max_attempts: int = 10,
        confirm: Optional[ConfirmCallback] = None,
        terminate_timeout: float = 3.0,
    ):
        self.host = host
        self.max_attempts = max_attempts
        self.confirm = confirm or prompt_confirmation
        self.terminate_timeout = terminate_timeout
        self._reservations: Dict[int, PortReservation] = {}
        self._lock = threading.RLock()

    @property
    def reserved_ports(self) -> Tuple[int, ...]:
        with self._lock:
            return tuple(self._reservations)

    def reservation(self, port: int) -> Optional[PortReservation]:
        with self._lock:
            return self._reservations.get(port)

    def holders(self, port: int) -> List[int]:
        """Return the PIDs listening on ``port``."""
        try:
            connections = psutil.net_connections(kind='inet')
        except psutil.AccessDenied:
            logger.debug("Not permitted to enumerate sockets while inspecting port %s", port)
            return []

        pids: List[int] = []
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.status != psutil.CONN_LISTEN or conn.pid is None:
                continue
            if conn.pid not in pids:
                pids.append(conn.pid)
        return pids

    def _bind_probe(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            if os.name != 'nt':
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, port))
            except OSError:
                return False
        return True

    def is_available(self, port: int) -> bool:
        """Return True when nothing listens on ``port`` and it is not reserved here."""
        if not MIN_PORT <= port <= MAX_PORT:
            return False
        with self._lock:
            if port in self._reservations:
                return False
        if self.holders(port):
            return False
        return self._bind_probe(port)

    def find_available(self, base_port: int, max_attempts: Optional[int] = None) -> int:
        """Return the first free port in ``base_port .. base_port + max_attempts - 1``."""
        attempts = self.max_attempts if max_attempts is None else max_attempts
        for offset in range(attempts):
            port = base_port + offset
            if port > MAX_PORT:
                break
            if self.is_available(port):
                return port
        raise NoPortAvailable(base_port, attempts)

    def _terminate(self, pid: int, port: int) -> None:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.terminate_timeout)
            except psutil.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=self.terminate_timeout)
        except psutil.NoSuchProcess:
            logger.info("Process %s holding port %s already exited", pid, port)
            return
        logger.warning("Killed process %s on port %s", pid, port)

    def reclaim(self, port: int, force: bool = False) -> bool:
        """
        Free ``port`` by terminating the processes listening on it.

        Without ``force`` the confirmation callback must approve first; a decline
        returns False. Termination is best-effort per PID, and the final
        availability check decides the result. The current process is never
        terminated.
        """
        holders = [pid for pid in self.holders(port) if pid != os.getpid()]
        if not holders:
            return self._bind_probe(port)

        if not force and not self.confirm(port, holders):
            declined = PortBusyRequiresConfirmation(port, holders)
            logger.warning("%s", declined)
            return False

        for pid in holders:
            try:
                self._terminate(pid, port)
            except (psutil.Error, OSError):
                logger.error("Failed to kill process %s on port %s", pid, port, exc_info=True)

        return not self.holders(port) and self._bind_probe(port)

    def reserve(self, port: int, auto_reclaim: bool = True) -> PortReservation:
        """
        Claim ``port`` for this process, reclaiming or substituting it when busy.

        Raises:
            PortBusyRequiresConfirmation: the port is busy and ``auto_reclaim`` is off
            NoPortAvailable: no alternative port exists after a failed reclaim
        """
        with self._lock:
            chosen = port
            if not self.is_available(port):
                own = port in self._reservations
                if not own and not auto_reclaim:
                    raise PortBusyRequiresConfirmation(port, self.holders(port))
                if own or not self.reclaim(port, force=False):
                    chosen = self.find_available(port + 1)
                    logger.warning("Port %s is busy. Using alternative port %s.", port, chosen)

            reservation = PortReservation(port=chosen, requested_port=port)
            self._reservations[chosen] = reservation
            logger.info("Reserved port %s", chosen)
            return reservation

    def release(self, port: int) -> bool:
        """Drop ``port`` from the reservation set without touching its holders."""
        with self._lock:
            return self._reservations.pop(port, None) is not None

    def release_all(self, force: bool = True) -> None:
        """Reclaim every reserved port and empty the reservation set."""
        with self._lock:
            ports = list(self._reservations)
            self._reservations.clear()

        for port in ports:
            try:
                self.reclaim(port, force=force)
            except (psutil.Error, OSError):
                logger.error("Failed to free port %s", port, exc_info=True)

    def stats(self) -> Dict[str, List]:
        """Introspection: reserved ports and which of them currently have listeners."""
        reserved = list(self.reserved_ports)
        busy = []
        for port in reserved:
            pids = self.holders(port)
            if pids:
                busy.append({'port': port, 'holders': pids})
        return {'reserved': reserved, 'busy': busy}
