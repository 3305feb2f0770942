"""Exactly-once shutdown of relay resources."""
from __future__ import annotations

import atexit
import logging
import os
import signal
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from utils.networking.port_arbiter import PortArbiter

logger = logging.getLogger('modelbridge.cleanup')

CleanupCallback = Callable[[], Any]


def _default_signals() -> Tuple[int, ...]:
    names = ('SIGINT', 'SIGTERM', 'SIGHUP')
    return tuple(getattr(signal, name) for name in names if hasattr(signal, name))


class CleanupCoordinator:
    """
    Runs registered cleanup callbacks once, then frees every reserved port.

    Callbacks run in registration order. A failing callback is logged and the
    remaining ones still run. Triggers (signals, ``atexit``, explicit calls)
    may race; only the first one does any work.
    """

    def __init__(self, arbiter: Optional[PortArbiter] = None):
        self.arbiter = arbiter
        self._callbacks: List[Tuple[str, CleanupCallback]] = []
        self._lock = threading.Lock()
        self._done = False
        self._previous_handlers: Dict[int, Any] = {}
        self._atexit_installed = False

    @property
    def has_run(self) -> bool:
        with self._lock:
            return self._done

    @property
    def callback_names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self._callbacks]

    def register_cleanup(self, callback: CleanupCallback, name: Optional[str] = None) -> None:
        label = name or getattr(callback, '__name__', repr(callback))
        with self._lock:
            if self._done:
                logger.warning("Cleanup already ran; %s will not be called", label)
                return
            self._callbacks.append((label, callback))

    def run_cleanup(self) -> bool:
        """Run the shutdown sequence. Returns False if it had already run."""
        with self._lock:
            if self._done:
                return False
            self._done = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        logger.info("Running %s cleanup callback(s)", len(callbacks))
        for name, callback in callbacks:
            try:
                callback()
            except Exception:
                logger.error("Cleanup callback %s failed", name, exc_info=True)

        if self.arbiter is not None:
            ports = self.arbiter.reserved_ports
            try:
                self.arbiter.release_all(force=True)
            except Exception:
                logger.error("Failed to release reserved ports %s", list(ports), exc_info=True)
            else:
                if ports:
                    logger.info("Released reserved ports %s", list(ports))
        return True

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("Received signal %s; cleaning up", signum)
        self.run_cleanup()

        previous = self._previous_handlers.get(signum)
        if callable(previous) and previous not in (signal.SIG_DFL, signal.SIG_IGN):
            previous(signum, frame)
            return

        if previous in (signal.SIG_DFL, None):
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    def install_signal_handlers(self, signals: Optional[Iterable[int]] = None) -> List[int]:
        """Route termination signals through :meth:`run_cleanup`, chaining to prior handlers."""
        installed: List[int] = []
        for sig in signals if signals is not None else _default_signals():
            try:
                previous = signal.getsignal(sig)
                signal.signal(sig, self._handle_signal)
            except (OSError, RuntimeError, ValueError):
                logger.debug("Could not install cleanup handler for signal %s", sig)
                continue
            self._previous_handlers[sig] = previous
            installed.append(sig)
        return installed

    def restore_signal_handlers(self) -> None:
        for sig, previous in list(self._previous_handlers.items()):
            try:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
            except (OSError, RuntimeError, ValueError):
                logger.debug("Could not restore handler for signal %s", sig)
        self._previous_handlers.clear()

    def install_atexit(self) -> None:
        if self._atexit_installed:
            return
        atexit.register(self.run_cleanup)
        self._atexit_installed = True
