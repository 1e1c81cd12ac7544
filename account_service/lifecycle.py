from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Callable, Iterable, List, Optional, Set


logger = logging.getLogger(__name__)

ShutdownHandler = Callable[[], None]

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Lifecycle:
    """Process-wide shutdown coordinator.

    Handlers registered with :meth:`on_shutdown` run once, in registration
    order, the first time :meth:`shutdown` is called (directly, from the
    API lifespan, or from a signal). Later calls are no-ops.
    """

    def __init__(self) -> None:
        self._handlers: List[ShutdownHandler] = []
        self._lock = threading.Lock()
        self._shutting_down = False
        self._installed: Set[int] = set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def on_shutdown(self, handler: ShutdownHandler) -> None:
        with self._lock:
            if self._shutting_down:
                raise RuntimeError("cannot register a shutdown handler after shutdown started")
            self._handlers.append(handler)

    def shutdown(self, reason: str = "shutdown") -> bool:
        """Run every handler once. Returns False if shutdown already ran."""
        with self._lock:
            if self._shutting_down:
                return False
            self._shutting_down = True
            handlers = list(self._handlers)

        logger.info("%s received. Shutting down gracefully...", reason)
        for handler in handlers:
            try:
                handler()
            except Exception:
                logger.exception("shutdown handler %r failed", handler)
        logger.info("Shutdown complete")
        return True

    def install_signal_handlers(self, signals: Iterable[int] = DEFAULT_SIGNALS) -> List[int]:
        """Install the shutdown handler for each signal, at most once per signal.

        Returns the signals newly installed by this call.
        """
        added: List[int] = []
        with self._lock:
            for sig in signals:
                if sig in self._installed:
                    continue
                signal.signal(sig, self._handle_signal)
                self._installed.add(sig)
                added.append(sig)
        return added

    def _handle_signal(self, signum: int, frame: object) -> None:
        self.shutdown(signal.Signals(signum).name)
        sys.exit(0)


_lifecycle: Optional[Lifecycle] = None
_lifecycle_lock = threading.Lock()


def get_lifecycle() -> Lifecycle:
    """The single Lifecycle for this process, created on first use."""
    global _lifecycle
    with _lifecycle_lock:
        if _lifecycle is None:
            _lifecycle = Lifecycle()
        return _lifecycle
