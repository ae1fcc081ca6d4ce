"""
Process signal forwarding for foreground sessions

A SignalListener turns SIGINT, SIGTERM and SIGHUP into calls to a callback
instead of terminating the process. Handlers can only be installed from the
main thread; the previous handlers are restored on uninstall.

The handler itself only queues the signal number. A worker thread runs the
callback, so the callback may take locks the interrupted code is holding.
"""

import queue
import signal
import logging
import threading
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

_STOP = object()


class SignalListener:
    """Forwards termination signals to a callback while installed"""

    def __init__(self, callback: Optional[Callable[[int], None]] = None, signals=DEFAULT_SIGNALS):
        self.callback = callback
        self.signals = tuple(signals)
        self._previous: Dict[int, object] = {}
        self._pending = queue.SimpleQueue()
        self._worker: Optional[threading.Thread] = None

    @property
    def installed(self) -> bool:
        return self._worker is not None

    def install(self, callback: Optional[Callable[[int], None]] = None) -> 'SignalListener':
        if callback is not None:
            self.callback = callback
        if self.installed:
            return self
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Signal handlers can only be installed from the main thread")
            return self
        self._worker = threading.Thread(target=self._deliver, name="signal-listener", daemon=True)
        self._worker.start()
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle)
        logger.debug(f"Installed handlers for {[signal.Signals(s).name for s in self.signals]}")
        return self

    def uninstall(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        worker, self._worker = self._worker, None
        if worker is not None:
            self._pending.put(_STOP)
            if worker is not threading.current_thread():
                worker.join(timeout=5)

    def _handle(self, signum, frame):
        # SimpleQueue.put is reentrant; nothing else may run here.
        self._pending.put(signum)

    def _deliver(self):
        while True:
            signum = self._pending.get()
            if signum is _STOP:
                return
            logger.info(f"Received {signal.Signals(signum).name}")
            callback = self.callback
            if callback is None:
                continue
            try:
                callback(signum)
            except Exception:
                logger.exception(f"Signal callback failed for {signal.Signals(signum).name}")

    def __enter__(self):
        return self.install()

    def __exit__(self, exc_type, exc, tb):
        self.uninstall()
        return False
