"""Fire-and-forget execution of side effects.

Each task runs on a worker thread inside its own error boundary, and inside an
application context when the dispatcher is bound to a Flask app. Callers never
receive a handle; ``flush`` exists so tests can wait for pending work.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait

_LOGGER = logging.getLogger(__name__)


class TaskDispatcher:
    def __init__(self, app=None, max_workers: int = 4):
        self.app = app
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="stove-side-effect")
        self._pending = set()
        self._lock = threading.Lock()

    def spawn(self, name: str, func, *args, **kwargs) -> None:
        future = self._executor.submit(self._run, name, func, args, kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future):
        with self._lock:
            self._pending.discard(future)

    def _run(self, name, func, args, kwargs):
        try:
            if self.app is not None:
                with self.app.app_context():
                    return func(*args, **kwargs)
            return func(*args, **kwargs)
        except Exception:
            _LOGGER.exception("Side effect %s failed", name)
            return None

    def flush(self, timeout: float = 10.0) -> None:
        """Wait until every task spawned so far, and tasks they spawn, finish."""
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return
            done, not_done = wait(pending, timeout=timeout)
            if not_done:
                _LOGGER.warning("%d side effects still running after %.1fs", len(not_done), timeout)
                return

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
