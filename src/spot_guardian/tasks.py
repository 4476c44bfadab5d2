"""
Thread-based scheduling: periodic loops and a runner for detached work.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Runs detached jobs on a small pool; failures are logged when the job ends."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="background")
        self._lock = threading.Lock()
        self._futures: set[Future] = set()

    def spawn(self, name: str, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(fn, *args)
        with self._lock:
            self._futures.add(future)

        def _done(f: Future) -> None:
            with self._lock:
                self._futures.discard(f)
            error = f.exception()
            if error is not None:
                logger.error("Background task %s failed: %s", name, error, exc_info=error)

        future.add_done_callback(_done)
        return future

    def wait_all(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            pending = list(self._futures)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already logged by the done callback.
                continue

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class PeriodicTask(threading.Thread):
    """Calls ``func`` immediately, then every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], Any]):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.func = func
        self._stop_event = threading.Event()

    def run(self) -> None:
        logger.info("Starting %s (every %ss)", self.name, self.interval)
        while not self._stop_event.is_set():
            try:
                self.func()
            except Exception:
                logger.exception("%s failed", self.name)
            self._stop_event.wait(self.interval)

    def stop(self) -> None:
        self._stop_event.set()
