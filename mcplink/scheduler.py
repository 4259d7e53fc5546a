"""Background scheduler for connection attempts and retry timers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def retry_delay(attempt: int, initial: float = 5.0, maximum: float = 300.0) -> float:
    """Exponential backoff: initial * 2^(attempt-1), capped at maximum."""
    if attempt < 1:
        attempt = 1
    return min(initial * (2 ** (attempt - 1)), maximum)


class RetryScheduler:
    """
    Small fixed pool of workers plus cancellable timers.

    Timers are keyed (one pending timer per server id); scheduling a key that
    already has a pending timer replaces it. Work never runs on the caller's
    thread, so scheduling returns immediately.
    """

    def __init__(self, workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max(workers, 2), thread_name_prefix="mcplink-worker")
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        """Run fn on a worker as soon as one is free."""
        with self._lock:
            if self._closed:
                logger.debug("Scheduler closed; dropping submitted work")
                return None
            return self._executor.submit(_run_logged, fn, *args)

    def schedule(self, key: str, delay: float, fn: Callable[..., Any], *args: Any) -> None:
        """Run fn on a worker after delay seconds unless cancelled first."""

        def fire() -> None:
            with self._lock:
                if self._timers.get(key) is not timer:
                    return
                del self._timers[key]
                if self._closed:
                    return
                self._executor.submit(_run_logged, fn, *args)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        timer.name = f"mcplink-timer-{key}"

        with self._lock:
            if self._closed:
                logger.debug(f"Scheduler closed; not scheduling {key}")
                return
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
            timer.start()

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._timers.keys())

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()

        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)


def _run_logged(fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except Exception:
        logger.exception(f"Background task {getattr(fn, '__name__', fn)!r} failed")
        raise
