from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from ..utils import log_event


class BackgroundTasks:
    """Side effects that must not block a fix, but whose outcome is still tracked."""

    def __init__(self, max_workers: int = 4, logger: logging.Logger | None = None) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cronwatch-bg")
        self._futures: list[Future] = []
        self.logger = logger or logging.getLogger("cronwatch.background")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(lambda done: self._log_outcome(name, done))
        self._futures.append(future)
        return future

    def _log_outcome(self, name: str, future: Future) -> None:
        if future.cancelled():
            log_event(self.logger, logging.WARNING, "background_task_cancelled", task=name)
            return
        exc = future.exception()
        if exc is not None:
            log_event(self.logger, logging.WARNING, "background_task_failed", task=name, error=str(exc))
        else:
            log_event(self.logger, logging.DEBUG, "background_task_done", task=name)

    def drain(self, timeout: float) -> dict[str, int]:
        """Wait up to ``timeout`` seconds for submitted tasks and summarize them."""
        done, pending = wait(self._futures, timeout=timeout) if self._futures else (set(), set())
        failed = sum(1 for future in done if future.cancelled() or future.exception() is not None)
        return {
            "submitted": len(self._futures),
            "succeeded": len(done) - failed,
            "failed": failed,
            "pending": len(pending),
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
