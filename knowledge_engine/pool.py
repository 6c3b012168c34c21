"""
Cancellation tokens and the bounded worker pool used for batch embedding.

The pool is the one place the engine manages its own parallelism: at most
``concurrency`` calls are in flight, the first failure stops queued work,
and results come back in input order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence, TypeVar

from .errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancelToken:
    """
    Cooperative cancellation flag with an optional deadline.

    Parameters
    ----------
    timeout:
        Seconds from now after which the token counts as cancelled.
        ``None`` means no deadline.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = (time.monotonic() + timeout) if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError("Operation cancelled or deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early (and raising) on cancellation."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        self.raise_if_cancelled()


def check_token(token: Optional[CancelToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


def map_bounded(
    fn: Callable[[T], R],
    items: Sequence[T],
    concurrency: int = 4,
    token: Optional[CancelToken] = None,
) -> list[R]:
    """
    Apply *fn* to every item with at most *concurrency* calls in flight.

    Parameters
    ----------
    fn:
        Blocking callable, typically a provider request.
    items:
        Inputs; output order matches input order.
    concurrency:
        Maximum number of worker threads.
    token:
        Optional :class:`CancelToken`.  Once cancelled no new item starts;
        calls already on the wire are allowed to finish.

    Returns
    -------
    list
        ``[fn(item) for item in items]``.

    Raises
    ------
    Exception
        The first failure raised by *fn* (by completion time).  Queued items
        are never started once a failure is seen.
    """
    if not items:
        return []
    check_token(token)

    workers = max(1, min(concurrency, len(items)))
    if workers == 1:
        results: list[R] = []
        for item in items:
            check_token(token)
            results.append(fn(item))
        return results

    stop = threading.Event()

    def _run(item: T) -> R:
        if stop.is_set():
            raise OperationCancelledError("Worker pool stopped before item started")
        check_token(token)
        return fn(item)

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kb-embed")
    futures: list[Future] = []
    try:
        futures = [executor.submit(_run, item) for item in items]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        errors = [f.exception() for f in futures if f in done and f.exception() is not None]
        if errors:
            stop.set()
            for fut in pending:
                fut.cancel()
            # Prefer a real failure over a follow-on stop signal.
            real = [e for e in errors if not isinstance(e, OperationCancelledError)]
            first_error = real[0] if real else errors[0]
            logger.debug("Worker pool aborted: %s", first_error)
            raise first_error
        return [fut.result() for fut in futures]
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
