"""Cooperative cancellation and time-boxed execution for staged loads."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from services.errors import StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Flag checked before each outgoing request.

    Cancelling a token also cancels every token derived from it with
    ``child()``; cancelling a child leaves the parent untouched.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)


def run_with_timeout(fn: Callable[[], T], timeout_seconds: float, stage: str,
                     token: Optional[CancellationToken] = None) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout_seconds``.

    On timeout the worker is abandoned, ``token`` is cancelled so the worker
    stops issuing requests, and StageTimeoutError is raised. Exceptions from
    ``fn`` propagate unchanged.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage}")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        if future.done():
            raise
        if token is not None:
            token.cancel(f"{stage} timed out")
        logger.warning(f"[Stage] {stage} timed out after {timeout_seconds:g}s")
        raise StageTimeoutError(stage, timeout_seconds)
    finally:
        executor.shutdown(wait=False)
