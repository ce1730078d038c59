from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from habitsync.errors import RemoteTransientError

T = TypeVar("T")


def _noop_log(*_args) -> None:
    return None


class RetryPolicy:
    """Bounded exponential backoff for remote calls.

    Only `RemoteTransientError` is retried. Conflicts, expired tokens and fatal
    errors propagate on the first attempt so the caller can handle them.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_sec: float = 1.0,
        call_timeout_sec: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        log_func=None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts_must_be_positive")
        self.max_attempts = max_attempts
        self.base_delay_sec = base_delay_sec
        self.call_timeout_sec = call_timeout_sec
        self.sleep = sleep
        self.log_func = log_func or _noop_log

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based): 1, 2, 4, ... units."""
        return self.base_delay_sec * (2 ** (attempt - 1))

    def _call(self, operation: Callable[[], T]) -> T:
        if not self.call_timeout_sec:
            return operation()
        # A timed-out call keeps running on the worker thread; its result is discarded.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="habitsync-remote")
        try:
            future = pool.submit(operation)
            try:
                return future.result(timeout=self.call_timeout_sec)
            except FutureTimeout as e:
                raise RemoteTransientError("remote_call_timeout") from e
        finally:
            pool.shutdown(wait=False)

    def execute(self, operation: Callable[[], T], label: str = "remote_call") -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._call(operation)
            except RemoteTransientError as e:
                if attempt >= self.max_attempts:
                    self.log_func(
                        "ERROR",
                        "retry",
                        "retry_exhausted",
                        json.dumps({"label": label, "attempts": attempt, "error": str(e)}, ensure_ascii=False),
                    )
                    raise
                wait_sec = self.delay_for(attempt)
                self.log_func(
                    "WARNING",
                    "retry",
                    "transient_error_retrying",
                    json.dumps(
                        {"label": label, "attempt": attempt, "wait_sec": wait_sec, "error": str(e)},
                        ensure_ascii=False,
                    ),
                )
                self.sleep(wait_sec)
