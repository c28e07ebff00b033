# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable, Optional


class RetryError(RuntimeError):
    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


def retry(
    *,
    retries: int,
    delay: float,
    backoff: float = 1.0,
    max_delay: Optional[float] = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Retry decorator for idempotent operations and polling loops.

    retries: number of attempts
    delay: seconds before the second attempt
    backoff: multiplier applied to the delay after each attempt (1.0 = fixed)
    max_delay: cap for the growing delay
    retry_on: exception types to retry
    on_retry: callback(attempt, exception)
    sleep: injectable for tests
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            wait = delay
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == retries:
                        break
                    sleep(wait)
                    wait = wait * backoff
                    if max_delay is not None:
                        wait = min(wait, max_delay)
            raise RetryError(f"{fn.__name__} failed after {retries} attempts: {last_exc}", retries) from last_exc
        return wrapper
    return decorator
