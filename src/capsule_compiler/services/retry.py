from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence, TypeVar

T = TypeVar("T")

LOG = logging.getLogger("capsule.llm")

MAX_ATTEMPTS = 3
# Seconds slept before attempt n+1, indexed by the attempt that just failed.
RETRY_DELAYS: Sequence[float] = (0.0, 1.0, 3.0)


def with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    delays: Sequence[float] = RETRY_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds or ``max_attempts`` are spent.

    Every exception is retry-eligible. When all attempts fail the last
    exception is re-raised unchanged so callers can classify it.
    """
    last_error: Optional[Exception] = None
    for attempt in range(max_attempts):
        if attempt > 0:
            delay = delays[attempt - 1] if attempt - 1 < len(delays) else delays[-1]
            if delay > 0:
                sleep(delay)
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            LOG.warning("Attempt %d/%d failed: %s", attempt + 1, max_attempts, exc)
            if on_failure is not None:
                on_failure(attempt + 1, exc)
    if last_error is None:
        raise RuntimeError("All retry attempts failed")
    raise last_error
