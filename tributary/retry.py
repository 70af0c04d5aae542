from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from tributary.errors import ErrorKind, TributaryError

T = TypeVar("T")


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_delay_s * (2 ** attempt)


def with_retry(
    operation: Callable[[], T],
    max_retries: int,
    base_delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, TributaryError], None]] = None,
) -> T:
    """
    Run operation, retrying transient TributaryErrors (NETWORK, TIMEOUT).
    Non-transient errors propagate immediately.
    After max_retries retries the last error is re-raised, escalated to TIMEOUT
    when every attempt timed out.
    """
    last: Optional[TributaryError] = None
    all_timeouts = True
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except TributaryError as e:
            if not e.transient:
                raise
            last = e
            all_timeouts = all_timeouts and e.kind == ErrorKind.TIMEOUT
            if attempt == max_retries:
                break
            if on_retry:
                on_retry(attempt + 1, e)
            sleep(backoff_delay(base_delay_s, attempt))

    assert last is not None
    kind = ErrorKind.TIMEOUT if all_timeouts else ErrorKind.NETWORK
    details = dict(last.details)
    details["attempts"] = max_retries + 1
    raise TributaryError(
        kind,
        f"Operation failed after {max_retries + 1} attempts: {last.message}",
        details,
    ) from last
