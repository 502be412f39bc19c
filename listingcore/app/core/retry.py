from __future__ import annotations

import logging
import random
import time
from typing import Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def backoff_delay(backoff_base: float, attempt: int) -> float:
    """Exponential backoff with a little jitter, attempt is zero-based."""
    return backoff_base * (2 ** attempt) + random.uniform(0, 0.3)


def call_with_retry(
    fn: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    max_attempts: int = 3,
    backoff_base: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` retrying on ``retry_on`` errors; the last error propagates."""
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts - 1:
                raise
            delay = backoff_delay(backoff_base, attempt)
            logger.warning("transient failure (%s), retrying in %.2fs", exc, delay)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
