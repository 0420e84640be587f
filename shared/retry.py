"""Bounded retry with a fixed backoff, shared by every GitHub API call."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 2
DEFAULT_DELAY_S = 3.0


def retry_call(
    func: Callable[[], T],
    *,
    retries: int = DEFAULT_RETRIES,
    delay_s: float = DEFAULT_DELAY_S,
    should_retry: Callable[[Exception], bool] = lambda exc: True,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call *func*, retrying up to *retries* extra times on failure.

    Exceptions for which *should_retry* returns False propagate immediately.
    The last exception propagates once the budget is spent.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except Exception as exc:
            if attempt > retries or not should_retry(exc):
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s, retrying in %.1fs",
                label, attempt, retries + 1, exc, delay_s,
            )
            sleep(delay_s)
