"""Exponential backoff for transient provider errors."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .config import RetryPolicy
from .models import TransientProviderError

LOG = logging.getLogger("certbind_ctl")

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` and retry on TransientProviderError with exponential backoff."""
    for attempt in range(1, policy.attempts + 1):
        try:
            return func()
        except TransientProviderError as exc:
            if attempt == policy.attempts:
                LOG.error("%s failed after %s attempts: %s", description, attempt, exc)
                raise
            delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
            LOG.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                description,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            sleep(delay)
    raise TransientProviderError(f"{description} was never attempted.")  # pragma: no cover
