"""Bounded retry wrapper for recoverable inscription failures."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from .errors import InscriptionError, to_inscription_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Exponential backoff with a little jitter for attempt ``attempt`` (0-based)."""

    return base_delay * (2**attempt) + random.uniform(0, 0.5) * base_delay


def with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_retry: Callable[[int, InscriptionError], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` until it succeeds or fails with a non-recoverable error.

    Foreign exceptions are wrapped with :func:`to_inscription_error` and
    treated as non-recoverable. The last error is re-raised once
    ``max_attempts`` is exhausted.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            error = to_inscription_error(exc)
            last_attempt = attempt + 1 >= max_attempts
            if not error.recoverable or last_attempt:
                if error is exc:
                    raise
                raise error from exc
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "Attempt %d/%d failed with %s; retrying in %.2fs",
                attempt + 1,
                max_attempts,
                error.code.value,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, error)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
