"""Fixed-delay retries for network calls."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

import requests

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 5.0


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    retry_on: tuple[type[BaseException], ...] = (requests.RequestException,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "request",
) -> T:
    """Call *func* up to *attempts* times, sleeping *delay* seconds between tries.

    Only exceptions listed in *retry_on* are retried; the last one is re-raised
    once the attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt == attempts:
                raise
            LOGGER.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.0fs",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["DEFAULT_ATTEMPTS", "DEFAULT_DELAY", "retry_call"]
