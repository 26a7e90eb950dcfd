"""Wait for an instrument condition with a deadline."""

import time
from typing import Callable

from loguru import logger

from tipshaper.types import NanonisTimeout


def poll_until(
    condition: Callable[[], bool],
    timeout: float,
    interval: float = 0.1,
    description: str = "condition",
) -> None:
    """Call `condition` every `interval` seconds until it returns truthy.

    Exceptions raised by `condition` propagate unchanged.

    Raises
    ------
    NanonisTimeout
        If `condition` is still falsy after `timeout` seconds.
    """
    deadline = time.monotonic() + timeout
    n_polls = 0
    while True:
        n_polls += 1
        if condition():
            logger.trace("{} met after {} polls", description, n_polls)
            return
        if time.monotonic() >= deadline:
            raise NanonisTimeout(
                f"Timed out after {timeout:.1f}s waiting for {description}"
            )
        time.sleep(interval)
