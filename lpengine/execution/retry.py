from __future__ import annotations

import random


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float, jitter: bool = False) -> float:
    """Exponential backoff for ``attempt`` (0-based), capped at ``max_delay``."""
    delay = min(base_delay * (2**attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()  # +/-50% jitter
    return delay
