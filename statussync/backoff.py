"""Capped exponential backoff with jitter, shared by reconnects and re-fetches."""

from __future__ import annotations

import random


def backoff_delay(attempt: int, base: float, cap: float, jitter: bool = True) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    delay = base * 2^(attempt-1) + random jitter of up to half that,
    never more than ``cap``.
    """
    if attempt < 1:
        attempt = 1
    # Bound the exponent so huge attempt counts cannot overflow
    exp = min(attempt - 1, 32)
    delay = base * (2 ** exp)
    if jitter:
        delay += random.uniform(0, delay * 0.5)
    return min(delay, cap)
