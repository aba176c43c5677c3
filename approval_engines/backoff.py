"""
approval_engines.backoff -- Exponential backoff arithmetic for event redelivery.

``attempt`` counts failed deliveries so far, starting at 0, so the first
retry waits ``base`` seconds and each later one doubles until ``cap``.
"""

from __future__ import annotations

from datetime import datetime, timedelta

# 2**62 seconds is already far past any sensible cap
_MAX_EXPONENT = 62


def compute_backoff_seconds(attempt: int, base: float, cap: float) -> float:
    """``min(base * 2**attempt, cap)``.

    Raises:
        ValueError: on a negative attempt, non-positive base, or cap < base.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    if base <= 0:
        raise ValueError(f"base must be > 0, got {base}")
    if cap < base:
        raise ValueError(f"cap ({cap}) must be >= base ({base})")
    return min(base * (2 ** min(attempt, _MAX_EXPONENT)), cap)


def next_attempt_at(now: datetime, attempt: int, base: float, cap: float) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(attempt, base, cap))
