"""Exponential backoff helpers with optional jitter.

Delay for retry number ``attempt`` (1-based) is
``min(max_seconds, base * factor ** (attempt - 1))``, i.e. the first retry waits
``base``. Platform calls and payment dispatch share this helper with their own
policy dictionaries.
"""
from __future__ import annotations

import random
from typing import Mapping, Optional

from settlement.config import PLATFORM_RETRY_POLICY


def compute_backoff_seconds(
    attempt: int,
    *,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_pct: Optional[float] = None,
    policy: Optional[Mapping[str, int | float]] = None,
) -> float:
    """Compute exponential backoff delay, capped, with jitter."""
    policy = policy or PLATFORM_RETRY_POLICY
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else policy["base_seconds"])
    factor = float(factor if factor is not None else policy["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else policy["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else policy.get("jitter_pct", 0.0))

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = min(random.uniform(delay - jitter_amount, delay + jitter_amount), max_seconds)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
