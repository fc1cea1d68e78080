"""
Exponential backoff shared by the provider clients and the room executor.

delay = min(base * 2^(attempt-1), cap) + jitter, never below Retry-After.
"""

import random
from typing import Optional

# ── Retry configuration ──────────────────────────────────────────────────────
BASE_DELAY = 1.0        # seconds, doubled on each retry
MAX_DELAY = 30.0        # cap before jitter
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def backoff_delay(
    attempt: int,
    base: float = BASE_DELAY,
    cap: float = MAX_DELAY,
    jitter: float = JITTER_MAX,
    retry_after: Optional[float] = None,
) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = min(base * (2 ** max(attempt - 1, 0)), cap)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if value and value.strip().isdigit():
        return float(value.strip())
    return None
