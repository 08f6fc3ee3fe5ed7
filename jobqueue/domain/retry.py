from datetime import datetime, timedelta, timezone
from typing import Optional

DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_BACKOFF_MAX_MS = 60000

def calculate_backoff_ms(
    attempts: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    max_ms: int = DEFAULT_BACKOFF_MAX_MS,
) -> int:
    """
    Delay before a failed job becomes visible again.

    Formula:
        delay = min(base * (2 ^ attempts), max)

    Args:
        attempts: Number of times the job has been received so far.
                  attempts=1 means "we failed once, when should we try again?"
    """
    if attempts < 0:
        attempts = 0

    # 2^20 * base is far beyond any sane cap, keep the exponent bounded.
    safe_attempts = min(attempts, 20)

    return min(base_ms * (2 ** safe_attempts), max_ms)

def calculate_next_run(
    attempts: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    max_ms: int = DEFAULT_BACKOFF_MAX_MS,
    now: Optional[datetime] = None,
) -> datetime:
    """Absolute (UTC) time at which a retried job becomes visible."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(milliseconds=calculate_backoff_ms(attempts, base_ms, max_ms))
