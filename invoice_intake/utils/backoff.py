"""Exponential retry backoff for the ingest queue."""

from datetime import datetime, timedelta, timezone


def backoff_delay(
    attempts: int,
    base_seconds: float = 120.0,
    cap_seconds: float = 3600.0,
) -> float:
    """Delay before the next try after ``attempts`` failures.

    ``min(base * 2 ** (attempts - 1), cap)``: with the defaults attempts
    1..4 wait 2, 4, 8 and 16 minutes and attempt 6 onward waits an hour.

    Args:
        attempts: Failures so far, counting the one just recorded.
        base_seconds: Delay after the first failure.
        cap_seconds: Upper bound for any delay.

    Returns:
        Delay in seconds.
    """
    if attempts < 1:
        return 0.0
    # cap the exponent so huge attempt counts cannot overflow the float
    exponent = min(attempts - 1, 62)
    return min(base_seconds * (2**exponent), cap_seconds)


def next_retry_at(
    attempts: int,
    base_seconds: float = 120.0,
    cap_seconds: float = 3600.0,
    now: datetime | None = None,
) -> datetime:
    """Absolute UTC time at which a failed item becomes due again."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=backoff_delay(attempts, base_seconds, cap_seconds))
