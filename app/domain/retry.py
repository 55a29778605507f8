import random
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_next_run(
    retry_count: int,
    base_delay_seconds: float = 2.0,
    max_delay_seconds: float = 60.0,
    jitter: bool = True,
    now: datetime | None = None,
) -> datetime:
    """
    Calculates when a failed job becomes claimable again, using exponential backoff
    with optional jitter.

    Formula:
        delay = min(base * (2 ^ (retry_count - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        retry_count: The retry about to be scheduled (1 for the first retry).
        base_delay_seconds: Delay of the first retry. 0 makes retries immediate.

    Returns:
        datetime: The timezone-aware (UTC) time the job becomes available.
    """
    now = now or utcnow()
    if base_delay_seconds <= 0:
        return now

    # 2^20 seconds is ~11 days, well past any sane max_delay.
    exponent = min(max(retry_count - 1, 0), 20)
    delay = min(base_delay_seconds * (2 ** exponent), max_delay_seconds)

    if jitter:
        # Up to 10% jitter to avoid retry stampedes
        delay += random.uniform(0, delay * 0.1)

    return now + timedelta(seconds=delay)
