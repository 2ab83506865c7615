import random
from datetime import datetime, timedelta
from typing import Optional

from orchestrator.utils.time import utcnow

def backoff_delay_seconds(
    attempts: int,
    base_delay_seconds: int = 60,
    max_delay_seconds: int = 1800,
    jitter: bool = True
) -> float:
    """
    Exponential backoff with optional jitter.

    Formula:
        delay = min(base * (2 ^ attempts), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    attempts is the number of failed attempts so far; attempts <= 0 gives the base delay.
    """
    if attempts < 0:
        attempts = 0

    # 2^20 base units already exceeds any sane max_delay.
    safe_attempts = min(attempts, 20)

    delay = base_delay_seconds * (2 ** safe_attempts)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% to spread out retries that failed together
        delay += random.uniform(0, delay * 0.1)

    return delay

def calculate_next_run(
    attempts: int,
    base_delay_seconds: int = 60,
    max_delay_seconds: int = 1800,
    jitter: bool = True,
    now: Optional[datetime] = None
) -> datetime:
    """Returns the time a job that has failed `attempts` times becomes claimable again."""
    start = now or utcnow()
    delay = backoff_delay_seconds(attempts, base_delay_seconds, max_delay_seconds, jitter)
    return start + timedelta(seconds=delay)

def has_attempts_remaining(attempts: int, max_attempts: int) -> bool:
    return attempts < max_attempts
