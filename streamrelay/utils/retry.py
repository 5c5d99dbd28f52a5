"""Exponential backoff with jitter."""

import random


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay to wait before retry number `attempt` (1-based).

    Args:
        attempt: How many attempts have failed so far.
        base_delay: Delay after the first failure (seconds).
        max_delay: Upper bound for any single delay (seconds).
        backoff_factor: Multiplier applied per failed attempt.
        jitter: Add +/-25% random variation so that retrying clients do not
            wake up in lockstep.
    """
    delay = base_delay * (backoff_factor ** max(0, attempt - 1))
    if jitter and delay > 0:
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, min(delay, max_delay))
