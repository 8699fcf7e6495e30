"""Retry pacing.

`exponential_backoff` drives a retry loop: each iteration yields the 1-based
attempt number and the delay that preceded it (the initial delay for the first
attempt, which is not slept). Between attempts it sleeps the grown delay,
capped at max_delay. The loop ends after max_attempts; the caller breaks or
returns on success.
"""
import asyncio
from typing import AsyncIterator, Tuple


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[Tuple[int, float]]:
    delay = initial_delay
    attempt = 1
    while attempt <= max_attempts:
        yield attempt, delay
        if attempt == max_attempts:
            return
        delay = min(delay * multiplier, max_delay)
        await asyncio.sleep(delay)
        attempt += 1
