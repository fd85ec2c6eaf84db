"""Backoff utilities.

Provides an async generator driving a retry loop. `exponential_backoff` yields the
1-based attempt number for the caller to try an operation; when the caller comes back
for another attempt, it first sleeps for the delay the policy gives for the attempt
that just failed.
"""
import asyncio
from typing import AsyncIterator, Callable


async def exponential_backoff(
    delay_seconds: Callable[[int], float],
    max_attempts: int,
) -> AsyncIterator[int]:
    for attempt in range(1, max_attempts + 1):
        yield attempt
        if attempt < max_attempts:
            await asyncio.sleep(delay_seconds(attempt))
