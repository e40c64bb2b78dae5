"""Status poller — client-side wait for a background analysis to finish.

Reads the job status every `interval_s` seconds until it is terminal, the
status read itself fails, or `max_iterations` reads have gone by. Running out
of iterations is reported as TIMED_OUT, which is not the same as FAILED: the
job may still finish later.
"""

import asyncio
from enum import Enum
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from config.schemas import JobStatus, StatusResponse
from services.retry import Sleep

TIMED_OUT_MESSAGE = "Analysis is taking longer than expected. Check back later."


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class PollResult:
    outcome: PollOutcome
    message: str | None = None
    iterations: int = 0


async def poll_analysis(
    fetch_status: Callable[[], Awaitable[StatusResponse]],
    interval_s: float = 2.0,
    max_iterations: int = 90,
    sleep: Sleep = asyncio.sleep,
    on_status: Callable[[StatusResponse], None] | None = None,
) -> PollResult:
    """Poll until terminal. Never raises for a failed status read; that is ERROR."""
    for i in range(1, max_iterations + 1):
        await sleep(interval_s)

        try:
            status = await fetch_status()
        except Exception as e:
            logger.warning(f"Status read failed on poll {i}: {e}")
            return PollResult(PollOutcome.ERROR, str(e) or "Lost connection while checking analysis status", i)

        if on_status:
            on_status(status)

        if status.status == JobStatus.COMPLETED.value:
            return PollResult(PollOutcome.COMPLETED, iterations=i)
        if status.status == JobStatus.FAILED.value:
            return PollResult(PollOutcome.FAILED, status.error or "Analysis failed", i)

    logger.warning(f"Gave up polling after {max_iterations} reads")
    return PollResult(PollOutcome.TIMED_OUT, TIMED_OUT_MESSAGE, max_iterations)
