"""Background polling loop.

The core never retries on its own; this scheduler is the external caller
that acts on the ``retry_after_seconds`` hint carried by each result.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pollwise.gatekeeper import RequestGatekeeper
    from pollwise.models.result import PollResult

log = structlog.get_logger()

MIN_INTERVAL_SECONDS = 1


def next_delay(interval_seconds: int, result: PollResult | None) -> int:
    """Sleep for the poll interval, or longer when the result asks us to wait."""
    interval = max(MIN_INTERVAL_SECONDS, interval_seconds)
    if result is None or result.quota.retry_after_seconds is None:
        return interval
    return max(interval, result.quota.retry_after_seconds)


async def run_poll_scheduler(
    gatekeeper: RequestGatekeeper,
    url: str,
    interval_seconds: int,
    on_result: Callable[[PollResult], Awaitable[Any] | Any] | None = None,
    *,
    max_polls: int | None = None,
) -> None:
    """Poll a URL immediately, then every ``interval_seconds`` until cancelled."""
    polls = 0
    while True:
        result: PollResult | None = None
        try:
            result = await gatekeeper.poll(url)
            if on_result is not None:
                outcome = on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception:
            log.warning("poll_scheduler_error", url=url, exc_info=True)

        polls += 1
        if max_polls is not None and polls >= max_polls:
            return

        await asyncio.sleep(next_delay(interval_seconds, result))
