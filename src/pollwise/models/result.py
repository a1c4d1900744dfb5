from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from pollwise.errors import ErrorCode


class QuotaSnapshot(BaseModel):
    count: int
    per_minute_count: int
    per_minute_limit: int
    throttled: bool
    retry_after_seconds: int | None = None


class PollResult(BaseModel):
    """Caller-facing outcome of one poll.

    ``cached`` is True whenever the data came from the cache; ``stale`` marks
    the subset served past expiry as a fallback.
    """

    ok: bool
    data: Any = None
    message: str
    cached: bool = False
    stale: bool = False
    was_learning: bool = True  # fewer than min_samples observations so far
    error_code: ErrorCode | None = None
    quota: QuotaSnapshot
