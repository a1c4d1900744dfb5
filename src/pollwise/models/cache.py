from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from pollwise.models.profile import ProfileSummary


class CacheEntry(BaseModel):
    """Latest value stored for an endpoint key.

    Expiry is checked at read time; an expired entry stays in place so it can
    serve as a stale fallback.
    """

    key: str
    value: Any
    stored_at: int  # epoch ms
    expires_at: int  # epoch ms

    def is_fresh(self, now: int) -> bool:
        return now < self.expires_at


class CacheStats(BaseModel):
    cache_size: int
    tracked_endpoints: int
    profiles: list[ProfileSummary]
