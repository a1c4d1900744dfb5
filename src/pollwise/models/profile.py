from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class Sample(BaseModel):
    """One observed payload fingerprint. Never mutated after insertion."""

    content_hash: str
    observed_at: int  # epoch ms


class EndpointProfile(BaseModel):
    """Learned update cadence for one endpoint key."""

    key: str
    samples: list[Sample] = []  # oldest → newest, bounded
    last_checked_at: int
    estimated_interval_ms: float | None = None  # None until analysed, or when static
    confidence_percent: float = 0.0  # 0–100
    is_high_frequency: bool = False
    recommended_ttl_ms: int


class ProfileSummary(BaseModel):
    """Human-readable profile line for cache statistics."""

    key: str
    pattern: Literal["realtime", "periodic", "static", "learning"]
    update_frequency: str
    ttl: str
    confidence: str
    samples: int
