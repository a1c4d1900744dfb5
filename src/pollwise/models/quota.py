from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class DenialReason(StrEnum):
    THROTTLED = "throttled"
    MINUTE_LIMIT = "minute_limit"
    HOUR_LIMIT = "hour_limit"
    TOO_FAST = "too_fast"
    BACKOFF = "backoff"


class DetectedLimit(BaseModel):
    """Rate limit advertised by the provider through response headers."""

    limit: int
    remaining: int
    reset_at: int | None = None  # epoch ms, when the provider sent a reset header


class QuotaState(BaseModel):
    """Per-key request budget.

    ``requests_this_minute`` and ``requests_this_hour`` only mean something
    relative to their window-start fields; the governor zeroes them lazily.
    """

    key: str
    total_requests: int = 0
    requests_this_minute: int = 0
    requests_this_hour: int = 0
    minute_window_start: int
    hour_window_start: int
    last_request_at: int = 0
    throttled_until: int | None = None
    consecutive_errors: int = 0
    detected_limit: DetectedLimit | None = None
    custom_retry_after_seconds: int | None = None


class QuotaDecision(BaseModel):
    allowed: bool
    reason: DenialReason | None = None
    message: str = ""
    retry_after_seconds: int | None = None


class QuotaLimits(BaseModel):
    max_per_minute: int
    max_per_hour: int
    min_spacing_ms: int
    max_consecutive_errors: int
    backoff_multiplier: float
