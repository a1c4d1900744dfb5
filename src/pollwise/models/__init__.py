from __future__ import annotations

from pollwise.models.cache import CacheEntry, CacheStats
from pollwise.models.profile import EndpointProfile, ProfileSummary, Sample
from pollwise.models.quota import (
    DenialReason,
    DetectedLimit,
    QuotaDecision,
    QuotaLimits,
    QuotaState,
)
from pollwise.models.result import PollResult, QuotaSnapshot
from pollwise.models.snapshot import Snapshot
from pollwise.models.transport import TransportResponse

__all__ = [
    # profile
    "Sample",
    "EndpointProfile",
    "ProfileSummary",
    # cache
    "CacheEntry",
    "CacheStats",
    # quota
    "DenialReason",
    "DetectedLimit",
    "QuotaDecision",
    "QuotaLimits",
    "QuotaState",
    # results
    "PollResult",
    "QuotaSnapshot",
    # persistence
    "Snapshot",
    # transport
    "TransportResponse",
]
