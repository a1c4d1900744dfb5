"""Update-cadence learning per endpoint.

Every successful fetch appends a content fingerprint to a bounded history.
Once enough samples exist, the intervals between *changes* of fingerprint
(not between fetches) give an estimate of how often the upstream data
really updates, and how regular that update rhythm is.

Pure in-memory state; no I/O. Persistence goes through export_state() /
load_state().
"""

from __future__ import annotations

import hashlib
import json
import math
import secrets
import statistics
from typing import TYPE_CHECKING, Any, Literal

import structlog

from pollwise.clock import now_ms
from pollwise.config import CacheSettings
from pollwise.models.profile import EndpointProfile, Sample

if TYPE_CHECKING:
    from pollwise.clock import Clock

log = structlog.get_logger()

STATIC_CONFIDENCE = 90.0


def content_hash(payload: Any) -> str:
    """Return a SHA-256 fingerprint of the payload's order-preserving JSON form.

    Never raises: payloads that cannot be serialised get a random token,
    so they never look unchanged and learning is effectively disabled for them.
    """
    try:
        serialised = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        log.debug("content_hash_unserialisable", payload_type=type(payload).__name__)
        return "opaque:" + secrets.token_hex(16)
    return hashlib.sha256(serialised.encode("utf-8")).hexdigest()


class ChangeProfiler:
    """Maintains one EndpointProfile per endpoint key."""

    def __init__(self, settings: CacheSettings | None = None, clock: Clock = now_ms) -> None:
        self.settings = settings or CacheSettings()
        self._clock = clock
        self._profiles: dict[str, EndpointProfile] = {}

    def observe(self, key: str, payload: Any) -> EndpointProfile:
        """Record a fetched payload and re-analyse the profile if possible."""
        now = self._clock()
        profile = self._profiles.get(key)
        if profile is None:
            profile = EndpointProfile(
                key=key,
                last_checked_at=now,
                recommended_ttl_ms=self.settings.default_ttl_ms,
            )
            self._profiles[key] = profile

        profile.samples.append(Sample(content_hash=content_hash(payload), observed_at=now))
        if len(profile.samples) > self.settings.max_samples:
            profile.samples = profile.samples[-self.settings.max_samples :]

        if len(profile.samples) >= self.settings.min_samples:
            self._analyse(profile)

        profile.last_checked_at = now
        return profile

    def _analyse(self, profile: EndpointProfile) -> None:
        samples = profile.samples
        change_intervals = [
            samples[i].observed_at - samples[i - 1].observed_at
            for i in range(1, len(samples))
            if samples[i].content_hash != samples[i - 1].content_hash
        ]

        if not change_intervals:
            profile.estimated_interval_ms = None
            profile.is_high_frequency = False
            profile.recommended_ttl_ms = self.settings.max_ttl_ms
            profile.confidence_percent = STATIC_CONFIDENCE
            log.info("profile_analysed", key=profile.key, pattern="static")
            return

        avg = statistics.fmean(change_intervals)
        std_dev = statistics.pstdev(change_intervals)
        # Identical timestamps on a change give avg == 0; treat as fully irregular
        cv = std_dev / avg if avg > 0 else 1.0

        profile.estimated_interval_ms = avg
        profile.is_high_frequency = avg < self.settings.high_frequency_threshold_ms
        profile.confidence_percent = max(0.0, min(100.0, 100.0 - cv * 100.0))
        profile.recommended_ttl_ms = self._clamp_ttl(
            math.floor(avg * self.settings.ttl_safety_factor)
        )

        log.info(
            "profile_analysed",
            key=profile.key,
            pattern="realtime" if profile.is_high_frequency else "periodic",
            interval=format_duration(avg),
            confidence=round(profile.confidence_percent),
            ttl=format_duration(profile.recommended_ttl_ms),
        )

    def _clamp_ttl(self, ttl_ms: int) -> int:
        return max(self.settings.min_ttl_ms, min(self.settings.max_ttl_ms, ttl_ms))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, key: str) -> EndpointProfile | None:
        return self._profiles.get(key)

    def list_profiles(self) -> list[EndpointProfile]:
        return list(self._profiles.values())

    def is_learning(self, key: str) -> bool:
        profile = self._profiles.get(key)
        return profile is None or len(profile.samples) < self.settings.min_samples

    def classify(
        self, profile: EndpointProfile
    ) -> Literal["realtime", "periodic", "static", "learning"]:
        if len(profile.samples) < self.settings.min_samples:
            return "learning"
        if profile.is_high_frequency:
            return "realtime"
        if profile.estimated_interval_ms is not None:
            return "periodic"
        return "static"

    def reset(self, key: str) -> None:
        self._profiles.pop(key, None)

    def reset_all(self) -> None:
        self._profiles.clear()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_profile(self, key: str, samples_kept: int = 5) -> dict | None:
        """Serialisable copy of one profile with history trimmed to the newest samples."""
        profile = self._profiles.get(key)
        if profile is None:
            return None
        data = profile.model_dump(mode="json")
        data["samples"] = data["samples"][-samples_kept:] if samples_kept > 0 else []
        return data

    def export_state(self, samples_kept: int = 5) -> dict[str, dict]:
        return {key: self.export_profile(key, samples_kept) for key in self._profiles}

    def load_state(self, snapshot: dict[str, dict]) -> None:
        for key, data in snapshot.items():
            try:
                self._profiles[key] = EndpointProfile.model_validate(data)
            except ValueError:
                log.warning("profile_load_skipped", key=key, exc_info=True)


def format_duration(ms: float) -> str:
    """Render milliseconds the way the stats panel shows them: 850ms, 4.0s, 2.5m…"""
    if ms < 1000:
        return f"{ms:.0f}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    if ms < 86_400_000:
        return f"{ms / 3_600_000:.1f}h"
    return f"{ms / 86_400_000:.1f}d"
