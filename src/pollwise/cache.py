"""In-memory adaptive cache with stale fallback.

Each entry's lifetime is chosen from the endpoint's learned profile rather
than a fixed TTL. Entries are never removed on expiry: ``get`` simply stops
returning them while ``get_stale_allowed`` keeps serving them as a fallback
for throttled or failed polls.

Cache invalidation never touches the profiler, so learned cadence survives
an ``invalidate`` or ``clear``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from pollwise.clock import now_ms
from pollwise.models.cache import CacheEntry, CacheStats
from pollwise.models.profile import ProfileSummary
from pollwise.profiler import ChangeProfiler, format_duration

if TYPE_CHECKING:
    from pollwise.clock import Clock
    from pollwise.models.profile import EndpointProfile

log = structlog.get_logger()


class AdaptiveCache:
    """Latest value per endpoint key, expiring on a learned schedule."""

    def __init__(self, profiler: ChangeProfiler, clock: Clock = now_ms) -> None:
        self.profiler = profiler
        self.settings = profiler.settings
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value if still fresh, else ``None``."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            log.debug("cache_expired", key=key)
            return None
        log.debug("cache_hit", key=key)
        return entry.value

    def get_stale_allowed(self, key: str) -> Any | None:
        """Return the cached value regardless of expiry. ``None`` if never set."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            log.info("cache_stale_fallback", key=key)
        return entry.value

    def has_entry(self, key: str) -> bool:
        return key in self._entries

    def get_entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any) -> CacheEntry:
        """Store a value, learning from it first to pick its TTL."""
        profile = self.profiler.observe(key, value)
        ttl = self.select_ttl(profile)
        now = self._clock()
        entry = CacheEntry(key=key, value=value, stored_at=now, expires_at=now + ttl)
        self._entries[key] = entry
        log.info("cache_set", key=key, ttl=format_duration(ttl))
        return entry

    def select_ttl(self, profile: EndpointProfile | None) -> int:
        """Pick a TTL in milliseconds.

        Only profiles above the confidence threshold may claim their recommended
        TTL; unreliable fast-changing endpoints get the minimum, everything else
        the default.
        """
        if profile is None:
            return self.settings.default_ttl_ms
        if profile.confidence_percent > self.settings.confidence_threshold:
            return profile.recommended_ttl_ms
        if profile.is_high_frequency:
            return self.settings.min_ttl_ms
        return self.settings.default_ttl_ms

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        log.info("cache_invalidated", key=key)

    def clear(self) -> None:
        self._entries.clear()
        log.info("cache_cleared")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_profile(self, key: str) -> EndpointProfile | None:
        return self.profiler.get(key)

    def list_profiles(self) -> list[EndpointProfile]:
        return self.profiler.list_profiles()

    def stats(self) -> CacheStats:
        profiles = self.profiler.list_profiles()
        return CacheStats(
            cache_size=len(self._entries),
            tracked_endpoints=len(profiles),
            profiles=[
                ProfileSummary(
                    key=p.key,
                    pattern=self.profiler.classify(p),
                    update_frequency=(
                        format_duration(p.estimated_interval_ms)
                        if p.estimated_interval_ms is not None
                        else "N/A"
                    ),
                    ttl=format_duration(p.recommended_ttl_ms),
                    confidence=f"{p.confidence_percent:.0f}%",
                    samples=len(p.samples),
                )
                for p in profiles
            ],
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_entry(self, key: str) -> dict | None:
        entry = self._entries.get(key)
        return entry.model_dump(mode="json") if entry is not None else None

    def export_state(self) -> dict[str, dict]:
        return {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}

    def load_state(self, snapshot: dict[str, dict]) -> None:
        for key, data in snapshot.items():
            try:
                self._entries[key] = CacheEntry.model_validate(data)
            except ValueError:
                log.warning("cache_entry_load_skipped", key=key, exc_info=True)
        log.info("cache_loaded", entries=len(self._entries))
