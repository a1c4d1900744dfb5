"""Per-endpoint request budgets with header-driven limits and error backoff.

All state is evaluated lazily at call time: there is no background timer.
Every read or write first rolls the minute/hour windows forward if they have
elapsed, then applies the check or mutation.

Errors and successes are counted asymmetrically: only successful requests
consume the per-window budget, while errors feed the consecutive-error
backoff.
"""

from __future__ import annotations

import math
import re
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

import structlog

from pollwise.clock import now_ms
from pollwise.config import QuotaSettings
from pollwise.models.quota import (
    DenialReason,
    DetectedLimit,
    QuotaDecision,
    QuotaLimits,
    QuotaState,
)
from pollwise.models.result import QuotaSnapshot

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pollwise.clock import Clock

log = structlog.get_logger()

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# (limit, remaining, reset) header families, checked in order
RATE_LIMIT_HEADER_FAMILIES: tuple[tuple[str, str, str], ...] = (
    ("x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset"),
    ("ratelimit-limit", "ratelimit-remaining", "ratelimit-reset"),
    ("x-rate-limit-limit", "x-rate-limit-remaining", "x-rate-limit-reset"),
)

# Reset values above this are epoch seconds rather than a delta (2001-09-09)
_EPOCH_SECONDS_THRESHOLD = 1_000_000_000

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def _parse_int(value: str | None) -> int | None:
    """Parse the leading integer of a header value: ``"59.5"`` → 59, ``"abc"`` → None."""
    if value is None:
        return None
    match = _LEADING_INT_RE.match(value)
    return int(match.group(1)) if match else None


def parse_reset_seconds(value: str | None, now: int) -> int | None:
    """Seconds until a rate-limit reset, from either a delta or an epoch timestamp."""
    reset = _parse_int(value)
    if reset is None:
        return None
    if reset > _EPOCH_SECONDS_THRESHOLD:
        reset = math.ceil(reset - now / 1000)
    return reset if reset > 0 else None


def parse_retry_after(value: str | None, now: int) -> int | None:
    """Parse a ``Retry-After`` header given as delay-seconds or an HTTP date."""
    if value is None:
        return None
    seconds = _parse_int(value)
    if seconds is not None:
        return seconds if seconds > 0 else None
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    delta = math.ceil(retry_at.timestamp() - now / 1000)
    return delta if delta > 0 else None


class QuotaGovernor:
    """Decides whether a request to an endpoint key may go out right now."""

    def __init__(self, settings: QuotaSettings | None = None, clock: Clock = now_ms) -> None:
        self.settings = settings or QuotaSettings()
        self._clock = clock
        self._states: dict[str, QuotaState] = {}

    def _get_or_create(self, key: str) -> QuotaState:
        state = self._states.get(key)
        if state is None:
            now = self._clock()
            state = QuotaState(key=key, minute_window_start=now, hour_window_start=now)
            self._states[key] = state
        return state

    @staticmethod
    def _roll_windows(state: QuotaState, now: int) -> None:
        if now - state.minute_window_start > MINUTE_MS:
            state.requests_this_minute = 0
            state.minute_window_start = now
        if now - state.hour_window_start > HOUR_MS:
            state.requests_this_hour = 0
            state.hour_window_start = now

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def can_proceed(self, key: str) -> QuotaDecision:
        """Evaluate the denial checks in order; the first match wins."""
        state = self._get_or_create(key)
        now = self._clock()
        self._roll_windows(state, now)
        limits = self.settings

        decision: QuotaDecision
        if state.throttled_until is not None and now < state.throttled_until:
            wait = math.ceil((state.throttled_until - now) / 1000)
            decision = QuotaDecision(
                allowed=False,
                reason=DenialReason.THROTTLED,
                message=f"API rate limited. Retry in {wait}s",
                retry_after_seconds=wait,
            )
        elif state.requests_this_minute >= limits.max_per_minute:
            wait = math.ceil((state.minute_window_start + MINUTE_MS - now) / 1000)
            decision = QuotaDecision(
                allowed=False,
                reason=DenialReason.MINUTE_LIMIT,
                message=f"Minute limit reached ({limits.max_per_minute}/min). Wait {wait}s",
                retry_after_seconds=wait,
            )
        elif state.requests_this_hour >= limits.max_per_hour:
            wait = math.ceil((state.hour_window_start + HOUR_MS - now) / 1000)
            decision = QuotaDecision(
                allowed=False,
                reason=DenialReason.HOUR_LIMIT,
                message=(
                    f"Hourly limit reached ({limits.max_per_hour}/hr). "
                    f"Wait {math.ceil(wait / 60)}min"
                ),
                retry_after_seconds=wait,
            )
        elif now - state.last_request_at < limits.min_spacing_ms:
            wait_ms = limits.min_spacing_ms - (now - state.last_request_at)
            decision = QuotaDecision(
                allowed=False,
                reason=DenialReason.TOO_FAST,
                message=f"Too fast. Wait {wait_ms}ms",
                retry_after_seconds=math.ceil(wait_ms / 1000),
            )
        elif state.consecutive_errors >= limits.max_consecutive_errors and (
            now - state.last_request_at < self.backoff_seconds(state.consecutive_errors) * 1000
        ):
            # The backoff window runs from the last failed attempt; once it has
            # passed, one probe is allowed through and its outcome decides the next step.
            wait = self.backoff_seconds(state.consecutive_errors)
            decision = QuotaDecision(
                allowed=False,
                reason=DenialReason.BACKOFF,
                message=f"Too many errors. Backing off for {wait}s",
                retry_after_seconds=wait,
            )
        else:
            return QuotaDecision(allowed=True)

        log.info(
            "quota_denied",
            key=key,
            reason=decision.reason,
            retry_after_seconds=decision.retry_after_seconds,
        )
        return decision

    def backoff_seconds(self, consecutive_errors: int) -> int:
        exponent = consecutive_errors - self.settings.max_consecutive_errors
        return math.ceil(
            self.settings.backoff_multiplier ** max(0, exponent) * self.settings.backoff_base_seconds
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_success(self, key: str) -> None:
        state = self._get_or_create(key)
        now = self._clock()
        self._roll_windows(state, now)

        state.total_requests += 1
        state.requests_this_minute += 1
        state.requests_this_hour += 1
        state.last_request_at = now
        state.consecutive_errors = 0
        state.throttled_until = None

        log.debug(
            "quota_request_recorded",
            key=key,
            total=state.total_requests,
            this_minute=state.requests_this_minute,
            per_minute_limit=self.settings.max_per_minute,
        )

    def record_error(self, key: str) -> None:
        """Count a failed attempt toward backoff; window budgets are untouched."""
        state = self._get_or_create(key)
        now = self._clock()
        self._roll_windows(state, now)
        state.consecutive_errors += 1
        state.last_request_at = now
        log.warning("quota_error_recorded", key=key, consecutive_errors=state.consecutive_errors)

    def handle_rate_limit_signal(self, key: str, retry_after_seconds: int | None = None) -> None:
        """Throttle the key after an explicit upstream signal.

        Explicit signals replace heuristic backoff, so the error streak is reset.
        """
        if retry_after_seconds is None:
            retry_after_seconds = self.settings.default_retry_after_seconds
        state = self._get_or_create(key)
        state.throttled_until = self._clock() + retry_after_seconds * 1000
        state.consecutive_errors = 0
        log.warning("rate_limit_signal", key=key, retry_after_seconds=retry_after_seconds)

    def set_custom_retry_time(self, key: str, delay_seconds: int) -> None:
        state = self._get_or_create(key)
        state.custom_retry_after_seconds = delay_seconds
        state.throttled_until = self._clock() + delay_seconds * 1000
        log.info("custom_retry_set", key=key, delay_seconds=delay_seconds)

    def learn_from_headers(self, key: str, headers: Mapping[str, str]) -> DetectedLimit | None:
        """Record provider-advertised limits; throttle immediately when exhausted.

        Returns the detected limit, or None when no known header family is present.
        """
        lowered = {name.lower(): value for name, value in headers.items()}
        now = self._clock()

        for limit_name, remaining_name, reset_name in RATE_LIMIT_HEADER_FAMILIES:
            limit = _parse_int(lowered.get(limit_name))
            remaining = _parse_int(lowered.get(remaining_name))
            if limit is None or remaining is None:
                continue

            reset_seconds = parse_reset_seconds(lowered.get(reset_name), now)
            detected = DetectedLimit(
                limit=limit,
                remaining=remaining,
                reset_at=now + reset_seconds * 1000 if reset_seconds is not None else None,
            )
            state = self._get_or_create(key)
            state.detected_limit = detected
            log.debug(
                "rate_limit_headers_detected",
                key=key,
                limit=limit,
                remaining=remaining,
                family=limit_name,
            )

            if remaining <= 0:
                self.handle_rate_limit_signal(key, reset_seconds)
            return detected

        return None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self, key: str) -> QuotaState:
        state = self._get_or_create(key)
        self._roll_windows(state, self._clock())
        return state

    def all_statuses(self) -> dict[str, QuotaState]:
        return dict(self._states)

    def limits(self) -> QuotaLimits:
        return QuotaLimits(
            max_per_minute=self.settings.max_per_minute,
            max_per_hour=self.settings.max_per_hour,
            min_spacing_ms=self.settings.min_spacing_ms,
            max_consecutive_errors=self.settings.max_consecutive_errors,
            backoff_multiplier=self.settings.backoff_multiplier,
        )

    def snapshot(self, key: str, decision: QuotaDecision | None = None) -> QuotaSnapshot:
        """Caller-facing quota summary, optionally annotated with a denial."""
        state = self.get_status(key)
        now = self._clock()
        throttled = state.throttled_until is not None and now < state.throttled_until
        retry_after: int | None = None
        if decision is not None and not decision.allowed:
            throttled = True
            retry_after = decision.retry_after_seconds
        elif throttled:
            retry_after = math.ceil((state.throttled_until - now) / 1000)
        return QuotaSnapshot(
            count=state.total_requests,
            per_minute_count=state.requests_this_minute,
            per_minute_limit=self.settings.max_per_minute,
            throttled=throttled,
            retry_after_seconds=retry_after,
        )

    def reset(self, key: str) -> None:
        self._states.pop(key, None)
        log.info("quota_reset", key=key)

    def reset_all(self) -> None:
        self._states.clear()
        log.info("quota_reset_all")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_quota(self, key: str) -> dict | None:
        state = self._states.get(key)
        return state.model_dump(mode="json") if state is not None else None

    def export_state(self) -> dict[str, dict]:
        return {key: state.model_dump(mode="json") for key, state in self._states.items()}

    def load_state(self, snapshot: dict[str, dict]) -> None:
        """Restore persisted quotas, dropping throttles and windows that lapsed meanwhile."""
        now = self._clock()
        for key, data in snapshot.items():
            try:
                state = QuotaState.model_validate(data)
            except ValueError:
                log.warning("quota_load_skipped", key=key, exc_info=True)
                continue
            if state.throttled_until is not None and now > state.throttled_until:
                state.throttled_until = None
            self._roll_windows(state, now)
            self._states[key] = state
        log.info("quota_loaded", keys=len(self._states))
