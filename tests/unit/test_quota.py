"""Unit tests for pollwise.quota."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING

from pollwise.config import QuotaSettings
from pollwise.models.quota import DenialReason, QuotaDecision
from pollwise.quota import QuotaGovernor, parse_reset_seconds, parse_retry_after

if TYPE_CHECKING:
    from tests.conftest import ManualClock

KEY = "https://api.example.com/prices"


def _fill_minute(governor: QuotaGovernor, clock: ManualClock, count: int) -> None:
    for _ in range(count):
        assert governor.can_proceed(KEY).allowed
        governor.record_success(KEY)
        clock.advance(500)


# ---------------------------------------------------------------------------
# Header parsing helpers
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    def test_delay_seconds(self, clock: ManualClock) -> None:
        assert parse_retry_after("120", clock.now) == 120

    def test_http_date(self, clock: ManualClock) -> None:
        retry_at = datetime.fromtimestamp(clock.now / 1000 + 90, tz=UTC)
        assert parse_retry_after(format_datetime(retry_at, usegmt=True), clock.now) == 90

    def test_past_or_zero_is_none(self, clock: ManualClock) -> None:
        assert parse_retry_after("0", clock.now) is None
        past = datetime.fromtimestamp(clock.now / 1000 - 90, tz=UTC)
        assert parse_retry_after(format_datetime(past, usegmt=True), clock.now) is None

    def test_garbage_is_none(self, clock: ManualClock) -> None:
        assert parse_retry_after("soon", clock.now) is None
        assert parse_retry_after(None, clock.now) is None


class TestParseResetSeconds:
    def test_delta(self, clock: ManualClock) -> None:
        assert parse_reset_seconds("30", clock.now) == 30

    def test_epoch_seconds(self, clock: ManualClock) -> None:
        assert parse_reset_seconds(str(clock.now // 1000 + 120), clock.now) == 120

    def test_leading_integer(self, clock: ManualClock) -> None:
        assert parse_reset_seconds("45.7", clock.now) == 45

    def test_unparseable(self, clock: ManualClock) -> None:
        assert parse_reset_seconds("later", clock.now) is None


# ---------------------------------------------------------------------------
# can_proceed
# ---------------------------------------------------------------------------


class TestCanProceed:
    def test_fresh_key_allowed(self, governor: QuotaGovernor) -> None:
        decision = governor.can_proceed(KEY)
        assert decision == QuotaDecision(allowed=True)

    def test_minute_limit(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        _fill_minute(governor, clock, 30)
        decision = governor.can_proceed(KEY)
        assert decision.allowed is False
        assert decision.reason == DenialReason.MINUTE_LIMIT
        # 30 requests 500ms apart: the window opened 15s ago
        assert decision.retry_after_seconds == 45
        assert decision.message == "Minute limit reached (30/min). Wait 45s"

    def test_minute_window_rolls_over(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        _fill_minute(governor, clock, 30)
        clock.advance(45_001)
        assert governor.can_proceed(KEY).allowed
        assert governor.get_status(KEY).requests_this_minute == 0

    def test_hour_limit(self, clock: ManualClock) -> None:
        governor = QuotaGovernor(QuotaSettings(max_per_minute=100, max_per_hour=3), clock=clock)
        for _ in range(3):
            governor.record_success(KEY)
            clock.advance(1_000)
        decision = governor.can_proceed(KEY)
        assert decision.reason == DenialReason.HOUR_LIMIT
        assert decision.retry_after_seconds == 3_600 - 3
        assert decision.message.endswith("Wait 60min")

    def test_too_fast(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.record_success(KEY)
        clock.advance(200)
        decision = governor.can_proceed(KEY)
        assert decision.reason == DenialReason.TOO_FAST
        assert decision.message == "Too fast. Wait 300ms"
        assert decision.retry_after_seconds == 1

    def test_spacing_satisfied_at_exact_boundary(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        governor.record_success(KEY)
        clock.advance(500)
        assert governor.can_proceed(KEY).allowed

    def test_throttle_checked_before_minute_limit(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        _fill_minute(governor, clock, 30)
        governor.handle_rate_limit_signal(KEY, 10)
        decision = governor.can_proceed(KEY)
        assert decision.reason == DenialReason.THROTTLED
        assert decision.message == "API rate limited. Retry in 10s"

    def test_keys_have_independent_budgets(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        _fill_minute(governor, clock, 30)
        assert governor.can_proceed("https://api.example.com/other").allowed


# ---------------------------------------------------------------------------
# Errors and backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_two_errors_still_allowed(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        for _ in range(2):
            governor.record_error(KEY)
            clock.advance(500)
        assert governor.can_proceed(KEY).allowed

    def test_backoff_grows_with_each_error(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        waits = []
        for errors in range(1, 6):
            governor.record_error(KEY)
            clock.advance(500)
            if errors >= 3:
                decision = governor.can_proceed(KEY)
                assert decision.reason == DenialReason.BACKOFF
                waits.append(decision.retry_after_seconds)
        assert waits == [5, 8, 12]

    def test_backoff_message(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        for _ in range(3):
            governor.record_error(KEY)
            clock.advance(500)
        assert governor.can_proceed(KEY).message == "Too many errors. Backing off for 5s"

    def test_backoff_lifts_after_window(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        for _ in range(3):
            governor.record_error(KEY)
            clock.advance(500)
        clock.advance(4_500)
        assert governor.can_proceed(KEY).allowed

    def test_success_clears_error_streak(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        for _ in range(3):
            governor.record_error(KEY)
            clock.advance(500)
        governor.record_success(KEY)
        clock.advance(500)
        assert governor.get_status(KEY).consecutive_errors == 0
        assert governor.can_proceed(KEY).allowed

    def test_errors_do_not_consume_window_budget(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        for _ in range(5):
            governor.record_error(KEY)
            clock.advance(500)
        state = governor.get_status(KEY)
        assert state.requests_this_minute == 0
        assert state.requests_this_hour == 0
        assert state.total_requests == 0
        assert state.consecutive_errors == 5

    def test_backoff_seconds_formula(self, governor: QuotaGovernor) -> None:
        assert governor.backoff_seconds(3) == 5
        assert governor.backoff_seconds(6) == 17


# ---------------------------------------------------------------------------
# Rate-limit signals
# ---------------------------------------------------------------------------


class TestRateLimitSignal:
    def test_throttles_for_given_seconds(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        governor.handle_rate_limit_signal(KEY, 30)
        clock.advance(10_000)
        decision = governor.can_proceed(KEY)
        assert decision.reason == DenialReason.THROTTLED
        assert decision.retry_after_seconds == 20

        clock.advance(20_000)
        assert governor.can_proceed(KEY).allowed

    def test_defaults_to_sixty_seconds(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.handle_rate_limit_signal(KEY)
        assert governor.get_status(KEY).throttled_until == clock.now + 60_000

    def test_resets_error_streak(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        for _ in range(4):
            governor.record_error(KEY)
            clock.advance(500)
        governor.handle_rate_limit_signal(KEY, 5)
        assert governor.get_status(KEY).consecutive_errors == 0

    def test_custom_retry_time(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.set_custom_retry_time(KEY, 15)
        state = governor.get_status(KEY)
        assert state.custom_retry_after_seconds == 15
        assert governor.can_proceed(KEY).retry_after_seconds == 15


class TestLearnFromHeaders:
    def test_records_limit(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        detected = governor.learn_from_headers(
            KEY,
            {"X-RateLimit-Limit": "100", "X-RateLimit-Remaining": "42", "X-RateLimit-Reset": "30"},
        )
        assert detected is not None
        assert detected.limit == 100
        assert detected.remaining == 42
        assert detected.reset_at == clock.now + 30_000
        assert governor.get_status(KEY).detected_limit == detected
        assert governor.can_proceed(KEY).allowed

    def test_exhausted_limit_throttles(self, governor: QuotaGovernor) -> None:
        governor.learn_from_headers(
            KEY, {"ratelimit-limit": "10", "ratelimit-remaining": "0", "ratelimit-reset": "25"}
        )
        decision = governor.can_proceed(KEY)
        assert decision.reason == DenialReason.THROTTLED
        assert decision.retry_after_seconds == 25

    def test_exhausted_without_reset_uses_default(
        self, governor: QuotaGovernor, clock: ManualClock
    ) -> None:
        governor.learn_from_headers(KEY, {"x-rate-limit-limit": "10", "x-rate-limit-remaining": "0"})
        assert governor.get_status(KEY).throttled_until == clock.now + 60_000

    def test_first_complete_family_wins(self, governor: QuotaGovernor) -> None:
        detected = governor.learn_from_headers(
            KEY,
            {
                "x-ratelimit-limit": "100",
                "ratelimit-limit": "50",
                "ratelimit-remaining": "7",
            },
        )
        assert detected is not None
        assert detected.limit == 50
        assert detected.remaining == 7

    def test_unparseable_values_ignored(self, governor: QuotaGovernor) -> None:
        assert (
            governor.learn_from_headers(
                KEY, {"x-ratelimit-limit": "lots", "x-ratelimit-remaining": "some"}
            )
            is None
        )
        assert governor.get_status(KEY).detected_limit is None

    def test_no_headers(self, governor: QuotaGovernor) -> None:
        assert governor.learn_from_headers(KEY, {"content-type": "application/json"}) is None


# ---------------------------------------------------------------------------
# Snapshot / reset / persistence
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_counts(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        _fill_minute(governor, clock, 3)
        snapshot = governor.snapshot(KEY)
        assert snapshot.count == 3
        assert snapshot.per_minute_count == 3
        assert snapshot.per_minute_limit == 30
        assert snapshot.throttled is False
        assert snapshot.retry_after_seconds is None

    def test_denial_marks_throttled(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.record_success(KEY)
        decision = governor.can_proceed(KEY)
        snapshot = governor.snapshot(KEY, decision)
        assert snapshot.throttled is True
        assert snapshot.retry_after_seconds == decision.retry_after_seconds

    def test_active_throttle_reported(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.handle_rate_limit_signal(KEY, 40)
        clock.advance(1_500)
        snapshot = governor.snapshot(KEY)
        assert snapshot.throttled is True
        assert snapshot.retry_after_seconds == 39


class TestReset:
    def test_reset_forgets_key(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        _fill_minute(governor, clock, 30)
        governor.reset(KEY)
        assert governor.can_proceed(KEY).allowed
        assert governor.get_status(KEY).total_requests == 0

    def test_reset_all(self, governor: QuotaGovernor) -> None:
        governor.record_success(KEY)
        governor.reset_all()
        assert governor.all_statuses() == {}

    def test_limits(self, governor: QuotaGovernor) -> None:
        limits = governor.limits()
        assert limits.max_per_minute == 30
        assert limits.max_per_hour == 200
        assert limits.min_spacing_ms == 500


class TestPersistence:
    def test_load_clears_lapsed_throttle(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.handle_rate_limit_signal(KEY, 30)
        snapshot = governor.export_state()

        clock.advance(31_000)
        restored = QuotaGovernor(clock=clock)
        restored.load_state(snapshot)
        assert restored.get_status(KEY).throttled_until is None
        assert restored.can_proceed(KEY).allowed

    def test_load_keeps_active_throttle(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        governor.handle_rate_limit_signal(KEY, 30)
        snapshot = governor.export_state()

        clock.advance(5_000)
        restored = QuotaGovernor(clock=clock)
        restored.load_state(snapshot)
        assert restored.can_proceed(KEY).reason == DenialReason.THROTTLED

    def test_load_rolls_lapsed_windows(self, governor: QuotaGovernor, clock: ManualClock) -> None:
        _fill_minute(governor, clock, 30)
        snapshot = governor.export_state()

        clock.advance(2 * 60 * 60 * 1000)
        restored = QuotaGovernor(clock=clock)
        restored.load_state(snapshot)
        state = restored.get_status(KEY)
        assert state.requests_this_minute == 0
        assert state.requests_this_hour == 0
        assert state.total_requests == 30

    def test_export_quota_missing(self, governor: QuotaGovernor) -> None:
        assert governor.export_quota(KEY) is None
