"""Poll orchestration.

One ``poll(url)`` decides between serving the cache, calling upstream, or
refusing and falling back to stale data:

  quota check → fresh cache → transport → quota outcome → normalise → cache set

Any cached value, even an expired one, is preferred over surfacing a failure.
Every path returns a ``PollResult``; nothing here raises for expected
failures.
"""

from __future__ import annotations

import asyncio
from http import HTTPStatus
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import structlog
from pydantic import BaseModel, field_validator

from pollwise.errors import ErrorCode, PollwiseError, TransportError
from pollwise.models.result import PollResult, QuotaSnapshot
from pollwise.quota import parse_retry_after

if TYPE_CHECKING:
    from pollwise.models.cache import CacheStats
    from pollwise.models.quota import QuotaDecision
    from pollwise.models.transport import TransportResponse
    from pollwise.state import AppState

log = structlog.get_logger()

MAX_URL_LENGTH = 2048

_STATUS_MESSAGES: dict[int, str] = {
    400: "Bad Request - Check your API URL and parameters",
    401: "Unauthorized - API key may be required or invalid",
    403: "Forbidden - Access denied to this resource",
    404: "Not Found - API endpoint does not exist",
    429: "Rate limit exceeded - Too many requests",
    500: "Server Error - API is experiencing issues",
    503: "Service Unavailable - API is temporarily down",
}


class PollInput(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if len(v) > MAX_URL_LENGTH:
            raise ValueError(f"URL exceeds {MAX_URL_LENGTH} characters")
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("URL must be absolute and use http:// or https://")
        return v


def endpoint_key(url: str) -> str:
    """Normalise a URL into the identity shared by cache, profile and quota state.

    Scheme and host are lower-cased, query parameters sorted, and trailing
    slashes dropped from non-root paths.
    """
    parsed = urlparse(url)
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    path = parsed.path.rstrip("/") or "/"
    return urlunparse(
        parsed._replace(
            scheme=parsed.scheme.lower(),
            netloc=parsed.netloc.lower(),
            path=path,
            query=query,
            fragment="",
        )
    )


def status_message(status: int) -> str:
    """Human-readable, categorised message for a non-2xx status."""
    if status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status]
    try:
        phrase = HTTPStatus(status).phrase
    except ValueError:
        phrase = "Unexpected response"
    return f"HTTP {status} - {phrase}"


class RequestGatekeeper:
    """Runs polls against the engines held by an AppState."""

    def __init__(self, state: AppState) -> None:
        self.state = state
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def restore(self) -> None:
        """Load persisted engine state, if a store is configured."""
        if self.state.store is None:
            return
        snapshot = await self.state.store.load()
        if snapshot.is_empty:
            return
        self.state.profiler.load_state(snapshot.profiles)
        self.state.cache.load_state(snapshot.cache_entries)
        self.state.quota.load_state(snapshot.quotas)

    # ------------------------------------------------------------------
    # Poll
    # ------------------------------------------------------------------

    async def poll(self, url: str) -> PollResult:
        try:
            validated = PollInput(url=url)
        except ValueError as exc:
            log.warning("poll_rejected", url=url, reason=str(exc))
            return PollResult(
                ok=False,
                message="Invalid URL format. Please include https:// or http://",
                error_code=ErrorCode.MALFORMED_INPUT,
                quota=QuotaSnapshot(
                    count=0,
                    per_minute_count=0,
                    per_minute_limit=self.state.settings.quota.max_per_minute,
                    throttled=False,
                ),
            )

        key = endpoint_key(validated.url)
        async with self._lock_for(key):
            result = await self._poll_locked(validated.url, key)
            await self._persist(key)
        return result

    async def _poll_locked(self, url: str, key: str) -> PollResult:
        state = self.state
        bound_log = log.bind(key=key)

        decision = state.quota.can_proceed(key)
        if not decision.allowed:
            return self._denied(key, decision)

        cached = state.cache.get(key)
        if cached is not None:
            bound_log.debug("poll_cache_hit")
            return self._result(key, ok=True, data=cached, message="Success (cached)", cached=True)

        try:
            response = await state.transport.request(url)
        except TransportError as exc:
            state.quota.record_error(key)
            return self._fallback(key, exc)

        if not response.is_success:
            return self._fallback(key, self._upstream_failure(key, response))

        try:
            body = self._checked_body(response)
        except PollwiseError as exc:
            state.quota.record_error(key)
            return self._fallback(key, exc)

        state.quota.record_success(key)
        state.quota.learn_from_headers(key, response.headers)

        try:
            envelope = state.normalizer.normalize(body)
        except PollwiseError as exc:
            return self._fallback(key, exc)

        state.cache.set(key, envelope)
        bound_log.info("poll_fetched", learning=state.profiler.is_learning(key))
        return self._result(key, ok=True, data=envelope, message="Success")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _upstream_failure(self, key: str, response: TransportResponse) -> PollwiseError:
        """Update quota state for a non-2xx response and describe the failure."""
        if response.status == HTTPStatus.TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(response.header("retry-after"), self.state.clock())
            self.state.quota.handle_rate_limit_signal(key, retry_after)
            return PollwiseError(
                code=ErrorCode.UPSTREAM_RATE_LIMITED,
                message=status_message(response.status),
                suggestion="Polling will resume once the provider's retry window has passed.",
                recoverable=True,
            )

        self.state.quota.record_error(key)
        return PollwiseError(
            code=ErrorCode.UPSTREAM_ERROR,
            message=status_message(response.status),
            suggestion="Check the URL and any required API parameters.",
            recoverable=response.status >= 500,
        )

    @staticmethod
    def _checked_body(response: TransportResponse) -> Any:
        content_type = response.content_type.lower()
        if "text/html" in content_type:
            raise PollwiseError(
                code=ErrorCode.UPSTREAM_ERROR,
                message="Received HTML instead of JSON. Check if the URL is correct",
                suggestion="Make sure the URL points at an API endpoint, not a web page.",
            )
        if response.json_error:
            raise PollwiseError(
                code=ErrorCode.UPSTREAM_ERROR,
                message="Invalid JSON response from API",
                suggestion="The provider returned a malformed body; try again later.",
                recoverable=True,
            )
        return response.body

    def _fallback(self, key: str, error: PollwiseError) -> PollResult:
        """Serve whatever is cached for the key, or surface the failure."""
        if self.state.cache.has_entry(key):
            log.info("poll_stale_fallback", key=key, code=error.code)
            return self._result(
                key,
                ok=True,
                data=self.state.cache.get_stale_allowed(key),
                message=f"Serving cached data: {error.message}",
                cached=True,
                stale=True,
                error_code=error.code,
            )
        log.warning("poll_failed", key=key, code=error.code, message=error.message)
        return self._result(key, ok=False, message=error.message, error_code=error.code)

    def _denied(self, key: str, decision: QuotaDecision) -> PollResult:
        if self.state.cache.has_entry(key):
            return self._result(
                key,
                ok=True,
                data=self.state.cache.get_stale_allowed(key),
                message=f"Serving cached data: {decision.message}",
                cached=True,
                stale=True,
                error_code=ErrorCode.QUOTA_DENIED,
                decision=decision,
            )
        return self._result(
            key,
            ok=False,
            message=decision.message,
            error_code=ErrorCode.QUOTA_DENIED,
            decision=decision,
        )

    def _result(
        self,
        key: str,
        *,
        ok: bool,
        message: str,
        data: Any = None,
        cached: bool = False,
        stale: bool = False,
        error_code: ErrorCode | None = None,
        decision: QuotaDecision | None = None,
    ) -> PollResult:
        return PollResult(
            ok=ok,
            data=data,
            message=message,
            cached=cached,
            stale=stale,
            was_learning=self.state.profiler.is_learning(key),
            error_code=error_code,
            quota=self.state.quota.snapshot(key, decision),
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def invalidate(self, url: str) -> None:
        """Drop the cached value for a URL; its learned profile is kept."""
        key = endpoint_key(url)
        async with self._lock_for(key):
            self.state.cache.invalidate(key)
            if self.state.store is not None:
                await self.state.store.delete_cache_entry(key)

    async def clear_cache(self) -> None:
        self.state.cache.clear()
        if self.state.store is not None:
            await self.state.store.clear_cache_entries()

    async def reset_quota(self, url: str) -> None:
        key = endpoint_key(url)
        async with self._lock_for(key):
            self.state.quota.reset(key)
            if self.state.store is not None:
                await self.state.store.delete_quota(key)

    def stats(self) -> CacheStats:
        return self.state.cache.stats()

    async def _persist(self, key: str) -> None:
        store = self.state.store
        if store is None:
            return
        await store.save_endpoint(
            key,
            cache_entry=self.state.cache.export_entry(key),
            profile=self.state.profiler.export_profile(
                key, self.state.settings.persistence.profile_samples_kept
            ),
            quota=self.state.quota.export_quota(key),
        )
