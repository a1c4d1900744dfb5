"""Shape detection and normalisation of upstream JSON payloads.

Providers disagree on everything: envelope keys, key casing, whether numbers
are strings. A fixed, ordered set of detectors (most specific first) each
recognise one family of shapes and rewrite it into the canonical
``{"data": ...}`` envelope. The universal detector always matches, so every
payload ends up normalised.

Pure functions over the JSON value tree, with no I/O and no state.
"""

from __future__ import annotations

import re
from typing import Any, ClassVar

import structlog

from pollwise.errors import ErrorCode, PollwiseError

log = structlog.get_logger()

_TICKER_KEY_RE = re.compile(r"^[A-Z]{2,}$")
_ISO_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_NUMBERED_PREFIX_RE = re.compile(r"^\d+\.\s*")
_NUMBERED_KEY_RE = re.compile(r"^\d+\.\s+")
_NON_WORD_RE = re.compile(r"[^\w]+")
_NUMERIC_RE = re.compile(r"^[+-]?[0-9]+(\.[0-9]+)?$")

_PROVIDER_KEYS = frozenset(
    {"Meta Data", "Global Quote", "Time Series (Daily)", "Realtime Currency Exchange Rate"}
)


# ---------------------------------------------------------------------------
# Generic normalisation
# ---------------------------------------------------------------------------


def sanitize_key(key: Any) -> str:
    """Rewrite a key to lower_snake_case.

    All-caps keys (tickers such as ``"USD"``) and ISO dates are kept verbatim;
    numbered prefixes like ``"1. open"`` are dropped.
    """
    s = str(key).strip()
    if _TICKER_KEY_RE.match(s) or _ISO_DATE_KEY_RE.match(s):
        return s
    s = _NUMBERED_PREFIX_RE.sub("", s).lower()
    return _NON_WORD_RE.sub("_", s).strip("_")


def coerce_value(value: Any) -> Any:
    """Turn purely numeric strings into ``int`` or ``float``; leave anything else alone."""
    if isinstance(value, str):
        trimmed = value.strip()
        if _NUMERIC_RE.match(trimmed):
            return float(trimmed) if "." in trimmed else int(trimmed)
    return value


def deep_normalize(value: Any) -> Any:
    match value:
        case list() | tuple():
            return [deep_normalize(item) for item in value]
        case dict():
            return {sanitize_key(k): deep_normalize(v) for k, v in value.items()}
        case _:
            return coerce_value(value)


def _unwrap_nested_data(envelope: dict) -> dict:
    """Collapse ``{"data": {"data": {...}}}`` by exactly one level."""
    match envelope:
        case {"data": {"data": dict() as inner} as outer} if len(outer) == 1:
            return {**envelope, "data": inner}
        case _:
            return envelope


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


class ShapeDetector:
    """One family of payload shapes. Subclasses form a closed set."""

    name: ClassVar[str]

    def detect(self, raw: Any) -> bool:
        raise NotImplementedError

    def normalize(self, raw: Any) -> dict:
        raise NotImplementedError


class MetadataSeriesDetector(ShapeDetector):
    """Market-data envelopes: ``Meta Data`` plus ``Time Series (...)``, quotes, FX rates."""

    name = "metadata_series"

    def detect(self, raw: Any) -> bool:
        match raw:
            case dict():
                return any(
                    k in _PROVIDER_KEYS
                    or k.startswith("Time Series")
                    or _NUMBERED_KEY_RE.match(k)
                    for k in map(str, raw)
                )
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": deep_normalize(raw)}


class ExchangeRateDetector(ShapeDetector):
    name = "exchange_rate"

    def detect(self, raw: Any) -> bool:
        match raw:
            case {"data": dict() as data}:
                return any(data.get(k) for k in ("currency", "rates", "base"))
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": deep_normalize(raw["data"])}


class SuccessEnvelopeDetector(ShapeDetector):
    name = "success_envelope"

    def detect(self, raw: Any) -> bool:
        match raw:
            case {"data": _, "success": True}:
                return True
            case {"data": _, "status": "success"}:
                return True
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": deep_normalize(raw["data"])}


class PaginatedDetector(ShapeDetector):
    name = "paginated"

    _ITEM_KEYS = ("results", "items", "data")

    def detect(self, raw: Any) -> bool:
        match raw:
            case dict():
                return any(isinstance(raw.get(k), list) for k in self._ITEM_KEYS)
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        items = next(raw[k] for k in self._ITEM_KEYS if isinstance(raw.get(k), list))
        return {
            "data": {
                "items": deep_normalize(items),
                "pagination": {
                    "page": raw.get("page") or raw.get("current_page") or 1,
                    "total": raw.get("total") or raw.get("total_count") or len(items),
                    "per_page": raw.get("per_page") or raw.get("page_size") or len(items),
                },
            }
        }


class GraphQLDetector(ShapeDetector):
    name = "graphql"

    def detect(self, raw: Any) -> bool:
        match raw:
            case {"data": _} if "errors" not in raw:
                return True
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": deep_normalize(raw["data"])}


class TimeSeriesDetector(ShapeDetector):
    """Objects keyed mostly by dates: ``{"2024-01-02": {...}, "2024-01-03": {...}}``."""

    name = "time_series"

    def detect(self, raw: Any) -> bool:
        match raw:
            case dict() if raw:
                date_keys = sum(1 for k in raw if _DATE_PREFIX_RE.match(str(k)))
                return date_keys > 0 and date_keys / len(raw) > 0.5
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": {"time_series": deep_normalize(raw)}}


class GenericDataDetector(ShapeDetector):
    name = "generic_data"

    def detect(self, raw: Any) -> bool:
        match raw:
            case {"data": _}:
                return True
            case _:
                return False

    def normalize(self, raw: Any) -> dict:
        return {"data": deep_normalize(raw["data"])}


class UniversalDetector(ShapeDetector):
    name = "universal"

    def detect(self, raw: Any) -> bool:
        return True

    def normalize(self, raw: Any) -> dict:
        match raw:
            case None:
                return {"data": None}
            case dict() | list() | tuple():
                return {"data": deep_normalize(raw)}
            case _:
                return {"data": {"value": coerce_value(raw)}}


DEFAULT_DETECTORS: tuple[ShapeDetector, ...] = (
    MetadataSeriesDetector(),
    ExchangeRateDetector(),
    SuccessEnvelopeDetector(),
    PaginatedDetector(),
    GraphQLDetector(),
    TimeSeriesDetector(),
    GenericDataDetector(),
    UniversalDetector(),
)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class ResponseNormalizer:
    """Applies the first matching detector, falling through on failure."""

    def __init__(self, detectors: tuple[ShapeDetector, ...] = DEFAULT_DETECTORS) -> None:
        self.detectors = detectors

    def normalize(self, raw: Any) -> dict:
        _, envelope = self.normalize_with_detector(raw)
        return envelope

    def normalize_with_detector(self, raw: Any) -> tuple[str, dict]:
        """Return ``(detector_name, envelope)`` for the first detector that succeeds."""
        for detector in self.detectors:
            try:
                if not detector.detect(raw):
                    continue
                envelope = detector.normalize(raw)
            except Exception:
                log.warning("normalizer_detector_failed", detector=detector.name, exc_info=True)
                continue
            if not isinstance(envelope, dict):
                log.warning(
                    "normalizer_detector_invalid_output",
                    detector=detector.name,
                    output_type=type(envelope).__name__,
                )
                continue
            log.debug("normalizer_detector_selected", detector=detector.name)
            return detector.name, _unwrap_nested_data(envelope)

        raise PollwiseError(
            code=ErrorCode.NORMALIZATION_FAILED,
            message="No shape detector could normalise the payload",
            suggestion="Inspect the raw API response; it may not be JSON.",
            recoverable=False,
        )
