from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    MALFORMED_INPUT = "MALFORMED_INPUT"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
    UPSTREAM_RATE_LIMITED = "UPSTREAM_RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"
    QUOTA_DENIED = "QUOTA_DENIED"


class PollwiseError(Exception):
    """Raised by components for all expected failure conditions.

    Caught by the gatekeeper and turned into a ``PollResult`` with
    ``ok=False``. Engines raise it and let it propagate; only the
    gatekeeper decides between a stale fallback and surfacing the failure.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str = "",
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }


class TransportError(PollwiseError):
    """Network-level failure: DNS, connection refused, timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code=ErrorCode.TRANSPORT_FAILURE,
            message=message,
            suggestion="Check your internet connection or whether the API host is reachable.",
            recoverable=True,
        )
