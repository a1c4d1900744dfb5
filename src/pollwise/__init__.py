"""pollwise: per-poll decisions between cached data, a fresh upstream call and backing off.

The engines live in their own modules (``profiler``, ``cache``, ``quota``,
``normalizer``); ``gatekeeper.RequestGatekeeper`` ties them together and
``runner`` is the command-line entry point.
"""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

_DISTRIBUTION = "pollwise"
UNKNOWN_VERSION = "0.0.0+unknown"


def _resolve_version() -> str:
    try:
        return version(_DISTRIBUTION)
    except PackageNotFoundError:
        # Imported from a checkout that was never installed.
        warnings.warn(
            f"Distribution {_DISTRIBUTION!r} is not installed; "
            f"reporting version {UNKNOWN_VERSION!r}.",
            RuntimeWarning,
            stacklevel=3,
        )
        return UNKNOWN_VERSION


__version__ = _resolve_version()
