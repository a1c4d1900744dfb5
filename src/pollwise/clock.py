"""Wall-clock source shared by every engine.

All engine state is expressed in integer milliseconds since the epoch. Engines
take a ``Clock`` callable at construction so tests can drive time explicitly.
"""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)
