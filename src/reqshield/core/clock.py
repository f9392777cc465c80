"""
Wall-clock source for window and expiry arithmetic.

All timestamps in the pipeline are epoch milliseconds. Components take a
``clock`` callable so tests can substitute a deterministic one.
"""

import time
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
