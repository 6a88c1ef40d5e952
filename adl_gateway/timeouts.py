"""Request deadline helpers.

Deadlines are absolute `time.monotonic()` values. `None` means unbounded.
"""

from __future__ import annotations

import time
from typing import Optional

from .errors import timeout_error


def deadline_after(seconds: Optional[float]) -> Optional[float]:
    if seconds is None or seconds <= 0:
        return None
    return time.monotonic() + float(seconds)


def remaining(deadline: Optional[float]) -> Optional[float]:
    """Seconds left before `deadline`, floored at zero."""
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def check_deadline(deadline: Optional[float], op_name: str) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise timeout_error(op_name)
