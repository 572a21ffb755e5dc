"""
Utility helpers.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Optional


def floor_to(value: int, step: int) -> int:
    return (value // step) * step


def ceil_to(value: int, step: int) -> int:
    return int(math.ceil(value / step)) * step


def backoff_delay(base: float, attempt: int) -> float:
    """Delay before attempt ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    return base * (2 ** (attempt - 1))


def safe_call(fn: Optional[Callable[..., Any]], *args: Any,
              on_error: Optional[Callable[[Exception], None]] = None) -> Any:
    """Invoke a consumer callback without letting its failure escape into the engine."""
    if fn is None:
        return None
    try:
        return fn(*args)
    except Exception as exc:
        if on_error:
            on_error(exc)
        return None
