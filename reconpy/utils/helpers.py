"""Small helpers shared by the cache and the autogen pipeline."""

import functools
import time
from typing import Any, Callable

_UNITS = ((1_000_000_000, 's', 3), (1_000_000, 'ms', 2), (1_000, 'µs', 1))


class BuildTimer:
    """Measures how long one generator invocation takes."""

    def __init__(self):
        self.start_ns = 0
        self.end_ns = 0

    def __enter__(self):
        self.start_ns = time.perf_counter_ns()
        return self

    def __exit__(self, *exc):
        self.end_ns = time.perf_counter_ns()

    @property
    def elapsed_ns(self) -> int:
        return self.end_ns - self.start_ns

    @staticmethod
    def describe(ns: float) -> str:
        """Duration in the largest unit it reaches, e.g. ``1.50 ms``."""
        for scale, unit, digits in _UNITS:
            if ns >= scale:
                return f"{ns / scale:.{digits}f} {unit}"
        return f"{ns:.0f} ns"

    def __str__(self) -> str:
        return self.describe(self.elapsed_ns)


def qualified_name(func: Callable[..., Any]) -> str:
    """``module.qualname`` of a callable, looking through functools wrappers."""
    while isinstance(func, functools.partial):
        func = func.func
    module = getattr(func, '__module__', None) or '<unknown>'
    name = getattr(func, '__qualname__', None) or getattr(func, '__name__', None)
    if name is None:
        name = type(func).__qualname__
    return f"{module}.{name}"
