"""
Two-phase specialization
========================

Phase 1 runs once per distinct set of values: the decorated function
receives the reconstructed values and returns a specialized artifact,
typically a closure with the values baked in. Phase 2 is every later call
with equal values, which returns the cached artifact without running
phase 1 again.

Usage:
    >>> cache = SpecializationCache()
    >>> @autogen(cache=cache)
    ... def make_scaler(factors):
    ...     scale = tuple(factors)
    ...     return lambda xs: [x * s for x, s in zip(xs, scale)]
    >>> scaler = make_scaler(wrap([2, 3]))
    >>> scaler([1, 1])
    [2, 3]
    >>> make_scaler(wrap([2, 3])) is scaler
    True
"""

import functools
import logging
from typing import Any, Callable, Optional

from reconpy.runtime.specialization_cache import SpecializationCache
from reconpy.utils.helpers import qualified_name

logger = logging.getLogger(__name__)

_default_cache: Optional[SpecializationCache] = None


def default_cache() -> SpecializationCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = SpecializationCache()
    return _default_cache


def autogen(
    func: Callable = None,
    *,
    cache: Optional[SpecializationCache] = None,
    operation_id: Optional[str] = None,
) -> Callable:
    """
    Decorator turning an artifact builder into a memoized specializer.

    The wrapper accepts handles or plain values; plain values are wrapped
    by the cache. The operation id defaults to the function's qualified
    name, so two builders never share entries by accident.
    """
    if func is None:
        return lambda f: autogen(f, cache=cache, operation_id=operation_id)

    op_id = operation_id or qualified_name(func)

    def target() -> SpecializationCache:
        return cache if cache is not None else default_cache()

    @functools.wraps(func)
    def wrapper(*handles: Any) -> Any:
        return target().generate(op_id, func, *handles)

    def invalidate() -> int:
        """Drop every artifact built by this function."""
        dropped = target().evict_operation(op_id)
        logger.debug(f"Invalidated {dropped} artifact(s) of {op_id}")
        return dropped

    wrapper.operation_id = op_id
    wrapper.generator = func
    wrapper.invalidate = invalidate
    return wrapper


def specialize(
    func: Callable,
    *handles: Any,
    cache: Optional[SpecializationCache] = None,
) -> Any:
    """
    One-shot form of ``autogen``: build (or fetch) the artifact of ``func``
    for ``handles`` without decorating it.

    An ``autogen`` wrapper passed here is called directly.
    """
    if hasattr(func, 'generator') and hasattr(func, 'operation_id'):
        return func(*handles)
    target = cache if cache is not None else default_cache()
    return target.generate(qualified_name(func), func, *handles)
