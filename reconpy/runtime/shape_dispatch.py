"""
Shape Dispatch
==============

Closed tagged-variant dispatch for generators that branch on the
structure of a reconstructed value.

Instead of an open chain of ``isinstance`` checks scattered through each
generator, a value's shape is classified into one of a fixed set of tags
and exactly one registered callback runs for it.
"""

from collections.abc import Mapping, Sequence, Set
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional

import numpy as np


class ShapeTag(Enum):
    SEQUENCE = auto()
    MAPPING = auto()
    SCALAR = auto()
    TUPLE = auto()
    OTHER = auto()


_SCALAR_TYPES = (type(None), bool, int, float, complex, str, bytes, np.generic)


def shape_of(value: Any) -> ShapeTag:
    """Structural tag of a value. Tuples are checked before sequences."""
    if isinstance(value, _SCALAR_TYPES):
        return ShapeTag.SCALAR
    if isinstance(value, tuple):
        return ShapeTag.TUPLE
    if isinstance(value, Mapping):
        return ShapeTag.MAPPING
    if isinstance(value, (Sequence, np.ndarray, Set)):
        return ShapeTag.SEQUENCE
    return ShapeTag.OTHER


class ShapeDispatch:
    """
    One callback per ShapeTag, selected by the first argument's shape.

    Usage:
        >>> describe = ShapeDispatch(
        ...     sequence=lambda v: f"{len(v)} items",
        ...     mapping=lambda v: f"{len(v)} keys",
        ...     scalar=lambda v: repr(v),
        ... )
        >>> describe([1, 2, 3])
        '3 items'

    A ShapeDispatch is a plain callable, so it can be handed to
    ``SpecializationCache.generate`` as the generator.
    """

    def __init__(
        self,
        sequence: Optional[Callable[..., Any]] = None,
        mapping: Optional[Callable[..., Any]] = None,
        scalar: Optional[Callable[..., Any]] = None,
        tuple: Optional[Callable[..., Any]] = None,
        other: Optional[Callable[..., Any]] = None,
    ):
        self._callbacks: Dict[ShapeTag, Callable[..., Any]] = {}
        for tag, callback in (
            (ShapeTag.SEQUENCE, sequence),
            (ShapeTag.MAPPING, mapping),
            (ShapeTag.SCALAR, scalar),
            (ShapeTag.TUPLE, tuple),
            (ShapeTag.OTHER, other),
        ):
            if callback is not None:
                self._callbacks[tag] = callback

    def register(self, tag: ShapeTag, callback: Callable[..., Any]) -> Callable[..., Any]:
        self._callbacks[tag] = callback
        return callback

    def handles(self, tag: ShapeTag) -> bool:
        return tag in self._callbacks

    def __call__(self, value: Any, *rest: Any) -> Any:
        tag = shape_of(value)
        try:
            callback = self._callbacks[tag]
        except KeyError:
            raise LookupError(
                f"No {tag.name.lower()} callback registered for "
                f"{type(value).__qualname__}"
            ) from None
        return callback(value, *rest)
