"""
Errors
======

Exception hierarchy shared by every reconpy component.

Each error also derives from the builtin exception a caller would
naturally catch for that failure (TypeError for values that cannot be
encoded, ValueError for corrupt buffers, and so on).
"""

from typing import Any, Optional


class ReconError(Exception):
    """Base class for all reconpy errors."""


class SerializationError(ReconError, TypeError):
    """A value could not be fingerprinted (live resource or cycle)."""

    def __init__(self, message: str, value_type: Optional[type] = None):
        super().__init__(message)
        self.value_type = value_type


class NonDeterministicEncodingError(SerializationError):
    """Encoding the same value twice produced different buffers."""


class DecodeError(ReconError, ValueError):
    """A fingerprint buffer is empty, truncated or corrupt."""


class TypeMismatchError(DecodeError, TypeError):
    """The decoded value's type differs from the fingerprint's type tag."""

    def __init__(self, expected: type, actual: type):
        super().__init__(
            f"Type mismatch: expected {_type_name(expected)}, "
            f"got {_type_name(actual)}"
        )
        self.expected = expected
        self.actual = actual


class NotReconstructableError(ReconError, ValueError):
    """decode(encode(value)) is not structurally equal to value."""


class StructuralError(ReconError, ValueError):
    """An expression tree contains a cycle."""


class GenerationError(ReconError, RuntimeError):
    """A generator failed on a cache miss (only raised when wrapping is on)."""

    def __init__(self, key: Any, message: str):
        super().__init__(message)
        self.key = key


def _type_name(tp: type) -> str:
    return getattr(tp, '__qualname__', repr(tp))
