"""
Reconstructable Handles
=======================

A handle pairs a value with its validated fingerprint. Handles are the
unit the specialization cache keys on: their identity is the fingerprint,
and the value can always be rebuilt from that identity alone.

Construction is the only expensive step. ``wrap`` fingerprints the value
and immediately decodes it again, so a codec that cannot faithfully
round-trip a value fails here, at the call site that introduced the
value, rather than deep inside a later cache miss.

Equality between handles is fingerprint-buffer equality. Two logically
equal values only yield equal handles when the codec is canonical (the
default CanonicalCodec is); with a non-canonical codec the worst outcome
is a spurious cache miss, never a wrong artifact.

Captured values inside converted closures use ``CaptureRecord`` instead:
an immutable {fingerprint, lazily reconstructed value} pair passed to the
closure as an ordinary parameter.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Tuple, TypeVar

from reconpy.encoding.fingerprint import (
    Fingerprint,
    FingerprintEngine,
    structurally_equal,
)
from reconpy.errors import NotReconstructableError, SerializationError, DecodeError

T = TypeVar('T')
logger = logging.getLogger(__name__)

_default_engine: Optional[FingerprintEngine] = None


def default_engine() -> FingerprintEngine:
    """Engine used when a caller does not inject one."""
    global _default_engine
    if _default_engine is None:
        _default_engine = FingerprintEngine()
    return _default_engine


class ReconstructableHandle(Generic[T]):
    """
    Immutable (value, fingerprint) pair with eager round-trip validation.

    Usage:
        >>> h = ReconstructableHandle([1, 2, 3])
        >>> h.reconstruct()
        [1, 2, 3]
        >>> h == ReconstructableHandle([1, 2, 3])
        True
    """

    __slots__ = ('_fingerprint', '_value', '_engine', '_retained')

    def __init__(
        self,
        value: T,
        engine: Optional[FingerprintEngine] = None,
        retain_value: bool = True,
    ):
        engine = engine or default_engine()
        fingerprint = engine.encode(value)
        decoded = engine.decode(fingerprint)
        try:
            equal = structurally_equal(decoded, value)
        except RecursionError as e:
            raise NotReconstructableError(
                f"Value of type {type(value).__qualname__} is nested too deeply "
                f"to compare after a round trip"
            ) from e
        if not equal:
            raise NotReconstructableError(
                f"Value of type {type(value).__qualname__} does not survive "
                f"a round trip through {type(engine.codec).__name__}"
            )
        self._init(fingerprint, value if retain_value else None, engine, retain_value)

    def _init(self, fingerprint, value, engine, retained):
        object.__setattr__(self, '_fingerprint', fingerprint)
        object.__setattr__(self, '_value', value)
        object.__setattr__(self, '_engine', engine)
        object.__setattr__(self, '_retained', retained)

    @classmethod
    def from_fingerprint(
        cls,
        fingerprint: Fingerprint,
        engine: Optional[FingerprintEngine] = None,
    ) -> 'ReconstructableHandle':
        """Rebuild a handle from identity alone (decodes once to validate)."""
        engine = engine or default_engine()
        value = engine.decode(fingerprint)
        handle = cls.__new__(cls)
        handle._init(fingerprint, value, engine, True)
        return handle

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def fingerprint(self) -> Fingerprint:
        return self._fingerprint

    @property
    def type_tag(self) -> type:
        return self._fingerprint.type_tag

    @property
    def value(self) -> T:
        """The retained original when available, else a fresh reconstruction."""
        if self._retained:
            return self._value
        return self.reconstruct()

    def identity(self) -> Fingerprint:
        return self._fingerprint

    def reconstruct(self) -> T:
        """Decode a fresh copy of the value from the fingerprint."""
        return self._engine.decode(self._fingerprint)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReconstructableHandle):
            return NotImplemented
        return self._fingerprint == other._fingerprint

    def __hash__(self) -> int:
        return hash(self._fingerprint)

    def __repr__(self) -> str:
        return f"ReconstructableHandle({self._fingerprint.short()})"

    def __reduce__(self):
        return (_rebuild_handle, (self._fingerprint.type_tag, self._fingerprint.buffer))


def _rebuild_handle(type_tag: type, buffer: bytes) -> ReconstructableHandle:
    return ReconstructableHandle.from_fingerprint(Fingerprint(type_tag, buffer))


@dataclass(frozen=True)
class CaptureRecord:
    """
    Explicit capture of a fingerprinted value for a closure environment.

    The value is reconstructed on first access and memoized on the record.
    """
    fingerprint: Fingerprint
    engine: FingerprintEngine = field(default_factory=default_engine, repr=False, compare=False)
    _cached: list = field(default_factory=list, init=False, repr=False, compare=False)

    @classmethod
    def of(cls, handle: ReconstructableHandle) -> 'CaptureRecord':
        return cls(handle.identity(), handle._engine)

    @property
    def value(self) -> Any:
        if not self._cached:
            self._cached.append(self.engine.decode(self.fingerprint))
        return self._cached[0]


# ═══════════════════════════════════════════════════════════════════════════
# Functional interface
# ═══════════════════════════════════════════════════════════════════════════

def wrap(
    value: T,
    engine: Optional[FingerprintEngine] = None,
    retain_value: bool = True,
) -> ReconstructableHandle[T]:
    """Fingerprint ``value`` and validate its round trip."""
    return ReconstructableHandle(value, engine=engine, retain_value=retain_value)


def reconstruct(handle: ReconstructableHandle[T]) -> T:
    return handle.reconstruct()


def identity(handle: ReconstructableHandle) -> Fingerprint:
    """The sanctioned way to obtain a cache key component from a handle."""
    return handle.identity()


def is_reconstructable(obj: Any) -> bool:
    """Whether ``obj`` already carries a fingerprint (handle or capture)."""
    return isinstance(obj, (ReconstructableHandle, CaptureRecord))


def can_reconstruct(value: Any, engine: Optional[FingerprintEngine] = None) -> bool:
    """Whether ``value`` could be wrapped. Never raises for bad values."""
    try:
        wrap(value, engine=engine, retain_value=False)
    except (SerializationError, DecodeError, NotReconstructableError) as e:
        logger.debug(f"Cannot reconstruct value of type {type(value).__qualname__}: {e}")
        return False
    return True


def reconstruct_capture(obj: Any) -> Any:
    """
    Rebinding helper inserted by the closure converter.

    Handles and capture records are reconstructed; anything else is
    passed through unchanged.
    """
    if isinstance(obj, ReconstructableHandle):
        return obj.reconstruct()
    if isinstance(obj, CaptureRecord):
        return obj.value
    return obj


def reconstruct_args(*args: Any) -> Tuple[Any, ...]:
    """Reconstruct every handle in ``args``, passing other values through."""
    return tuple(reconstruct_capture(a) for a in args)
