"""
Fingerprint Engine
==================

Reduces a runtime value to a Fingerprint (type tag + immutable byte
buffer) and reconstructs the value from it.

The engine wraps an injected codec with the checks the codec itself is
not trusted to make:

1. Resource screening: live I/O handles, sockets, locks, threads,
   generators, coroutines, frames and modules are rejected up front.
2. Cycle detection: the value graph is walked with an ancestor stack
   before encoding, so a self-referential structure fails explicitly
   instead of recursing forever. Shared (acyclic) references are fine.
3. Determinism: by default every value is encoded twice and the two
   buffers must match byte-for-byte. Fingerprint equality is raw-byte
   equality, so an unstable codec would silently turn every lookup into
   a cache miss.
4. Buffer validation: empty buffers are never produced nor accepted, and
   a decoded value must have exactly the type recorded in the tag.
"""

import dataclasses
import hashlib
import io
import logging
import socket
import struct
import threading
import types
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Set

import numpy as np

from reconpy.encoding.codec import CanonicalCodec
from reconpy.errors import (
    DecodeError,
    NonDeterministicEncodingError,
    SerializationError,
    TypeMismatchError,
)

logger = logging.getLogger(__name__)


class Codec(Protocol):
    """Injected wire format: deterministic and round-trip safe."""

    def encode(self, value: Any) -> bytes: ...

    def decode(self, buffer: bytes) -> Any: ...


# Objects that hold live process resources and can never be fingerprinted
_RESOURCE_TYPES = (
    io.IOBase,
    socket.socket,
    threading.Thread,
    threading.Event,
    threading.Condition,
    threading.Semaphore,
    type(threading.Lock()),
    type(threading.RLock()),
    types.GeneratorType,
    types.CoroutineType,
    types.AsyncGeneratorType,
    types.FrameType,
    types.TracebackType,
    types.ModuleType,
)

_F64 = struct.Struct('>d')


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """
    Byte-exact identity of an encoded value.

    Equality and hashing use ``buffer`` only. ``digest`` is a SHA-256 of
    the buffer meant for logs and diagnostics, never for comparison.
    """
    type_tag: type
    buffer: bytes

    def __post_init__(self):
        if not isinstance(self.buffer, bytes):
            object.__setattr__(self, 'buffer', bytes(self.buffer))
        if not self.buffer:
            raise DecodeError("Fingerprint buffer must not be empty")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self.buffer == other.buffer

    def __hash__(self) -> int:
        return hash(self.buffer)

    def __len__(self) -> int:
        return len(self.buffer)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.buffer).hexdigest()

    def short(self, length: int = 12) -> str:
        """Short printable form, e.g. ``list:3f9a0c21be44``."""
        name = getattr(self.type_tag, '__qualname__', str(self.type_tag))
        return f"{name}:{self.digest[:length]}"

    def __repr__(self) -> str:
        return f"Fingerprint({self.short()}, {len(self.buffer)} bytes)"


class FingerprintEngine:
    """
    Validating front-end over a codec.

    Usage:
        >>> engine = FingerprintEngine()
        >>> fp = engine.encode([1, 2, 3])
        >>> engine.decode(fp)
        [1, 2, 3]
        >>> engine.encode([1, 2, 3]) == fp
        True
    """

    MAX_DEPTH = 200

    def __init__(
        self,
        codec: Optional[Codec] = None,
        check_determinism: bool = True,
        max_depth: int = MAX_DEPTH,
    ):
        self.MAX_DEPTH = max_depth
        self.codec = codec if codec is not None else CanonicalCodec(max_depth=max_depth)
        self.check_determinism = check_determinism
        self.stats = {
            'encoded': 0,
            'decoded': 0,
            'rejected': 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encode(self, value: Any) -> Fingerprint:
        """Fingerprint a value. Raises SerializationError if it cannot be."""
        try:
            self._check_structure(value)
            buffer = self._encode_once(value)
            if self.check_determinism and self._encode_once(value) != buffer:
                raise NonDeterministicEncodingError(
                    f"Codec produced different buffers for the same "
                    f"{type(value).__qualname__} value",
                    type(value),
                )
        except SerializationError:
            self.stats['rejected'] += 1
            raise

        fingerprint = Fingerprint(type(value), buffer)
        self.stats['encoded'] += 1
        logger.debug(f"Encoded {fingerprint.short()} ({len(buffer)} bytes)")
        return fingerprint

    def decode(self, fingerprint: Fingerprint) -> Any:
        """Reconstruct the value a fingerprint identifies."""
        return self.decode_bytes(fingerprint.type_tag, fingerprint.buffer)

    def decode_bytes(self, type_tag: type, buffer: bytes) -> Any:
        """Decode a raw buffer from an external source under the same checks."""
        if not buffer:
            raise DecodeError("Cannot decode an empty buffer")
        try:
            value = self.codec.decode(bytes(buffer))
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(
                f"Cannot decode {getattr(type_tag, '__qualname__', type_tag)} "
                f"buffer: {e}"
            ) from e

        if type(value) is not type_tag:
            raise TypeMismatchError(type_tag, type(value))
        self.stats['decoded'] += 1
        return value

    def can_encode(self, value: Any) -> bool:
        try:
            self.encode(value)
        except SerializationError as e:
            logger.debug(f"Cannot encode {type(value).__qualname__}: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode_once(self, value: Any) -> bytes:
        try:
            buffer = self.codec.encode(value)
        except SerializationError:
            raise
        except RecursionError as e:
            raise SerializationError(
                f"Value of type {type(value).__qualname__} is nested too deeply",
                type(value),
            ) from e
        except Exception as e:
            raise SerializationError(
                f"Cannot serialize value of type {type(value).__qualname__}: {e}",
                type(value),
            ) from e

        if not buffer:
            raise SerializationError(
                f"Serialization produced an empty buffer for "
                f"{type(value).__qualname__}",
                type(value),
            )
        return bytes(buffer)

    def _check_structure(self, value: Any):
        """Reject live resources, cycles and excessive nesting."""
        self._walk(value, set(), 0)

    def _walk(self, value: Any, ancestors: Set[int], depth: int):
        if isinstance(value, _RESOURCE_TYPES):
            raise SerializationError(
                f"Cannot fingerprint live resource of type "
                f"{type(value).__qualname__}",
                type(value),
            )
        if depth > self.MAX_DEPTH:
            raise SerializationError(
                f"Value nesting exceeds {self.MAX_DEPTH} levels", type(value)
            )

        children = _children(value)
        if children is None:
            return

        key = id(value)
        if key in ancestors:
            raise SerializationError(
                f"Cyclic reference through {type(value).__qualname__} "
                f"cannot be fingerprinted",
                type(value),
            )
        ancestors.add(key)
        try:
            for child in children:
                self._walk(child, ancestors, depth + 1)
        finally:
            ancestors.discard(key)


def _children(value: Any):
    """Child objects to walk for cycle detection, or None for leaves."""
    if isinstance(value, (str, bytes, bytearray, int, float, complex, range,
                          type, np.ndarray, np.generic)) or value is None:
        return None
    if isinstance(value, dict):
        return [item for pair in value.items() for item in pair]
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if dataclasses.is_dataclass(value):
        return [getattr(value, f.name) for f in dataclasses.fields(value)]
    if hasattr(value, '__dict__') and not callable(value):
        return list(vars(value).values())
    return None


def structurally_equal(a: Any, b: Any) -> bool:
    """
    Structural equality used to validate round trips.

    Floats compare bit-exactly (NaN equals NaN, 0.0 differs from -0.0),
    containers recursively and numpy values by dtype, shape and bytes.
    Types must match exactly.
    """
    if type(a) is not type(b):
        return False
    if isinstance(a, float):
        return _F64.pack(a) == _F64.pack(b)
    if isinstance(a, complex):
        return (_F64.pack(a.real) == _F64.pack(b.real)
                and _F64.pack(a.imag) == _F64.pack(b.imag))
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(
            structurally_equal(x, y) for x, y in zip(a, b)
        )
    if isinstance(a, dict):
        if len(a) != len(b):
            return False
        for k, v in a.items():
            if k not in b or not structurally_equal(v, b[k]):
                return False
        return True
    if isinstance(a, (set, frozenset)):
        if len(a) != len(b):
            return False
        if a == b:
            return True
        # NaN members defeat hash lookup; fall back to pairwise matching
        remaining = list(b)
        for x in a:
            for i, y in enumerate(remaining):
                if structurally_equal(x, y):
                    del remaining[i]
                    break
            else:
                return False
        return True
    if isinstance(a, (np.ndarray, np.generic)):
        return (a.dtype == b.dtype and np.shape(a) == np.shape(b)
                and np.asarray(a).tobytes() == np.asarray(b).tobytes())
    if dataclasses.is_dataclass(a) and not isinstance(a, type):
        return all(
            structurally_equal(getattr(a, f.name), getattr(b, f.name))
            for f in dataclasses.fields(a)
        )
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False
