"""
Canonical Codec
===============

Deterministic binary codec used as the default fingerprint wire format.

Every value is written as a one-byte tag followed by a fixed-width or
length-prefixed payload (``struct`` big-endian). Two properties matter
more than compactness:

1. Determinism: the same logical value always yields the same bytes.
   Dict entries and set members are emitted sorted by their own encoded
   bytes, so insertion order never leaks into the buffer.
2. Exactness: floats are stored as raw IEEE-754 doubles, so NaN, ±Inf
   and the sign of zero survive a round trip bit-for-bit.

Supported values:
    None, bool, int (any size), float, complex, str, bytes, bytearray,
    list, tuple, dict, set, frozenset, range, Enum members, dataclass
    instances, numpy arrays (non-object dtypes) and numpy scalars.

Any other object is rejected with SerializationError. The codec is an
injectable collaborator: anything exposing ``encode(value) -> bytes`` and
``decode(bytes) -> value`` may replace it in a FingerprintEngine.
"""

import dataclasses
import enum
import importlib
import struct
from typing import Any, Callable, Dict, List

import numpy as np

from reconpy.errors import DecodeError, SerializationError


MAGIC = b'RC'
VERSION = 1

# Tags
_NONE = b'N'
_TRUE = b'T'
_FALSE = b'F'
_INT = b'i'
_FLOAT = b'f'
_COMPLEX = b'c'
_STR = b's'
_BYTES = b'b'
_BYTEARRAY = b'a'
_LIST = b'l'
_TUPLE = b't'
_DICT = b'd'
_SET = b'S'
_FROZENSET = b'z'
_RANGE = b'r'
_ENUM = b'e'
_DATACLASS = b'D'
_NDARRAY = b'n'
_NPSCALAR = b'g'

_U32 = struct.Struct('>I')
_U64 = struct.Struct('>Q')
_F64 = struct.Struct('>d')

# numpy dtype kinds with a fixed, pointer-free memory layout
_ARRAY_KINDS = frozenset('biufcSUmM')


class CanonicalCodec:
    """
    Deterministic tagged binary codec.

    Usage:
        >>> codec = CanonicalCodec()
        >>> buf = codec.encode({'b': 2, 'a': 1})
        >>> buf == codec.encode({'a': 1, 'b': 2})
        True
        >>> codec.decode(buf)
        {'a': 1, 'b': 2}
    """

    MAX_DEPTH = 200

    def __init__(self, max_depth: int = MAX_DEPTH):
        self.MAX_DEPTH = max_depth
        self._encoders: Dict[type, Callable[[Any, List[bytes], int], None]] = {
            type(None): self._encode_none,
            bool: self._encode_bool,
            int: self._encode_int,
            float: self._encode_float,
            complex: self._encode_complex,
            str: self._encode_str,
            bytes: self._encode_bytes,
            bytearray: self._encode_bytearray,
            list: self._encode_list,
            tuple: self._encode_tuple,
            dict: self._encode_dict,
            set: self._encode_set,
            frozenset: self._encode_frozenset,
            range: self._encode_range,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encode(self, value: Any) -> bytes:
        """Encode a value into canonical bytes."""
        out: List[bytes] = [MAGIC, bytes([VERSION])]
        self._encode_value(value, out, 0)
        return b''.join(out)

    def decode(self, buffer: bytes) -> Any:
        """Decode canonical bytes back into a value."""
        if not buffer:
            raise DecodeError("Cannot decode an empty buffer")
        reader = _Reader(bytes(buffer))
        if reader.read(2) != MAGIC:
            raise DecodeError("Buffer does not start with the codec magic")
        version = reader.read(1)[0]
        if version != VERSION:
            raise DecodeError(f"Unsupported codec version {version}")
        value = self._decode_value(reader, 0)
        if not reader.at_end():
            raise DecodeError(
                f"{reader.remaining()} trailing bytes after decoded value"
            )
        return value

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode_value(self, value: Any, out: List[bytes], depth: int):
        if depth > self.MAX_DEPTH:
            raise SerializationError(
                f"Value nesting exceeds {self.MAX_DEPTH} levels", type(value)
            )

        encoder = self._encoders.get(type(value))
        if encoder is not None:
            encoder(value, out, depth)
        elif isinstance(value, enum.Enum):
            self._encode_enum(value, out)
        elif type(value) is np.ndarray:
            self._encode_ndarray(value, out)
        elif isinstance(value, np.generic):
            self._encode_npscalar(value, out)
        elif dataclasses.is_dataclass(value) and not isinstance(value, type):
            self._encode_dataclass(value, out, depth)
        else:
            raise SerializationError(
                f"Cannot encode value of type {type(value).__qualname__}",
                type(value),
            )

    def _encode_none(self, value, out, depth):
        out.append(_NONE)

    def _encode_bool(self, value, out, depth):
        out.append(_TRUE if value else _FALSE)

    def _encode_int(self, value, out, depth):
        out.append(_INT)
        out.append(self._int_payload(value))

    def _encode_float(self, value, out, depth):
        out.append(_FLOAT)
        out.append(_F64.pack(value))

    def _encode_complex(self, value, out, depth):
        out.append(_COMPLEX)
        out.append(_F64.pack(value.real))
        out.append(_F64.pack(value.imag))

    def _encode_str(self, value, out, depth):
        out.append(_STR)
        out.append(self._sized(value.encode('utf-8', 'surrogatepass')))

    def _encode_bytes(self, value, out, depth):
        out.append(_BYTES)
        out.append(self._sized(value))

    def _encode_bytearray(self, value, out, depth):
        out.append(_BYTEARRAY)
        out.append(self._sized(bytes(value)))

    def _encode_list(self, value, out, depth):
        out.append(_LIST)
        out.append(_U32.pack(len(value)))
        for item in value:
            self._encode_value(item, out, depth + 1)

    def _encode_tuple(self, value, out, depth):
        out.append(_TUPLE)
        out.append(_U32.pack(len(value)))
        for item in value:
            self._encode_value(item, out, depth + 1)

    def _encode_dict(self, value, out, depth):
        entries = sorted(
            (self._fragment(k, depth + 1), self._fragment(v, depth + 1))
            for k, v in value.items()
        )
        out.append(_DICT)
        out.append(_U32.pack(len(entries)))
        for key_bytes, value_bytes in entries:
            out.append(key_bytes)
            out.append(value_bytes)

    def _encode_set(self, value, out, depth):
        out.append(_SET)
        self._encode_members(value, out, depth)

    def _encode_frozenset(self, value, out, depth):
        out.append(_FROZENSET)
        self._encode_members(value, out, depth)

    def _encode_members(self, value, out, depth):
        members = sorted(self._fragment(m, depth + 1) for m in value)
        out.append(_U32.pack(len(members)))
        out.extend(members)

    def _encode_range(self, value, out, depth):
        out.append(_RANGE)
        for part in (value.start, value.stop, value.step):
            out.append(self._int_payload(part))

    def _encode_enum(self, value: enum.Enum, out):
        cls = type(value)
        out.append(_ENUM)
        out.append(self._sized(cls.__module__.encode('utf-8')))
        out.append(self._sized(cls.__qualname__.encode('utf-8')))
        out.append(self._sized(value.name.encode('utf-8')))

    def _encode_dataclass(self, value, out, depth):
        cls = type(value)
        fields = dataclasses.fields(value)
        out.append(_DATACLASS)
        out.append(self._sized(cls.__module__.encode('utf-8')))
        out.append(self._sized(cls.__qualname__.encode('utf-8')))
        out.append(_U32.pack(len(fields)))
        for f in fields:
            out.append(self._sized(f.name.encode('utf-8')))
            self._encode_value(getattr(value, f.name), out, depth + 1)

    def _encode_ndarray(self, value: np.ndarray, out):
        if value.dtype.kind not in _ARRAY_KINDS:
            raise SerializationError(
                f"Cannot encode numpy array with dtype {value.dtype}",
                np.ndarray,
            )
        out.append(_NDARRAY)
        out.append(self._sized(value.dtype.str.encode('ascii')))
        out.append(_U32.pack(value.ndim))
        for dim in value.shape:
            out.append(_U64.pack(dim))
        out.append(self._sized(np.ascontiguousarray(value).tobytes()))

    def _encode_npscalar(self, value: np.generic, out):
        if value.dtype.kind not in _ARRAY_KINDS:
            raise SerializationError(
                f"Cannot encode numpy scalar with dtype {value.dtype}",
                type(value),
            )
        out.append(_NPSCALAR)
        out.append(self._sized(value.dtype.str.encode('ascii')))
        out.append(self._sized(np.asarray(value).tobytes()))

    def _fragment(self, value: Any, depth: int) -> bytes:
        parts: List[bytes] = []
        self._encode_value(value, parts, depth)
        return b''.join(parts)

    @staticmethod
    def _sized(payload: bytes) -> bytes:
        return _U32.pack(len(payload)) + payload

    @classmethod
    def _int_payload(cls, value: int) -> bytes:
        width = value.bit_length() // 8 + 1
        return cls._sized(value.to_bytes(width, 'big', signed=True))

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode_value(self, reader: '_Reader', depth: int) -> Any:
        if depth > self.MAX_DEPTH:
            raise DecodeError(f"Buffer nesting exceeds {self.MAX_DEPTH} levels")

        tag = reader.read(1)
        if tag == _NONE:
            return None
        if tag == _TRUE:
            return True
        if tag == _FALSE:
            return False
        if tag == _INT:
            return self._read_int(reader)
        if tag == _FLOAT:
            return _F64.unpack(reader.read(8))[0]
        if tag == _COMPLEX:
            real = _F64.unpack(reader.read(8))[0]
            imag = _F64.unpack(reader.read(8))[0]
            return complex(real, imag)
        if tag == _STR:
            return self._read_text(reader, 'surrogatepass')
        if tag == _BYTES:
            return reader.read_sized()
        if tag == _BYTEARRAY:
            return bytearray(reader.read_sized())
        if tag == _LIST:
            return [self._decode_value(reader, depth + 1)
                    for _ in range(reader.read_u32())]
        if tag == _TUPLE:
            return tuple(self._decode_value(reader, depth + 1)
                         for _ in range(reader.read_u32()))
        if tag == _DICT:
            return self._decode_dict(reader, depth)
        if tag == _SET:
            return set(self._decode_members(reader, depth))
        if tag == _FROZENSET:
            return frozenset(self._decode_members(reader, depth))
        if tag == _RANGE:
            return range(self._read_int(reader), self._read_int(reader),
                         self._read_int(reader))
        if tag == _ENUM:
            return self._decode_enum(reader)
        if tag == _DATACLASS:
            return self._decode_dataclass(reader, depth)
        if tag == _NDARRAY:
            return self._decode_ndarray(reader)
        if tag == _NPSCALAR:
            return self._decode_npscalar(reader)
        raise DecodeError(f"Unknown tag byte {tag!r} at offset {reader.pos - 1}")

    def _decode_dict(self, reader: '_Reader', depth: int) -> dict:
        result = {}
        for _ in range(reader.read_u32()):
            key = self._decode_value(reader, depth + 1)
            try:
                result[key] = self._decode_value(reader, depth + 1)
            except TypeError as e:
                raise DecodeError(f"Unhashable dict key in buffer: {e}") from e
        return result

    def _decode_members(self, reader: '_Reader', depth: int) -> List[Any]:
        members = [self._decode_value(reader, depth + 1)
                   for _ in range(reader.read_u32())]
        for m in members:
            try:
                hash(m)
            except TypeError as e:
                raise DecodeError(f"Unhashable set member in buffer: {e}") from e
        return members

    def _decode_enum(self, reader: '_Reader') -> enum.Enum:
        cls = self._resolve_class(reader)
        name = self._read_text(reader)
        try:
            return cls[name]
        except (KeyError, TypeError) as e:
            raise DecodeError(f"{cls.__qualname__} has no member {name!r}") from e

    def _decode_dataclass(self, reader: '_Reader', depth: int) -> Any:
        cls = self._resolve_class(reader)
        if not dataclasses.is_dataclass(cls):
            raise DecodeError(f"{cls.__qualname__} is not a dataclass")
        obj = cls.__new__(cls)
        for _ in range(reader.read_u32()):
            name = self._read_text(reader)
            # Bypass frozen dataclass __setattr__
            object.__setattr__(obj, name, self._decode_value(reader, depth + 1))
        return obj

    def _decode_ndarray(self, reader: '_Reader') -> np.ndarray:
        dtype = self._read_dtype(reader)
        shape = tuple(reader.read_u64() for _ in range(reader.read_u32()))
        data = reader.read_sized()
        if not data and 0 in shape:
            return np.empty(shape, dtype=dtype)
        try:
            return np.frombuffer(data, dtype=dtype).reshape(shape).copy()
        except ValueError as e:
            raise DecodeError(f"Corrupt array payload: {e}") from e

    def _decode_npscalar(self, reader: '_Reader') -> np.generic:
        dtype = self._read_dtype(reader)
        data = reader.read_sized()
        if len(data) != dtype.itemsize:
            raise DecodeError(
                f"Scalar payload of {len(data)} bytes does not match {dtype}"
            )
        return np.frombuffer(data, dtype=dtype)[0]

    def _read_dtype(self, reader: '_Reader') -> np.dtype:
        text = self._read_text(reader)
        try:
            return np.dtype(text)
        except TypeError as e:
            raise DecodeError(f"Invalid dtype {text!r}") from e

    def _resolve_class(self, reader: '_Reader') -> type:
        module_name = self._read_text(reader)
        qualname = self._read_text(reader)
        try:
            obj: Any = importlib.import_module(module_name)
            for part in qualname.split('.'):
                obj = getattr(obj, part)
        except (ImportError, AttributeError) as e:
            raise DecodeError(f"Cannot resolve {module_name}.{qualname}") from e
        if not isinstance(obj, type):
            raise DecodeError(f"{module_name}.{qualname} is not a class")
        return obj

    @staticmethod
    def _read_int(reader: '_Reader') -> int:
        payload = reader.read_sized()
        if not payload:
            raise DecodeError("Empty integer payload")
        return int.from_bytes(payload, 'big', signed=True)

    @staticmethod
    def _read_text(reader: '_Reader', errors: str = 'strict') -> str:
        try:
            return reader.read_sized().decode('utf-8', errors)
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 text: {e}") from e


class _Reader:
    """Bounds-checked cursor over an immutable buffer."""

    def __init__(self, buffer: bytes):
        self.buffer = buffer
        self.pos = 0

    def read(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.buffer):
            raise DecodeError(
                f"Truncated buffer: needed {n} bytes at offset {self.pos}, "
                f"only {len(self.buffer) - self.pos} left"
            )
        chunk = self.buffer[self.pos:end]
        self.pos = end
        return chunk

    def read_u32(self) -> int:
        return _U32.unpack(self.read(4))[0]

    def read_u64(self) -> int:
        return _U64.unpack(self.read(8))[0]

    def read_sized(self) -> bytes:
        return self.read(self.read_u32())

    def remaining(self) -> int:
        return len(self.buffer) - self.pos

    def at_end(self) -> bool:
        return self.pos == len(self.buffer)
