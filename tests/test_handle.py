"""
Tests for reconstructable handles and capture records.

Validates:
  - Eager round-trip validation at construction
  - Reconstruction is pure and repeatable
  - Handle equality and hashing follow the fingerprint
  - Immutability, pickling and rebuilding from identity alone
  - Functional helpers: can_reconstruct, reconstruct_args, reconstruct_capture
"""

import math
import pickle
import threading

import pytest

from reconpy.encoding.fingerprint import FingerprintEngine
from reconpy.errors import NotReconstructableError, SerializationError
from reconpy.reconstruct.handle import (
    CaptureRecord,
    ReconstructableHandle,
    can_reconstruct,
    identity,
    is_reconstructable,
    reconstruct,
    reconstruct_args,
    reconstruct_capture,
    wrap,
)


class LossyCodec:
    """Drops every float to an int, so floats never survive a round trip."""

    def encode(self, value):
        return repr(value).encode()

    def decode(self, buffer):
        text = buffer.decode()
        return float(int(float(text)))


# ---------- Handle Tests ----------

class TestReconstructableHandle:
    def setup_method(self):
        self.engine = FingerprintEngine()

    def test_wrap_and_reconstruct(self):
        h = wrap({'a': [1, 2]}, engine=self.engine)
        assert reconstruct(h) == {'a': [1, 2]}

    def test_reconstruct_returns_fresh_copies(self):
        original = [1, [2, 3]]
        h = wrap(original, engine=self.engine)
        first = h.reconstruct()
        second = h.reconstruct()
        assert first == second == original
        assert first is not second
        first.append(4)
        assert h.reconstruct() == original

    def test_equal_values_equal_handles(self):
        a = wrap({'x': 1, 'y': 2}, engine=self.engine)
        b = wrap({'y': 2, 'x': 1}, engine=self.engine)
        assert a == b
        assert hash(a) == hash(b)
        assert identity(a) == identity(b)
        assert len({a, b}) == 1

    def test_special_floats(self):
        for value in (float('nan'), math.inf, -math.inf, -0.0):
            h = wrap(value, engine=self.engine)
            result = h.reconstruct()
            assert math.copysign(1.0, result) == math.copysign(1.0, value)
            assert math.isnan(result) == math.isnan(value)

    def test_lossy_codec_rejected(self):
        engine = FingerprintEngine(codec=LossyCodec())
        with pytest.raises(NotReconstructableError):
            wrap(2.5, engine=engine)

    def test_lossy_codec_accepts_exact_values(self):
        engine = FingerprintEngine(codec=LossyCodec())
        assert wrap(3.0, engine=engine).reconstruct() == 3.0

    def test_unencodable_value(self):
        with pytest.raises(SerializationError):
            wrap(threading.Lock(), engine=self.engine)

    def test_nesting_at_depth_limit(self):
        value = []
        for _ in range(FingerprintEngine.MAX_DEPTH):
            value = [value]
        h = wrap(value, engine=self.engine)
        assert h.fingerprint == self.engine.encode(value)

    def test_nesting_past_depth_limit(self):
        value = []
        for _ in range(FingerprintEngine.MAX_DEPTH + 1):
            value = [value]
        with pytest.raises(SerializationError):
            wrap(value, engine=self.engine)

    def test_immutable(self):
        h = wrap(1, engine=self.engine)
        with pytest.raises(AttributeError):
            h._value = 2
        with pytest.raises(AttributeError):
            del h._fingerprint

    def test_retained_value(self):
        value = [1, 2, 3]
        assert wrap(value, engine=self.engine).value is value

    def test_unretained_value(self):
        value = [1, 2, 3]
        h = ReconstructableHandle(value, engine=self.engine, retain_value=False)
        assert h.value == value
        assert h.value is not value

    def test_from_fingerprint(self):
        h = wrap(('a', 1), engine=self.engine)
        rebuilt = ReconstructableHandle.from_fingerprint(h.fingerprint, engine=self.engine)
        assert rebuilt == h
        assert rebuilt.reconstruct() == ('a', 1)
        assert rebuilt.type_tag is tuple

    def test_pickle(self):
        h = wrap({'k': (1, 2.5)})
        restored = pickle.loads(pickle.dumps(h))
        assert restored == h
        assert restored.reconstruct() == {'k': (1, 2.5)}

    def test_repr(self):
        assert 'ReconstructableHandle(list:' in repr(wrap([1], engine=self.engine))


# ---------- Helper Tests ----------

class TestHandleHelpers:
    def setup_method(self):
        self.engine = FingerprintEngine()

    def test_can_reconstruct(self):
        assert can_reconstruct([1, 2], engine=self.engine)
        assert not can_reconstruct(threading.Lock(), engine=self.engine)
        cyclic = []
        cyclic.append(cyclic)
        assert not can_reconstruct(cyclic, engine=self.engine)

    def test_is_reconstructable(self):
        h = wrap(1, engine=self.engine)
        assert is_reconstructable(h)
        assert is_reconstructable(CaptureRecord.of(h))
        assert not is_reconstructable(1)

    def test_reconstruct_args(self):
        h = wrap([1, 2], engine=self.engine)
        assert reconstruct_args(h, 'plain', 3) == ([1, 2], 'plain', 3)

    def test_reconstruct_capture_pass_through(self):
        marker = object()
        assert reconstruct_capture(marker) is marker


# ---------- Capture Record Tests ----------

class TestCaptureRecord:
    def setup_method(self):
        self.engine = FingerprintEngine()

    def test_lazy_value(self):
        h = wrap({'a': 1}, engine=self.engine)
        record = CaptureRecord.of(h)
        decoded_before = self.engine.stats['decoded']
        assert record.value == {'a': 1}
        assert record.value is record.value
        assert self.engine.stats['decoded'] == decoded_before + 1

    def test_equality_by_fingerprint(self):
        a = CaptureRecord.of(wrap([1], engine=self.engine))
        b = CaptureRecord.of(wrap([1], engine=self.engine))
        assert a == b

    def test_frozen(self):
        record = CaptureRecord.of(wrap(1, engine=self.engine))
        with pytest.raises(AttributeError):
            record.fingerprint = None

    def test_reconstruct_capture(self):
        record = CaptureRecord.of(wrap('v', engine=self.engine))
        assert reconstruct_capture(record) == 'v'
