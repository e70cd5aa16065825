"""
Tests for closed shape dispatch.

Validates:
  - Shape classification of scalars, tuples, mappings, sequences
  - Exactly one callback runs per call
  - Missing callbacks fail loudly
  - Use as a specialization cache generator
"""

from collections import OrderedDict

import numpy as np
import pytest

from reconpy.reconstruct.handle import wrap
from reconpy.runtime.shape_dispatch import ShapeDispatch, ShapeTag, shape_of
from reconpy.runtime.specialization_cache import SpecializationCache


# ---------- Classification Tests ----------

class TestShapeOf:
    @pytest.mark.parametrize('value', [None, True, 3, 2.5, 1j, 'text', b'raw', np.float64(1.0)])
    def test_scalars(self, value):
        assert shape_of(value) is ShapeTag.SCALAR

    def test_tuple_before_sequence(self):
        assert shape_of((1, 2)) is ShapeTag.TUPLE
        assert shape_of(()) is ShapeTag.TUPLE

    def test_mappings(self):
        assert shape_of({}) is ShapeTag.MAPPING
        assert shape_of(OrderedDict(a=1)) is ShapeTag.MAPPING

    def test_sequences(self):
        assert shape_of([1]) is ShapeTag.SEQUENCE
        assert shape_of(range(3)) is ShapeTag.SEQUENCE
        assert shape_of({1, 2}) is ShapeTag.SEQUENCE
        assert shape_of(np.zeros(3)) is ShapeTag.SEQUENCE

    def test_other(self):
        assert shape_of(object()) is ShapeTag.OTHER


# ---------- Dispatch Tests ----------

class TestShapeDispatch:
    def setup_method(self):
        self.dispatch = ShapeDispatch(
            sequence=lambda v: ('seq', len(v)),
            mapping=lambda v: ('map', sorted(v)),
            scalar=lambda v: ('scalar', v),
        )

    def test_dispatch_by_shape(self):
        assert self.dispatch([1, 2, 3]) == ('seq', 3)
        assert self.dispatch({'b': 1, 'a': 2}) == ('map', ['a', 'b'])
        assert self.dispatch(7) == ('scalar', 7)

    def test_missing_callback(self):
        with pytest.raises(LookupError):
            self.dispatch((1, 2))

    def test_register(self):
        self.dispatch.register(ShapeTag.TUPLE, lambda v: ('tuple', v))
        assert self.dispatch.handles(ShapeTag.TUPLE)
        assert self.dispatch((1, 2)) == ('tuple', (1, 2))

    def test_extra_arguments_passed_through(self):
        dispatch = ShapeDispatch(sequence=lambda v, scale: [x * scale for x in v])
        assert dispatch([1, 2], 10) == [10, 20]

    def test_as_cache_generator(self):
        cache = SpecializationCache()
        calls = []
        dispatch = ShapeDispatch(
            mapping=lambda d: calls.append('map') or (lambda key: d[key]),
            sequence=lambda s: calls.append('seq') or (lambda i: s[i]),
        )
        lookup = cache.generate('accessor', dispatch, wrap({'k': 'v'}))
        index = cache.generate('accessor', dispatch, wrap(['a', 'b']))
        assert lookup('k') == 'v'
        assert index(1) == 'b'
        cache.generate('accessor', dispatch, wrap({'k': 'v'}))
        assert calls == ['map', 'seq']
