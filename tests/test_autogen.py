"""
Tests for the two-phase autogen pipeline.

Validates:
  - Phase 1 runs once per distinct value, phase 2 reuses the artifact
  - Operation ids default to the qualified name
  - Invalidation through the wrapper
  - One-shot specialize()
"""

import pytest

from reconpy.reconstruct.handle import wrap
from reconpy.runtime.autogen import autogen, specialize
from reconpy.runtime.specialization_cache import SpecializationCache


# ---------- Decorator Tests ----------

class TestAutogen:
    def setup_method(self):
        self.cache = SpecializationCache()
        self.builds = []

        @autogen(cache=self.cache)
        def make_polynomial(coefficients):
            self.builds.append(coefficients)
            coeffs = tuple(coefficients)
            return lambda x: sum(c * x ** i for i, c in enumerate(coeffs))

        self.make_polynomial = make_polynomial

    def test_phase_one_runs_once(self):
        first = self.make_polynomial(wrap([1, 0, 2]))
        second = self.make_polynomial(wrap([1, 0, 2]))
        assert first is second
        assert first(3) == 19
        assert self.builds == [[1, 0, 2]]

    def test_distinct_values_build_separately(self):
        p = self.make_polynomial(wrap([1]))
        q = self.make_polynomial(wrap([0, 1]))
        assert p(5) == 1
        assert q(5) == 5
        assert len(self.builds) == 2

    def test_plain_values_accepted(self):
        assert self.make_polynomial([2, 1])(1) == 3
        assert self.make_polynomial(wrap([2, 1]))(1) == 3
        assert len(self.builds) == 1

    def test_operation_id_is_qualified_name(self):
        op_id = self.make_polynomial.operation_id
        assert op_id.endswith('make_polynomial')
        assert op_id.startswith(__name__)

    def test_metadata_preserved(self):
        assert self.make_polynomial.__name__ == 'make_polynomial'

    def test_invalidate(self):
        self.make_polynomial(wrap([1]))
        self.make_polynomial(wrap([2]))
        assert self.make_polynomial.invalidate() == 2
        self.make_polynomial(wrap([1]))
        assert len(self.builds) == 3

    def test_explicit_operation_id(self):
        @autogen(cache=self.cache, operation_id='identity')
        def ident(v):
            return v

        ident(wrap(1))
        assert [k.operation_id for k in self.cache.keys()] == ['identity']

    def test_failed_build_retried(self):
        attempts = []

        @autogen(cache=self.cache)
        def fragile(v):
            attempts.append(v)
            if len(attempts) == 1:
                raise RuntimeError('not yet')
            return v

        with pytest.raises(RuntimeError):
            fragile(wrap(7))
        assert fragile(wrap(7)) == 7
        assert len(attempts) == 2


# ---------- Specialize Tests ----------

class TestSpecialize:
    def test_one_shot(self):
        cache = SpecializationCache()
        calls = []

        def build(values):
            calls.append(values)
            return frozenset(values)

        assert specialize(build, wrap([1, 2, 2]), cache=cache) == frozenset({1, 2})
        assert specialize(build, wrap([1, 2, 2]), cache=cache) == frozenset({1, 2})
        assert len(calls) == 1

    def test_autogen_wrapper_called_directly(self):
        cache = SpecializationCache()

        @autogen(cache=cache)
        def double(v):
            return v * 2

        assert specialize(double, wrap(4)) == 8
        assert len(cache) == 1
