"""Specialization cache and the pipelines built on it."""

from reconpy.runtime.specialization_cache import (
    SpecializationCache,
    CacheKey,
    CacheEntry,
    CacheStats,
)
from reconpy.runtime.shape_dispatch import ShapeTag, ShapeDispatch, shape_of
from reconpy.runtime.autogen import autogen, specialize
