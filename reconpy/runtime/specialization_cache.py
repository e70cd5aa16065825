"""
Specialization Cache
====================

Lookup-or-create store mapping (operation id, fingerprints) to generated
artifacts: compiled closures, generated source, computed results.

Contract
--------
- At most one generator invocation per key over the cache's lifetime.
  Every later call with an equal key returns the stored artifact without
  reconstructing anything.
- A generator that raises leaves no entry behind; the next call with the
  same key runs the generator again.
- Invalidation is explicit (``evict`` / ``clear``). There is no TTL and
  no size bound, so a process that specializes on an unbounded stream of
  distinct values grows the cache without limit. Callers that need a bound
  must evict themselves.

Threading
---------
The cache itself assumes a single thread. Pass ``lock=threading.RLock()``
to run the whole lookup-or-create path under a lock; without one, two
threads missing on the same key can both run the generator. A reentrant
lock lets a generator request other specializations from the same cache.
"""

import contextlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Dict, List, Optional, Tuple

from reconpy.encoding.fingerprint import Fingerprint, FingerprintEngine
from reconpy.errors import GenerationError
from reconpy.reconstruct.handle import ReconstructableHandle, wrap
from reconpy.utils.helpers import BuildTimer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    """(operation id, ordered fingerprints). Opaque to the cache itself."""
    operation_id: str
    fingerprints: Tuple[Fingerprint, ...]

    def __str__(self) -> str:
        parts = ', '.join(fp.short() for fp in self.fingerprints)
        return f"{self.operation_id}[{parts}]"


@dataclass
class CacheEntry:
    """A stored artifact plus bookkeeping for diagnostics and tests."""
    key: CacheKey
    artifact: Any
    generation: int
    hits: int = 0
    build_time_ns: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    generator_calls: int = 0
    failures: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class SpecializationCache:
    """
    Memoizing store of specialized artifacts keyed by value identity.

    Usage:
        >>> cache = SpecializationCache()
        >>> h = wrap({'a': 1, 'b': 2})
        >>> cache.generate('sum', lambda d: sum(d.values()), h)
        3
        >>> cache.generate('sum', lambda d: sum(d.values()), h)  # hit
        3
    """

    def __init__(
        self,
        engine: Optional[FingerprintEngine] = None,
        lock: Optional[ContextManager] = None,
        wrap_generator_errors: bool = False,
    ):
        self.engine = engine
        self.wrap_generator_errors = wrap_generator_errors
        self._lock = lock if lock is not None else contextlib.nullcontext()
        self._entries: 'OrderedDict[CacheKey, CacheEntry]' = OrderedDict()
        self._generation = 0
        self.stats = CacheStats()

    # ------------------------------------------------------------------
    # Lookup-or-create
    # ------------------------------------------------------------------

    def generate(
        self,
        operation_id: str,
        generator: Callable[..., Any],
        *handles: Any,
    ) -> Any:
        """
        Return the artifact for (operation_id, handles), building it once.

        On a miss each handle is reconstructed and ``generator`` is called
        with the reconstructed values. Plain values are wrapped first.
        """
        handles = tuple(self._as_handle(h) for h in handles)
        key = self.key_for(operation_id, *handles)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.hits += 1
                self.stats.hits += 1
                logger.debug(f"Cache hit {key}")
                return entry.artifact

            self.stats.misses += 1
            logger.debug(f"Cache miss {key}")
            values = [h.reconstruct() for h in handles]

            self.stats.generator_calls += 1
            try:
                with BuildTimer() as timer:
                    artifact = generator(*values)
            except Exception as e:
                self.stats.failures += 1
                logger.debug(f"Generator failed for {key}: {e!r}")
                if self.wrap_generator_errors:
                    raise GenerationError(
                        key, f"Generator for {key} raised {type(e).__name__}: {e}"
                    ) from e
                raise

            self._generation += 1
            self._entries[key] = CacheEntry(
                key=key,
                artifact=artifact,
                generation=self._generation,
                build_time_ns=timer.elapsed_ns,
            )
            logger.debug(f"Built {key} in {timer}")
            return artifact

    def key_for(self, operation_id: str, *handles: Any) -> CacheKey:
        """Build the key a ``generate`` call with these arguments would use."""
        if not isinstance(operation_id, str):
            raise TypeError(
                f"operation_id must be str, got {type(operation_id).__name__}"
            )
        return CacheKey(
            operation_id,
            tuple(self._as_handle(h).identity() for h in handles),
        )

    # ------------------------------------------------------------------
    # Direct access
    # ------------------------------------------------------------------

    def get(self, key: CacheKey, default: Any = None) -> Any:
        """Stored artifact for ``key`` without counting a hit."""
        entry = self._entries.get(key)
        return entry.artifact if entry is not None else default

    def store(self, key: CacheKey, artifact: Any) -> Any:
        """Insert or replace an artifact directly (e.g. restored from a snapshot)."""
        with self._lock:
            self._generation += 1
            self._entries[key] = CacheEntry(
                key=key, artifact=artifact, generation=self._generation,
            )
        return artifact

    def entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> List[CacheKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def evict(self, key: CacheKey) -> bool:
        """Drop one entry. Returns False if the key was not cached."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self.stats.evictions += 1
        logger.debug(f"Evicted {key}")
        return True

    def evict_operation(self, operation_id: str) -> int:
        """Drop every entry produced for one operation id."""
        with self._lock:
            doomed = [k for k in self._entries if k.operation_id == operation_id]
            for k in doomed:
                del self._entries[k]
        self.stats.evictions += len(doomed)
        return len(doomed)

    def clear(self):
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        self.stats.evictions += count
        logger.debug(f"Cleared {count} cache entries")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            'entries': len(self._entries),
            'hits': self.stats.hits,
            'misses': self.stats.misses,
            'generator_calls': self.stats.generator_calls,
            'failures': self.stats.failures,
            'evictions': self.stats.evictions,
            'hit_rate': f"{self.stats.hit_rate:.1%}",
        }

    def snapshot(self) -> List[Dict[str, Any]]:
        """Loggable view of every entry, for external tooling."""
        return [
            {
                'key': str(entry.key),
                'operation_id': entry.key.operation_id,
                'fingerprints': [fp.digest for fp in entry.key.fingerprints],
                'generation': entry.generation,
                'hits': entry.hits,
                'build_time_ns': entry.build_time_ns,
                'build_time': BuildTimer.describe(entry.build_time_ns),
            }
            for entry in self._entries.values()
        ]

    def _as_handle(self, obj: Any) -> ReconstructableHandle:
        if isinstance(obj, ReconstructableHandle):
            return obj
        return wrap(obj, engine=self.engine)
