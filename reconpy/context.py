"""
Reconstruction Context
======================

One object owning every piece of state: the fingerprint engine, the
registry-backed scope analyzer, the closure converter and the
specialization cache. Contexts are passed explicitly; nothing here is a
process-wide singleton, so two contexts never observe each other's marks
or cached artifacts.

Usage:
    >>> ctx = ReconContext()
    >>> h = ctx.wrap((1, 2, 3))
    >>> ctx.generate('total', sum, h)
    6
    >>> ctx.mark_reconstructable('h')
    >>> tree = ctx.convert_closures('f = lambda a: a + h')
"""

import ast
import logging
import threading
from typing import Any, Callable, Dict, Optional

from reconpy.analysis.scope_analyzer import (
    Expression,
    ReconstructableRegistry,
    ScopeAnalyzer,
    ScopeRecord,
)
from reconpy.compiler.closure_converter import ClosureConverter, compile_function
from reconpy.encoding.fingerprint import Codec, Fingerprint, FingerprintEngine
from reconpy.reconstruct.handle import ReconstructableHandle
from reconpy.runtime.autogen import autogen
from reconpy.runtime.specialization_cache import CacheKey, SpecializationCache

logger = logging.getLogger(__name__)


class ReconContext:
    """Explicitly passed bundle of engine, analyzer, converter and cache."""

    def __init__(
        self,
        codec: Optional[Codec] = None,
        check_determinism: bool = True,
        retain_values: bool = True,
        structural: bool = True,
        thread_safe: bool = False,
        wrap_generator_errors: bool = False,
        enable_logging: bool = False,
    ):
        self.engine = FingerprintEngine(codec=codec, check_determinism=check_determinism)
        self.registry = ReconstructableRegistry()
        self.analyzer = ScopeAnalyzer(self.registry, structural=structural)
        self.converter = ClosureConverter(self.analyzer)
        self.cache = SpecializationCache(
            engine=self.engine,
            lock=threading.RLock() if thread_safe else None,
            wrap_generator_errors=wrap_generator_errors,
        )
        self.retain_values = retain_values

        if enable_logging:
            logging.basicConfig(level=logging.DEBUG)
        logger.debug(
            f"ReconContext ready (codec={type(self.engine.codec).__name__}, "
            f"thread_safe={thread_safe}, structural={structural})"
        )

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def wrap(self, value: Any) -> ReconstructableHandle:
        return ReconstructableHandle(value, engine=self.engine, retain_value=self.retain_values)

    def reconstruct(self, handle: ReconstructableHandle) -> Any:
        return handle.reconstruct()

    def identity(self, handle: ReconstructableHandle) -> Fingerprint:
        return handle.identity()

    def from_fingerprint(self, fingerprint: Fingerprint) -> ReconstructableHandle:
        return ReconstructableHandle.from_fingerprint(fingerprint, engine=self.engine)

    # ------------------------------------------------------------------
    # Specialization
    # ------------------------------------------------------------------

    def generate(self, operation_id: str, generator: Callable[..., Any], *handles: Any) -> Any:
        return self.cache.generate(operation_id, generator, *handles)

    def evict(self, key: CacheKey) -> bool:
        return self.cache.evict(key)

    def clear(self):
        self.cache.clear()

    def autogen(self, func: Callable = None, *, operation_id: Optional[str] = None) -> Callable:
        """``autogen`` bound to this context's cache."""
        return autogen(func, cache=self.cache, operation_id=operation_id)

    # ------------------------------------------------------------------
    # Scoping
    # ------------------------------------------------------------------

    def mark_reconstructable(self, name: str):
        self.analyzer.mark_reconstructable(name)

    def is_reconstructable(self, name: str) -> bool:
        return self.analyzer.is_reconstructable(name)

    def analyze(self, expression: Expression) -> ScopeRecord:
        return self.analyzer.analyze(expression)

    def convert_closures(self, expression: Expression) -> ast.AST:
        """Analyze ``expression`` and convert its closures against this registry."""
        return self.converter.closure_convert(expression)

    def convert_function(self, func: Callable) -> Callable:
        return self.converter.convert_function(func)

    def compile(self, tree: ast.AST, namespace: Optional[Dict[str, Any]] = None) -> Callable:
        return compile_function(tree, self.converter.namespace(namespace))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Dict]:
        return {
            'engine': dict(self.engine.stats),
            'analyzer': dict(self.analyzer.stats),
            'converter': dict(self.converter.stats),
            'cache': self.cache.get_stats(),
        }
