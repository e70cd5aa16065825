"""
ReconPy: Identity-Keyed Specialization for Python
=================================================

ReconPy lets a program specialize code on the *values* it sees, not just
their types. A value is reduced to a canonical fingerprint; the
fingerprint is the value's identity, keys a cache of generated artifacts,
and is enough to rebuild the value wherever the artifact needs it.

Core Components:
    - encoding: canonical binary codec and the fingerprint engine
    - reconstruct: validated handles and explicit closure captures
    - runtime: specialization cache, shape dispatch, two-phase autogen
    - analysis: free-variable analysis with a reconstructable registry
    - compiler: closure conversion and scoped function construction

Usage:
    >>> import reconpy
    >>> ctx = reconpy.ReconContext()
    >>> @ctx.autogen
    ... def make_lookup(table):
    ...     frozen = dict(table)
    ...     return lambda key: frozen.get(key, 0)
    >>> lookup = make_lookup(ctx.wrap({'a': 1, 'b': 2}))
    >>> lookup('b')
    2
"""

__version__ = "0.1.0"

from reconpy.errors import (
    ReconError,
    SerializationError,
    NonDeterministicEncodingError,
    DecodeError,
    TypeMismatchError,
    NotReconstructableError,
    StructuralError,
    GenerationError,
)
from reconpy.encoding.codec import CanonicalCodec
from reconpy.encoding.fingerprint import Fingerprint, FingerprintEngine, structurally_equal
from reconpy.reconstruct.handle import (
    ReconstructableHandle,
    CaptureRecord,
    wrap,
    reconstruct,
    identity,
    is_reconstructable,
    can_reconstruct,
    reconstruct_args,
    reconstruct_capture,
)
from reconpy.runtime.specialization_cache import (
    SpecializationCache,
    CacheKey,
    CacheEntry,
)
from reconpy.runtime.shape_dispatch import ShapeTag, ShapeDispatch, shape_of
from reconpy.runtime.autogen import autogen, specialize
from reconpy.analysis.scope_analyzer import (
    ScopeAnalyzer,
    ScopeRecord,
    ReconstructableRegistry,
)
from reconpy.compiler.closure_converter import (
    ClosureConverter,
    convert_closures,
    closure_convert,
    create_scoped_function,
    compile_function,
)
from reconpy.context import ReconContext
