from reconpy.analysis.scope_analyzer import (
    NodeState,
    ReconstructableRegistry,
    ScopeAnalyzer,
    ScopeRecord,
    normalize,
)
