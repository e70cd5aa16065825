"""
Scope Analyzer
==============

Free-variable analysis over Python expression trees (``ast``), used to
decide which names a closure captures and which of those captures are
fingerprinted values that must be re-derived from their identity.

Theoretical Foundation:
    A name is *free* in an expression if some reference to it is not
    bound by an enclosing binder inside the same tree. Python binders are:

        - function / lambda parameters
        - assignment targets (plain, augmented, annotated, walrus)
        - ``for`` / ``with`` / ``except ... as`` / ``match`` capture targets
        - ``import`` aliases, ``def`` and ``class`` names

    and the scoping rules that decide *which* scope a binder belongs to:

        - any binding inside a function makes the name local to it
        - comprehensions are their own scope (walrus targets escape to
          the nearest enclosing function)
        - class bodies bind for themselves only, never for nested functions
        - ``global`` / ``nonlocal`` redirect a name outward

Two modes:
    structural  Builds the scope tree above. Precise.
    syntactic   Treats every identifier occurrence as a free-variable
                candidate. Per closure, the candidates are the names it
                reads minus the names it binds itself, so a rebinding is
                never inserted for a name that only exists inside the
                closure. Over-approximates otherwise.

The structural mode falls back to syntactic on trees it cannot analyze,
with a warning.
"""

import ast
import copy
import inspect
import keyword
import logging
import textwrap
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Set, Union

from reconpy.errors import StructuralError

logger = logging.getLogger(__name__)

Expression = Union[str, ast.AST, Callable[..., Any]]

CLOSURE_NODES = (ast.Lambda, ast.FunctionDef, ast.AsyncFunctionDef)


class NodeState(Enum):
    """Per-node traversal state; transitions are strictly forward."""
    UNVISITED = auto()
    VISITING = auto()
    CONVERTED = auto()


@dataclass
class ScopeRecord:
    """
    Result of one analysis call.

    Unpacks as ``(expression, free_vars, reconstructable_vars)``.
    """
    expression: ast.AST
    free_vars: Set[str] = field(default_factory=set)
    reconstructable_vars: Set[str] = field(default_factory=set)
    structural: bool = True

    def __iter__(self) -> Iterator[Any]:
        return iter((self.expression, self.free_vars, self.reconstructable_vars))


class ReconstructableRegistry:
    """Set of names declared reconstructable. Additive only."""

    def __init__(self, names=()):
        self._names: Set[str] = set()
        for name in names:
            self.mark(name)

    def mark(self, name: str):
        if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
            raise ValueError(f"Not a valid identifier: {name!r}")
        self._names.add(name)

    def is_reconstructable(self, name: str) -> bool:
        return name in self._names

    def names(self) -> FrozenSet[str]:
        return frozenset(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self):
        return iter(sorted(self._names))

    def __len__(self) -> int:
        return len(self._names)


class ScopeAnalyzer:
    """
    Classifies the free variables of an expression.

    Usage:
        >>> analyzer = ScopeAnalyzer()
        >>> analyzer.mark_reconstructable('x')
        >>> tree, free, recon = analyzer.analyze('lambda a: a + x + y')
        >>> sorted(free), sorted(recon)
        (['x', 'y'], ['x'])
    """

    def __init__(
        self,
        registry: Optional[ReconstructableRegistry] = None,
        structural: bool = True,
    ):
        self.registry = registry if registry is not None else ReconstructableRegistry()
        self.structural = structural
        self.stats = {
            'analyses': 0,
            'fallbacks': 0,
        }

    # ───────────────────────────────────────────────────────────────
    #  Registry surface
    # ───────────────────────────────────────────────────────────────

    def mark_reconstructable(self, name: str):
        self.registry.mark(name)

    def is_reconstructable(self, name: str) -> bool:
        return self.registry.is_reconstructable(name)

    # ───────────────────────────────────────────────────────────────
    #  Analysis
    # ───────────────────────────────────────────────────────────────

    def analyze(self, expression: Expression) -> ScopeRecord:
        """Normalize ``expression`` and classify its free variables."""
        tree = normalize(expression)
        self.stats['analyses'] += 1

        structural = self.structural
        free: Set[str] = set()
        if structural:
            try:
                free = build_scopes(tree).free_names()
            except StructuralError:
                raise
            except (AttributeError, TypeError, ValueError, RecursionError) as e:
                logger.warning(
                    f"Structural scope analysis failed ({e}); "
                    f"using syntactic fallback"
                )
                structural = False
        if not structural:
            self.stats['fallbacks'] += 1
            free = collect_identifiers(tree)

        reconstructable = {name for name in free if name in self.registry}
        logger.debug(
            f"Analyzed expression: free={sorted(free)} "
            f"reconstructable={sorted(reconstructable)}"
        )
        return ScopeRecord(tree, free, reconstructable, structural)

    def closure_captures(self, tree: ast.AST) -> Dict[int, Set[str]]:
        """Map ``id(closure_node)`` to the names that closure captures."""
        if self.structural:
            try:
                return build_scopes(tree).captures()
            except StructuralError:
                raise
            except (AttributeError, TypeError, ValueError, RecursionError) as e:
                logger.warning(
                    f"Structural capture analysis failed ({e}); "
                    f"using syntactic fallback"
                )
        return {
            id(node): syntactic_captures(node)
            for node in ast.walk(tree)
            if isinstance(node, CLOSURE_NODES)
        }


# ═══════════════════════════════════════════════════════════════════════════
# Normalization
# ═══════════════════════════════════════════════════════════════════════════

def normalize(expression: Expression) -> ast.AST:
    """
    Turn source text, a function or an AST into a fresh Module/Expression.

    The input tree is never mutated. Cyclic trees raise StructuralError.
    """
    if isinstance(expression, str):
        tree: ast.AST = ast.parse(textwrap.dedent(expression))
    elif isinstance(expression, ast.AST):
        check_acyclic(expression)
        tree = copy.deepcopy(expression)
    elif callable(expression):
        target = inspect.unwrap(expression)
        try:
            source = textwrap.dedent(inspect.getsource(target))
        except (OSError, TypeError) as e:
            raise TypeError(
                f"Cannot retrieve source for {getattr(target, '__name__', target)!r}"
            ) from e
        tree = ast.parse(source)
    else:
        raise TypeError(
            f"Expected source text, ast.AST or a function, "
            f"got {type(expression).__name__}"
        )

    if isinstance(tree, ast.stmt):
        tree = ast.Module(body=[tree], type_ignores=[])
    elif isinstance(tree, ast.expr):
        tree = ast.Expression(body=tree)
    return ast.fix_missing_locations(tree)


def check_acyclic(tree: ast.AST):
    """Raise StructuralError if ``tree`` reaches itself. Iterative, bounded."""
    state: Dict[int, NodeState] = {id(tree): NodeState.VISITING}
    stack = [(tree, ast.iter_child_nodes(tree))]
    while stack:
        node, children = stack[-1]
        for child in children:
            seen = state.get(id(child), NodeState.UNVISITED)
            if seen is NodeState.VISITING:
                raise StructuralError(
                    f"Expression tree contains a cycle through "
                    f"{type(child).__name__}"
                )
            if seen is NodeState.UNVISITED:
                state[id(child)] = NodeState.VISITING
                stack.append((child, ast.iter_child_nodes(child)))
                break
        else:
            state[id(node)] = NodeState.CONVERTED
            stack.pop()


# ═══════════════════════════════════════════════════════════════════════════
# Syntactic fallback
# ═══════════════════════════════════════════════════════════════════════════

def collect_identifiers(tree: ast.AST) -> Set[str]:
    """Every identifier occurring anywhere in ``tree``."""
    names: Set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            names.add(node.id)
        elif isinstance(node, ast.arg):
            names.add(node.arg)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.alias):
            names.add((node.asname or node.name).split('.')[0])
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            names.update(node.names)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
    names.discard('*')
    return names


_COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.GeneratorExp, ast.DictComp)


def syntactic_captures(node: ast.AST) -> Set[str]:
    """
    Names a closure may capture, judged without a scope tree.

    Every name the closure reads is a candidate unless the closure binds it
    itself. A name bound by a comprehension target stays a candidate when
    it is also read outside that comprehension. Nested closures contribute
    their own candidates, minus what this closure binds.
    """
    loads: Set[str] = set()
    bound: Set[str] = set(_param_names(node.args))
    body = [node.body] if isinstance(node, ast.Lambda) else node.body
    for child in body:
        _collect_own(child, frozenset(), loads, bound)
    return loads - bound


def _collect_own(node: ast.AST, hidden: FrozenSet[str], loads: Set[str], bound: Set[str]):
    """Reads and bindings at one closure's own level; ``hidden`` are comprehension targets."""
    if isinstance(node, ast.Name):
        if isinstance(node.ctx, ast.Load):
            if node.id not in hidden:
                loads.add(node.id)
        else:
            bound.add(node.id)
    elif isinstance(node, ast.NamedExpr):
        bound.add(node.target.id)
        _collect_own(node.value, hidden, loads, bound)
    elif isinstance(node, CLOSURE_NODES):
        if not isinstance(node, ast.Lambda):
            bound.add(node.name)
            for expr in node.decorator_list:
                _collect_own(expr, hidden, loads, bound)
            if node.returns is not None:
                _collect_own(node.returns, hidden, loads, bound)
        _collect_signature(node.args, hidden, loads, bound)
        loads.update(syntactic_captures(node) - hidden)
    elif isinstance(node, ast.ClassDef):
        bound.add(node.name)
        for expr in node.decorator_list + node.bases + [kw.value for kw in node.keywords]:
            _collect_own(expr, hidden, loads, bound)
        class_loads: Set[str] = set()
        class_bound: Set[str] = set()
        for stmt in node.body:
            _collect_own(stmt, hidden, class_loads, class_bound)
        loads.update(class_loads - class_bound)
    elif isinstance(node, _COMPREHENSIONS):
        _collect_comprehension(node, hidden, loads, bound)
    elif isinstance(node, (ast.Import, ast.ImportFrom)):
        for alias in node.names:
            if alias.name != '*':
                bound.add((alias.asname or alias.name).split('.')[0])
    else:
        if isinstance(node, ast.ExceptHandler) and node.name:
            bound.add(node.name)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            bound.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            bound.add(node.rest)
        for child in ast.iter_child_nodes(node):
            _collect_own(child, hidden, loads, bound)


def _collect_comprehension(node: ast.AST, hidden: FrozenSet[str], loads: Set[str], bound: Set[str]):
    generators = node.generators
    # The outermost iterable is evaluated outside the comprehension
    _collect_own(generators[0].iter, hidden, loads, bound)
    inner = set(hidden)
    for i, gen in enumerate(generators):
        if i > 0:
            _collect_own(gen.iter, frozenset(inner), loads, bound)
        inner.update(n.id for n in ast.walk(gen.target) if isinstance(n, ast.Name))
        for cond in gen.ifs:
            _collect_own(cond, frozenset(inner), loads, bound)
    elements = [node.key, node.value] if isinstance(node, ast.DictComp) else [node.elt]
    for elt in elements:
        _collect_own(elt, frozenset(inner), loads, bound)


# ═══════════════════════════════════════════════════════════════════════════
# Structural analysis
# ═══════════════════════════════════════════════════════════════════════════

class Scope:
    """One lexical scope and the names it binds, uses and declares."""

    def __init__(self, node: ast.AST, kind: str, parent: Optional['Scope']):
        self.node = node
        self.kind = kind          # module | function | lambda | class | comprehension
        self.parent = parent
        self.bound: Set[str] = set()
        self.used: Set[str] = set()
        self.globals: Set[str] = set()
        self.nonlocals: Set[str] = set()
        self.children: List['Scope'] = []
        self.free: Set[str] = set()
        self.global_refs: Set[str] = set()
        if parent is not None:
            parent.children.append(self)

    @property
    def local(self) -> Set[str]:
        return self.bound - self.globals - self.nonlocals

    def resolve(self):
        """Compute ``free`` and ``global_refs`` bottom-up."""
        child_free: Set[str] = set()
        global_refs = set(self.globals)
        for child in self.children:
            child.resolve()
            child_free |= child.free
            global_refs |= child.global_refs

        local = self.local
        if self.kind == 'class':
            free = (self.used - local) | child_free
        else:
            free = (self.used | child_free) - local
        free |= self.nonlocals
        self.free = free - self.globals
        self.global_refs = global_refs

    def free_names(self) -> Set[str]:
        """Free names of the whole tree (call on the root scope)."""
        return self.free | (self.global_refs - self.bound)

    def captures(self) -> Dict[int, Set[str]]:
        result: Dict[int, Set[str]] = {}
        for scope in self.walk():
            if isinstance(scope.node, CLOSURE_NODES):
                result[id(scope.node)] = set(scope.free)
        return result

    def walk(self) -> Iterator['Scope']:
        yield self
        for child in self.children:
            yield from child.walk()


def build_scopes(tree: ast.AST) -> Scope:
    """Build and resolve the scope tree rooted at ``tree``."""
    builder = _ScopeBuilder()
    root = builder.build(tree)
    root.resolve()
    return root


class _ScopeBuilder(ast.NodeVisitor):
    """Records bindings and uses per scope."""

    def build(self, tree: ast.AST) -> Scope:
        self.root = Scope(tree, 'module', None)
        self.current = self.root
        if isinstance(tree, (ast.Module, ast.Interactive)):
            for stmt in tree.body:
                self.visit(stmt)
        elif isinstance(tree, ast.Expression):
            self.visit(tree.body)
        else:
            self.visit(tree)
        return self.root

    def _enter(self, node: ast.AST, kind: str) -> Scope:
        scope = Scope(node, kind, self.current)
        self.current = scope
        return scope

    def _leave(self, scope: Scope):
        self.current = scope.parent

    # ---- names ----

    def visit_Name(self, node: ast.Name):
        if isinstance(node.ctx, ast.Load):
            self.current.used.add(node.id)
        else:
            self.current.bound.add(node.id)

    def visit_Global(self, node: ast.Global):
        self.current.globals.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self.current.nonlocals.update(node.names)

    def visit_NamedExpr(self, node: ast.NamedExpr):
        self.visit(node.value)
        target = self.current
        while target.kind == 'comprehension' and target.parent is not None:
            target = target.parent
        target.bound.add(node.target.id)

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self.current.bound.add((alias.asname or alias.name).split('.')[0])

    def visit_ImportFrom(self, node: ast.ImportFrom):
        for alias in node.names:
            if alias.name != '*':
                self.current.bound.add(alias.asname or alias.name)

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.name:
            self.current.bound.add(node.name)
        self.generic_visit(node)

    def visit_MatchAs(self, node):
        if node.name:
            self.current.bound.add(node.name)
        self.generic_visit(node)

    def visit_MatchStar(self, node):
        if node.name:
            self.current.bound.add(node.name)

    def visit_MatchMapping(self, node):
        if node.rest:
            self.current.bound.add(node.rest)
        self.generic_visit(node)

    # ---- scopes ----

    def visit_FunctionDef(self, node: ast.FunctionDef):
        self.current.bound.add(node.name)
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_signature(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        scope = self._enter(node, 'function')
        scope.bound.update(_param_names(node.args))
        for stmt in node.body:
            self.visit(stmt)
        self._leave(scope)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda):
        self._visit_signature(node.args)
        scope = self._enter(node, 'lambda')
        scope.bound.update(_param_names(node.args))
        self.visit(node.body)
        self._leave(scope)

    def visit_ClassDef(self, node: ast.ClassDef):
        self.current.bound.add(node.name)
        for expr in node.decorator_list + node.bases:
            self.visit(expr)
        for kw in node.keywords:
            self.visit(kw.value)
        scope = self._enter(node, 'class')
        for stmt in node.body:
            self.visit(stmt)
        self._leave(scope)

    def _visit_comprehension(self, node: ast.AST, elements: List[ast.expr]):
        generators = node.generators
        # The outermost iterable is evaluated in the enclosing scope
        self.visit(generators[0].iter)
        scope = self._enter(node, 'comprehension')
        for i, gen in enumerate(generators):
            self.visit(gen.target)
            if i > 0:
                self.visit(gen.iter)
            for cond in gen.ifs:
                self.visit(cond)
        for elt in elements:
            self.visit(elt)
        self._leave(scope)

    def visit_ListComp(self, node: ast.ListComp):
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp):
        self._visit_comprehension(node, [node.key, node.value])

    def _visit_signature(self, args: ast.arguments):
        """Defaults and annotations evaluate in the enclosing scope."""
        for default in args.defaults:
            self.visit(default)
        for default in args.kw_defaults:
            if default is not None:
                self.visit(default)
        for a in _all_args(args):
            if a.annotation is not None:
                self.visit(a.annotation)


def _all_args(args: ast.arguments) -> List[ast.arg]:
    result = list(getattr(args, 'posonlyargs', [])) + list(args.args) + list(args.kwonlyargs)
    if args.vararg is not None:
        result.append(args.vararg)
    if args.kwarg is not None:
        result.append(args.kwarg)
    return result


def _param_names(args: ast.arguments) -> Set[str]:
    return {a.arg for a in _all_args(args)}
