"""
Closure Converter
=================

Rewrites closures so that captured fingerprinted values are explicitly
re-derived from their identity instead of being captured by reference.

For every closure in the tree (``lambda``, nested ``def`` / ``async def``)
and every reconstructable variable it captures, one rebinding is inserted
at the start of its body:

    name = reconstruct_capture(name)

``reconstruct_capture`` turns a handle or capture record into its value
and passes anything else through unchanged, so a marked name that turns
out not to hold a handle at runtime is harmless.

Python scoping forces two shapes for the rebinding:

    def f(a):               def f(a, *, x=x):
        return a + x   ->       x = reconstruct_capture(x)
                                return a + x

    lambda a: a + x    ->   lambda a: (lambda x: a + x)(reconstruct_capture(x))

A ``def`` that assigned ``x`` in its body would make ``x`` local, so the
captured value is brought in as a keyword-only parameter bound when the
``def`` executes. A lambda has no statements, so the rebinding becomes an
immediately applied inner lambda.

Traversal is strict post-order: nested closures are converted before
their parent. Each node moves Unvisited -> Visiting -> Converted; meeting
a node that is still Visiting means the tree has a cycle, which raises
StructuralError. Closures that already carry a rebinding for a name are
left alone, so converting twice inserts nothing new.
"""

import ast
import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from reconpy.analysis.scope_analyzer import (
    CLOSURE_NODES,
    NodeState,
    ScopeAnalyzer,
    _param_names,
    check_acyclic,
    normalize,
)
from reconpy.errors import StructuralError
from reconpy.reconstruct.handle import reconstruct_capture

REBIND_HELPER = 'reconstruct_capture'


class ClosureConverter:
    """
    Inserts explicit reconstruction of captured fingerprinted values.

    Usage:
        >>> analyzer = ScopeAnalyzer()
        >>> analyzer.mark_reconstructable('x')
        >>> converter = ClosureConverter(analyzer)
        >>> tree, free, recon = analyzer.analyze('f = lambda a: a + x + y')
        >>> print(ast.unparse(converter.convert(tree, free, recon)))
        f = lambda a: (lambda x: a + x + y)(reconstruct_capture(x))
    """

    def __init__(
        self,
        analyzer: Optional[ScopeAnalyzer] = None,
        helper_name: str = REBIND_HELPER,
    ):
        self.analyzer = analyzer if analyzer is not None else ScopeAnalyzer()
        self.helper_name = helper_name
        self.stats = {
            'closures_converted': 0,
            'rebindings_inserted': 0,
        }

    def convert(
        self,
        expression: Union[str, ast.AST, Callable[..., Any]],
        free_vars: Iterable[str],
        reconstructable_vars: Iterable[str],
    ) -> ast.AST:
        """Return a converted copy of ``expression``; the input is not mutated."""
        tree = normalize(expression)
        targets = set(reconstructable_vars) & set(free_vars)
        if not targets:
            return tree

        captures = self.analyzer.closure_captures(tree)
        transformer = _ClosureTransformer(captures, targets, self.helper_name, self.stats)
        tree = transformer.visit(tree)
        return ast.fix_missing_locations(tree)

    def closure_convert(self, expression: Union[str, ast.AST, Callable[..., Any]]) -> ast.AST:
        """Analyze and convert in one step."""
        tree, free, reconstructable = self.analyzer.analyze(expression)
        return self.convert(tree, free, reconstructable)

    def convert_function(self, func: Callable) -> Callable:
        """
        Recompile a live function with its closures converted.

        The function's globals and a snapshot of its closure cells form
        the namespace; decorators on the function itself are not applied
        again. A lambda is located within the statement it was defined in.
        """
        tree = self.closure_convert(func)
        namespace = dict(func.__globals__)
        namespace.update(inspect.getclosurevars(func).nonlocals)

        if func.__name__ == '<lambda>':
            lam = _find_lambda(tree, func)
            ns = self.namespace(namespace)
            code = compile(ast.Expression(body=lam), '<reconpy-scoped:lambda>', 'eval')
            converted = eval(code, ns)
            converted.__reconpy_original__ = func
            return converted

        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                node.decorator_list = []
        converted = compile_function(
            tree, namespace, name=func.__name__, helper_name=self.helper_name,
        )
        converted.__reconpy_original__ = func
        return converted

    def namespace(self, base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """A namespace in which converted code can run."""
        ns = dict(base or {})
        ns[self.helper_name] = reconstruct_capture
        return ns


class _ClosureTransformer(ast.NodeTransformer):
    """Post-order rewrite with per-node state tracking."""

    def __init__(
        self,
        captures: Dict[int, Set[str]],
        targets: Set[str],
        helper: str,
        stats: dict,
    ):
        self.captures = captures
        self.targets = targets
        self.helper = helper
        self.stats = stats
        self._state: Dict[int, NodeState] = {}

    def visit(self, node: ast.AST) -> ast.AST:
        key = id(node)
        state = self._state.get(key, NodeState.UNVISITED)
        if state is NodeState.VISITING:
            raise StructuralError(
                f"Expression tree contains a cycle through {type(node).__name__}"
            )
        if state is NodeState.CONVERTED:
            return node

        self._state[key] = NodeState.VISITING
        self.generic_visit(node)
        if isinstance(node, CLOSURE_NODES):
            self._convert(node)
        self._state[key] = NodeState.CONVERTED
        return node

    def _convert(self, node: ast.AST):
        captured = self.captures.get(id(node), set())
        skip = _param_names(node.args)
        if isinstance(node, ast.Lambda):
            skip |= _lambda_rebound(node, self.helper)
        else:
            skip |= _declared_outward(node) | _def_rebound(node, self.helper)
        names = sorted((captured & self.targets) - skip)
        if not names:
            return

        if isinstance(node, ast.Lambda):
            node.body = _apply_rebinding(node.body, names, self.helper)
        else:
            for name in names:
                node.args.kwonlyargs.append(ast.arg(arg=name, annotation=None))
                node.args.kw_defaults.append(ast.Name(id=name, ctx=ast.Load()))
            start = 1 if ast.get_docstring(node, clean=False) is not None else 0
            node.body[start:start] = [_rebind_stmt(n, self.helper) for n in names]

        self.stats['closures_converted'] += 1
        self.stats['rebindings_inserted'] += len(names)


def convert_closures(
    expression: Union[str, ast.AST, Callable[..., Any]],
    free_vars: Iterable[str],
    reconstructable_vars: Iterable[str],
    analyzer: Optional[ScopeAnalyzer] = None,
) -> ast.AST:
    """Functional form of ``ClosureConverter.convert``."""
    return ClosureConverter(analyzer).convert(expression, free_vars, reconstructable_vars)


def closure_convert(
    expression: Union[str, ast.AST, Callable[..., Any]],
    analyzer: Optional[ScopeAnalyzer] = None,
) -> ast.AST:
    """Analyze with ``analyzer``'s registry, then convert."""
    return ClosureConverter(analyzer).closure_convert(expression)


# ═══════════════════════════════════════════════════════════════════════════
# Scoped function construction
# ═══════════════════════════════════════════════════════════════════════════

def create_scoped_function(
    name: str,
    args: List[str],
    body: Union[str, ast.AST, List[ast.stmt]],
    free_vars: Iterable[str],
    reconstructable_vars: Iterable[str],
    helper_name: str = REBIND_HELPER,
) -> ast.FunctionDef:
    """
    Build ``def name(*args, *free_vars)`` whose reconstructable free
    variables are rebound on entry.

    ``body`` may be source text, a single expression (returned), a single
    statement, or a list of statements.
    """
    free = sorted(set(free_vars) - set(args))
    reconstructable = [v for v in free if v in set(reconstructable_vars)]
    params = ', '.join(list(args) + free)
    funcdef = ast.parse(f"def {name}({params}):\n    pass").body[0]

    funcdef.body = [_rebind_stmt(v, helper_name) for v in reconstructable] + _as_statements(body)
    return ast.fix_missing_locations(funcdef)


def compile_function(
    tree: ast.AST,
    namespace: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    helper_name: str = REBIND_HELPER,
) -> Callable:
    """Compile a ``def`` (or a module holding one) and return the function."""
    if isinstance(tree, (ast.FunctionDef, ast.AsyncFunctionDef)):
        name = name or tree.name
        tree = ast.Module(body=[tree], type_ignores=[])
    if name is None:
        defs = [n for n in tree.body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))]
        if not defs:
            raise ValueError("No function definition to compile")
        name = defs[-1].name
    check_acyclic(tree)
    ast.fix_missing_locations(tree)

    ns = dict(namespace or {})
    ns.setdefault(helper_name, reconstruct_capture)
    code = compile(tree, f'<reconpy-scoped:{name}>', 'exec')
    exec(code, ns)
    return ns[name]


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _rebind_stmt(name: str, helper: str) -> ast.stmt:
    return ast.parse(f"{name} = {helper}({name})").body[0]


def _apply_rebinding(body: ast.expr, names: List[str], helper: str) -> ast.expr:
    params = ', '.join(names)
    calls = ', '.join(f"{helper}({n})" for n in names)
    call = ast.parse(f"(lambda {params}: None)({calls})", mode='eval').body
    call.func.body = body
    return call


def _is_rebind_call(node: ast.AST, helper: str) -> Optional[str]:
    """Name rebound by ``helper(name)``, or None."""
    if (isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name) and node.func.id == helper
            and len(node.args) == 1 and not node.keywords
            and isinstance(node.args[0], ast.Name)):
        return node.args[0].id
    return None


def _lambda_rebound(node: ast.Lambda, helper: str) -> Set[str]:
    """Names already rebound by an applied inner lambda."""
    body = node.body
    if not (isinstance(body, ast.Call) and isinstance(body.func, ast.Lambda)):
        return set()
    inner = [a.arg for a in body.func.args.args]
    rebound = [_is_rebind_call(arg, helper) for arg in body.args]
    if len(inner) != len(rebound) or inner != rebound:
        return set()
    return set(inner)


def _def_rebound(node: ast.AST, helper: str) -> Set[str]:
    """Names rebound by leading ``name = helper(name)`` statements."""
    body = node.body
    start = 1 if ast.get_docstring(node, clean=False) is not None else 0
    names: Set[str] = set()
    for stmt in body[start:]:
        if not (isinstance(stmt, ast.Assign) and len(stmt.targets) == 1
                and isinstance(stmt.targets[0], ast.Name)):
            break
        rebound = _is_rebind_call(stmt.value, helper)
        if rebound != stmt.targets[0].id:
            break
        names.add(rebound)
    return names


def _find_lambda(tree: ast.AST, func: Callable) -> ast.Lambda:
    """The outermost lambda in ``tree`` whose parameters match ``func``."""
    code = func.__code__
    expected = list(code.co_varnames[:code.co_argcount + code.co_kwonlyargcount])
    matches = []
    stack = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, ast.Lambda):
            args = node.args
            names = [a.arg for a in args.posonlyargs + args.args + args.kwonlyargs]
            if names == expected:
                matches.append(node)
            continue
        stack.extend(ast.iter_child_nodes(node))
    if len(matches) != 1:
        raise TypeError(
            f"Cannot locate the source of lambda with parameters {expected} "
            f"({len(matches)} candidates)"
        )
    return matches[0]


def _declared_outward(node: ast.AST) -> Set[str]:
    """Names a def declares global/nonlocal directly in its own body."""
    names: Set[str] = set()
    stack = list(node.body)
    while stack:
        child = stack.pop()
        if isinstance(child, (ast.Global, ast.Nonlocal)):
            names.update(child.names)
        elif not isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef,
                                    ast.ClassDef, ast.Lambda)):
            stack.extend(ast.iter_child_nodes(child))
    return names


def _as_statements(body: Union[str, ast.AST, List[ast.stmt]]) -> List[ast.stmt]:
    if isinstance(body, str):
        return ast.parse(body).body
    if isinstance(body, list):
        return list(body)
    if isinstance(body, ast.Module):
        return list(body.body)
    if isinstance(body, ast.Expression):
        body = body.body
    if isinstance(body, ast.expr):
        return [ast.Return(value=body)]
    if isinstance(body, ast.stmt):
        return [body]
    raise TypeError(f"Cannot use {type(body).__name__} as a function body")
