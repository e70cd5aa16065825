"""
Tests for the scope analyzer.

Validates:
  - Free variables follow Python scoping (params, comprehensions, classes,
    walrus, global / nonlocal)
  - reconstructable = free ∩ registry
  - Inputs: source text, AST (not mutated), live functions
  - Syntactic fallback over-approximates
  - Cyclic trees raise StructuralError
"""

import ast

import pytest

from reconpy.analysis.scope_analyzer import (
    ReconstructableRegistry,
    ScopeAnalyzer,
    build_scopes,
    collect_identifiers,
    normalize,
    syntactic_captures,
)
from reconpy.errors import StructuralError


offset = 10


def add_offset(a):
    return a + offset + scale


# ---------- Free Variable Tests ----------

class TestFreeVariables:
    def setup_method(self):
        self.analyzer = ScopeAnalyzer()

    def free(self, source):
        return self.analyzer.analyze(source).free_vars

    def test_lambda(self):
        assert self.free('lambda a: a + x + y') == {'x', 'y'}

    def test_parameter_shadows(self):
        assert self.free('lambda x: x + y') == {'y'}

    def test_nested_lambda(self):
        assert self.free('lambda a: lambda b: a + b + c') == {'c'}

    def test_function_locals(self):
        source = '''
def f(a, *args, k=1, **kw):
    total = a + k + len(args) + len(kw)
    for i in items:
        total += i
    return total
'''
        assert self.free(source) == {'len', 'items'}

    def test_default_evaluated_outside(self):
        assert self.free('def f(a=b): return a') == {'b'}

    def test_comprehension_scope(self):
        assert self.free('[i * k for i in items if i]') == {'k', 'items'}

    def test_comprehension_variable_does_not_leak(self):
        assert self.free('[i for i in data]\ni') == {'data', 'i'}

    def test_walrus_binds_enclosing_scope(self):
        assert self.free('[(t := v) for v in data]\nprint(t)') == {'data', 'print'}

    def test_class_body_does_not_enclose_methods(self):
        source = '''
class C:
    z = 1
    def m(self):
        return z
'''
        assert self.free(source) == {'z'}

    def test_global_declaration(self):
        source = '''
def f():
    global g
    g = 1
    return h
'''
        assert self.free(source) == {'g', 'h'}

    def test_nonlocal_declaration(self):
        source = '''
def outer():
    n = 0
    def inner():
        nonlocal n
        n += 1
    return inner
'''
        assert self.free(source) == set()

    def test_imports_and_except(self):
        source = '''
import os.path
from json import loads as parse
try:
    parse(os.path.sep)
except ValueError as err:
    report(err)
'''
        assert self.free(source) == {'ValueError', 'report'}

    def test_function_input(self):
        record = self.analyzer.analyze(add_offset)
        assert record.free_vars == {'offset', 'scale'}

    def test_closure_captures(self):
        tree = normalize('''
def outer():
    def inner(a):
        return a + x
    return inner
''')
        captures = ScopeAnalyzer().closure_captures(tree)
        by_name = {
            node.name: captures[id(node)]
            for node in ast.walk(tree)
            if isinstance(node, ast.FunctionDef)
        }
        assert by_name == {'outer': {'x'}, 'inner': {'x'}}


# ---------- Registry Tests ----------

class TestRegistry:
    def setup_method(self):
        self.analyzer = ScopeAnalyzer()

    def test_reconstructable_subset(self):
        self.analyzer.mark_reconstructable('x')
        tree, free, reconstructable = self.analyzer.analyze('lambda a: a + x + y')
        assert free == {'x', 'y'}
        assert reconstructable == {'x'}
        assert isinstance(tree, ast.AST)

    def test_marked_but_bound(self):
        self.analyzer.mark_reconstructable('x')
        record = self.analyzer.analyze('lambda x: x')
        assert record.reconstructable_vars == set()

    def test_is_reconstructable(self):
        assert not self.analyzer.is_reconstructable('x')
        self.analyzer.mark_reconstructable('x')
        assert self.analyzer.is_reconstructable('x')

    def test_registries_are_independent(self):
        other = ScopeAnalyzer()
        self.analyzer.mark_reconstructable('x')
        assert not other.is_reconstructable('x')

    def test_invalid_names_rejected(self):
        registry = ReconstructableRegistry()
        for bad in ('', '1x', 'a-b', 'class', 3):
            with pytest.raises(ValueError):
                registry.mark(bad)

    def test_registry_contents(self):
        registry = ReconstructableRegistry(['b', 'a'])
        assert list(registry) == ['a', 'b']
        assert 'a' in registry
        assert len(registry) == 2
        assert registry.names() == frozenset({'a', 'b'})


# ---------- Normalization Tests ----------

class TestNormalization:
    def test_ast_input_not_mutated(self):
        tree = ast.parse('lambda a: a + x')
        before = ast.dump(tree)
        result = normalize(tree)
        assert result is not tree
        assert ast.dump(tree) == before

    def test_bare_expression_wrapped(self):
        expr = ast.parse('a + b', mode='eval').body
        assert isinstance(normalize(expr), ast.Expression)

    def test_bare_statement_wrapped(self):
        stmt = ast.parse('x = y').body[0]
        assert isinstance(normalize(stmt), ast.Module)

    def test_indented_source(self):
        tree = normalize('''
            def f():
                return q
        ''')
        assert isinstance(tree.body[0], ast.FunctionDef)

    def test_unsupported_input(self):
        with pytest.raises(TypeError):
            normalize(42)


# ---------- Fallback Tests ----------

class TestSyntacticFallback:
    def test_over_approximation(self):
        analyzer = ScopeAnalyzer(structural=False)
        record = analyzer.analyze('lambda a: a + x')
        assert record.free_vars == {'a', 'x'}
        assert record.structural is False
        assert analyzer.stats['fallbacks'] == 1

    def test_superset_of_structural(self):
        source = '[i * k for i in items]\nlambda q, *r: q + s'
        structural = ScopeAnalyzer().analyze(source).free_vars
        syntactic = ScopeAnalyzer(structural=False).analyze(source).free_vars
        assert structural <= syntactic

    def test_collect_identifiers(self):
        tree = ast.parse('import a.b as c\ndef f(p): return p + q')
        assert collect_identifiers(tree) == {'c', 'f', 'p', 'q'}

    def test_syntactic_captures_exclude_own_bindings(self):
        tree = normalize('''
def f(a):
    import os
    total, (k, v) = 0, (1, 2)
    try:
        pass
    except ValueError as err:
        pass
    with open(path) as fh:
        pass
    squares = [i * i for i in items if (last := i)]
    return a + total + k + v + last + scale
''')
        assert syntactic_captures(tree.body[0]) == {
            'ValueError', 'open', 'path', 'items', 'scale',
        }

    def test_syntactic_captures_through_nested_closure(self):
        tree = normalize('lambda: (lambda y: y + z)(1)')
        assert syntactic_captures(tree.body) == {'z'}

    def test_fallback_captures_match_structural_on_locals(self):
        source = 'def f():\n    x = 1\n    return x + y'
        tree = normalize(source)
        structural = ScopeAnalyzer().closure_captures(tree)
        syntactic = ScopeAnalyzer(structural=False).closure_captures(tree)
        assert structural == syntactic == {id(tree.body[0]): {'y'}}

    def test_structural_failure_falls_back(self, monkeypatch, caplog):
        import reconpy.analysis.scope_analyzer as module

        def broken(tree):
            raise AttributeError('unsupported node')

        monkeypatch.setattr(module, 'build_scopes', broken)
        analyzer = ScopeAnalyzer()
        with caplog.at_level('WARNING'):
            record = analyzer.analyze('lambda a: a + x')
        assert record.free_vars == {'a', 'x'}
        assert record.structural is False
        assert 'fallback' in caplog.text


# ---------- Structural Error Tests ----------

class TestCyclicTrees:
    def test_cycle_detected(self):
        tree = ast.parse('x + y', mode='eval')
        tree.body.left = tree.body
        with pytest.raises(StructuralError):
            ScopeAnalyzer().analyze(tree)

    def test_shared_subtree_is_not_a_cycle(self):
        tree = ast.parse('x + y', mode='eval')
        tree.body.right = tree.body.left
        assert ScopeAnalyzer().analyze(tree).free_vars == {'x'}

    def test_scope_tree_shape(self):
        root = build_scopes(ast.parse('f = lambda a: [b for b in a]'))
        kinds = [scope.kind for scope in root.walk()]
        assert kinds == ['module', 'lambda', 'comprehension']
