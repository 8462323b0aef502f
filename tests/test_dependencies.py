"""Tests for the dependency graph walk."""

import asyncio

import pytest

from pkgguard.analyzers.dependencies import DependencyAnalyzer
from pkgguard.errors import DependencyResolutionError
from pkgguard.models.schemas import DependencyAnalysis, DependencyKind, DependencyRef

GRAPH = {
    "a": [("b", "^1.0.0"), ("c", "^1.0.0")],
    "b": [("d", "^1.0.0")],
    "c": [("a", "^1.0.0")],  # cycle back to a
    "d": [],
    "x": [("y", "^1.0.0")],
}


class FakeResolver:
    """Resolves from an in-memory graph, optionally failing or stalling for some names."""

    def __init__(self, graph=GRAPH, failing=(), slow=(), broken=()):
        self.graph = graph
        self.failing = set(failing)
        self.broken = set(broken)
        self.slow = set(slow)
        self.calls = []

    async def resolve(self, name, constraint):
        self.calls.append(name)
        if name in self.failing:
            raise DependencyResolutionError(name, "HTTP 503")
        if name in self.broken:
            raise KeyError("versions")
        if name in self.slow:
            await asyncio.sleep(5)
        return [DependencyRef(name=child, version_constraint=c) for child, c in self.graph.get(name, [])]


DECLARED = [
    DependencyRef(name="a", version_constraint="^1.0.0"),
    DependencyRef(name="x", version_constraint="^1.0.0", kind=DependencyKind.DEV),
]


def analyze(resolver, max_depth, declared=DECLARED, **kwargs):
    return asyncio.run(DependencyAnalyzer(resolver, **kwargs).analyze(declared, max_depth))


class TestDependencyAnalyzer:
    def test_depth_zero_means_no_dependencies(self):
        analysis = analyze(FakeResolver(), 0)
        assert analysis == DependencyAnalysis()

    def test_no_declared_dependencies(self):
        assert analyze(FakeResolver(), 5, declared=[]).breadth == 0

    def test_depth_one_is_declared_only(self):
        resolver = FakeResolver()
        analysis = analyze(resolver, 1)
        assert [d.name for d in analysis.dependencies] == ["a", "x"]
        assert analysis.resolved_depth == 1
        assert resolver.calls == []

    def test_without_resolver_stops_at_declared(self):
        analysis = analyze(None, 5)
        assert analysis.breadth == 2
        assert analysis.resolved_depth == 1

    def test_walk_records_depth_and_parent(self):
        analysis = analyze(FakeResolver(), 5)
        by_name = {d.name: d for d in analysis.dependencies}
        assert set(by_name) == {"a", "x", "b", "c", "d"}
        assert (by_name["b"].depth, by_name["b"].parent) == (2, "a")
        assert (by_name["d"].depth, by_name["d"].parent) == (3, "b")
        assert by_name["a"].depth == 1 and by_name["a"].parent is None
        assert analysis.resolved_depth == 3
        assert analysis.breadth == 5
        assert len(analysis.direct_dependencies) == 2

    def test_cycles_terminate(self):
        resolver = FakeResolver()
        analysis = analyze(resolver, 50)
        assert [d.name for d in analysis.dependencies].count("a") == 1
        assert resolver.calls.count("a") == 1

    def test_max_depth_bounds_walk(self):
        analysis = analyze(FakeResolver(), 2)
        assert {d.name for d in analysis.dependencies} == {"a", "x", "b", "c"}
        assert analysis.resolved_depth == 2

    def test_dev_dependencies_not_expanded(self):
        resolver = FakeResolver()
        analysis = analyze(resolver, 5)
        assert "x" not in resolver.calls
        assert "y" not in {d.name for d in analysis.dependencies}

    def test_failed_lookup_is_recorded(self):
        analysis = analyze(FakeResolver(failing={"b"}), 5)
        assert analysis.unresolved == ["b"]
        assert "d" not in {d.name for d in analysis.dependencies}
        assert "c" in {d.name for d in analysis.dependencies}
        warning = analysis.warnings[0]
        assert warning.source == "dependencies"
        assert warning.subject == "b"
        assert "HTTP 503" in warning.message

    def test_unexpected_resolver_error_is_isolated(self):
        """A registry document of the wrong shape only loses that one subtree."""
        analysis = analyze(FakeResolver(broken={"b"}), 5)
        names = {d.name for d in analysis.dependencies}
        assert analysis.unresolved == ["b"]
        assert "c" in names and "d" not in names
        assert analysis.warnings[0].subject == "b"
        assert "KeyError" in analysis.warnings[0].message

    def test_lookup_timeout_is_recorded(self):
        analysis = analyze(FakeResolver(slow={"a"}), 5, lookup_timeout=0.05)
        assert analysis.unresolved == ["a"]
        assert "timed out" in analysis.warnings[0].message
        assert analysis.breadth == 2

    def test_duplicate_declarations_collapsed(self):
        declared = DECLARED + [DependencyRef(name="a", version_constraint="^1.0.0")]
        assert [d.name for d in analyze(None, 1, declared=declared).dependencies] == ["a", "x"]


class TestSupplyChainScore:
    @pytest.mark.parametrize("breadth,expected", [(0, 0.0), (200, 100.0), (5000, 100.0)])
    def test_bounds(self, breadth, expected):
        assert DependencyAnalyzer.score(DependencyAnalysis(breadth=breadth)) == pytest.approx(expected)

    def test_monotonic(self):
        scores = [DependencyAnalyzer.score(DependencyAnalysis(breadth=n)) for n in range(0, 300, 10)]
        assert scores == sorted(scores)
        assert all(0.0 <= s <= 100.0 for s in scores)
