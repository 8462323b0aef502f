"""Dependency graph walk and supply-chain exposure score."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Protocol

from pkgguard.errors import DependencyResolutionError
from pkgguard.models.schemas import (
    AnalysisWarning,
    DependencyAnalysis,
    DependencyKind,
    DependencyRef,
)

logger = logging.getLogger(__name__)

SOURCE = "dependencies"


class DependencyResolver(Protocol):
    """Anything that can list the dependencies of a dependency."""

    async def resolve(self, name: str, constraint: str) -> list[DependencyRef]:
        ...


class DependencyAnalyzer:
    """Walks the dependency graph breadth-first up to a maximum depth.

    Depth 1 is what the manifest declares. Deeper levels need a resolver;
    without one the walk stops at the declared dependencies. Dev
    dependencies are listed but never expanded, and each name is expanded
    at most once, which also breaks cycles.
    """

    def __init__(
        self,
        resolver: DependencyResolver | None = None,
        lookup_timeout: float | None = None,
        max_concurrent_lookups: int = 8,
    ) -> None:
        self.resolver = resolver
        self.lookup_timeout = lookup_timeout
        self.max_concurrent_lookups = max_concurrent_lookups

    async def analyze(self, declared: list[DependencyRef], max_depth: int) -> DependencyAnalysis:
        """Build the dependency analysis.

        Args:
            declared: Dependencies declared in the manifest.
            max_depth: Deepest level to include; 0 means no dependencies at all.

        Returns:
            DependencyAnalysis. Failed lookups are recorded as warnings and
            unresolved names, never raised.
        """
        if max_depth <= 0 or not declared:
            return DependencyAnalysis()

        seen: set[tuple[str, str]] = set()
        dependencies: list[DependencyRef] = []
        level: list[DependencyRef] = []
        for dep in declared:
            key = (dep.name, dep.version_constraint)
            if key in seen:
                continue
            seen.add(key)
            ref = dep.model_copy(update={"depth": 1, "parent": None})
            dependencies.append(ref)
            level.append(ref)

        resolved_depth = 1
        expanded: set[str] = set()
        unresolved: list[str] = []
        warnings: list[AnalysisWarning] = []
        semaphore = asyncio.Semaphore(self.max_concurrent_lookups)

        async def lookup(dep: DependencyRef) -> list[DependencyRef] | None:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self.resolver.resolve(dep.name, dep.version_constraint),
                        self.lookup_timeout,
                    )
                except asyncio.TimeoutError:
                    reason = f"lookup timed out after {self.lookup_timeout:g}s"
                except DependencyResolutionError as e:
                    reason = e.reason
                except Exception as e:
                    # Unexpected registry shapes surface as KeyError, TypeError...
                    reason = f"{type(e).__name__}: {e}"
                logger.warning(f"Could not resolve {dep.name}: {reason}")
                warnings.append(AnalysisWarning(
                    source=SOURCE,
                    message=f"Dependency metadata lookup failed: {reason}",
                    subject=dep.name,
                ))
                return None

        depth = 1
        while depth < max_depth and self.resolver is not None:
            to_expand = []
            for dep in level:
                if dep.kind == DependencyKind.DEV or dep.name in expanded:
                    continue
                expanded.add(dep.name)
                to_expand.append(dep)
            if not to_expand:
                break

            results = await asyncio.gather(*(lookup(dep) for dep in to_expand))

            next_level = []
            for parent, children in zip(to_expand, results):
                if children is None:
                    unresolved.append(parent.name)
                    continue
                for child in children:
                    key = (child.name, child.version_constraint)
                    if key in seen:
                        continue
                    seen.add(key)
                    ref = child.model_copy(update={"depth": depth + 1, "parent": parent.name})
                    dependencies.append(ref)
                    next_level.append(ref)

            if not next_level:
                break
            depth += 1
            resolved_depth = depth
            level = next_level

        breadth = len({dep.name for dep in dependencies})
        logger.info(f"Dependency walk: {len(dependencies)} entries, {breadth} distinct, depth {resolved_depth}")
        return DependencyAnalysis(
            dependencies=dependencies,
            resolved_depth=resolved_depth,
            breadth=breadth,
            unresolved=sorted(set(unresolved)),
            warnings=warnings,
        )

    @staticmethod
    def score(analysis: DependencyAnalysis, saturation: int = 200) -> float:
        """Supply-chain component: logarithmic in the number of distinct dependencies.

        Reaches 100 at ``saturation`` distinct dependencies.
        """
        if analysis.breadth <= 0:
            return 0.0
        return min(100.0, 100.0 * math.log1p(analysis.breadth) / math.log1p(saturation))
