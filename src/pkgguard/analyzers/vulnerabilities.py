"""Match declared dependency constraints against advisory feeds."""

from __future__ import annotations

import asyncio
import logging

from pkgguard.analyzers.osv import VulnerabilityFeed
from pkgguard.errors import FeedError
from pkgguard.models.schemas import (
    AdvisoryRecord,
    AnalysisWarning,
    DependencyRef,
    PackageType,
    Vulnerability,
)
from pkgguard.versions import InvalidConstraint, VersionRange, parse_constraint

logger = logging.getLogger(__name__)

SOURCE = "vulnerabilities"


class VulnerabilityMatcher:
    """Finds advisories whose affected ranges intersect a dependency's constraint.

    A constraint is vulnerable if *any* version it admits is affected, so
    ``^4.0.0`` matches an advisory for ``<4.17.21``.
    """

    DEFAULT_SEVERITY = 5.0

    def __init__(
        self,
        feed: VulnerabilityFeed,
        lookup_timeout: float | None = None,
        max_concurrent_lookups: int = 8,
    ) -> None:
        self.feed = feed
        self.lookup_timeout = lookup_timeout
        self.max_concurrent_lookups = max_concurrent_lookups

    async def match(
        self,
        package_type: PackageType,
        dependencies: list[DependencyRef],
    ) -> tuple[list[Vulnerability], list[AnalysisWarning]]:
        """Check every dependency against the feed.

        Args:
            package_type: Ecosystem, which decides the constraint syntax.
            dependencies: Declared and transitive dependencies.

        Returns:
            Tuple of (vulnerabilities, warnings). Vulnerabilities are unique
            per advisory, most severe first. Feed failures and unparseable
            constraints become warnings.
        """
        warnings: list[AnalysisWarning] = []

        unique: dict[tuple[str, str], DependencyRef] = {}
        for dep in dependencies:
            unique.setdefault((dep.name, dep.version_constraint), dep)

        names = sorted({dep.name for dep in unique.values()})
        semaphore = asyncio.Semaphore(self.max_concurrent_lookups)

        async def lookup(name: str) -> list[AdvisoryRecord]:
            async with semaphore:
                try:
                    return await asyncio.wait_for(self.feed.query(package_type, name), self.lookup_timeout)
                except asyncio.TimeoutError:
                    warnings.append(AnalysisWarning(
                        source=SOURCE,
                        message=f"Advisory lookup timed out after {self.lookup_timeout:g}s",
                        subject=name,
                    ))
                except FeedError as e:
                    warnings.append(AnalysisWarning(source=SOURCE, message=str(e), subject=name))
                logger.warning(f"No advisories checked for {name}")
                return []

        results = await asyncio.gather(*(lookup(name) for name in names))
        advisories = dict(zip(names, results))

        found: dict[str, Vulnerability] = {}
        for dep in unique.values():
            records = advisories.get(dep.name, [])
            if not records:
                continue
            try:
                declared = parse_constraint(package_type, dep.version_constraint)
            except InvalidConstraint:
                warnings.append(AnalysisWarning(
                    source=SOURCE,
                    message=f"Skipped unparseable version constraint {dep.version_constraint!r}",
                    subject=dep.name,
                ))
                continue

            for record in records:
                if not record.cve_id and not record.advisory_id:
                    logger.debug(f"Ignoring advisory without an id for {record.package}")
                    continue
                affected_range = self._affected_range(package_type, record, declared, warnings)
                if affected_range is None:
                    continue
                vulnerability = self._to_vulnerability(record, dep, affected_range)
                if vulnerability.identifier not in found:
                    found[vulnerability.identifier] = vulnerability

        vulnerabilities = sorted(found.values(), key=lambda v: (-v.severity_score, v.identifier))
        logger.info(f"Matched {len(vulnerabilities)} vulnerabilities across {len(names)} dependencies")
        return vulnerabilities, warnings

    def _affected_range(
        self,
        package_type: PackageType,
        record: AdvisoryRecord,
        declared: VersionRange,
        warnings: list[AnalysisWarning],
    ) -> str | None:
        """Return the first affected range intersecting the declared constraint."""
        # No ranges on record means every version is affected
        for raw in record.affected_ranges or ["*"]:
            try:
                affected = parse_constraint(package_type, raw)
            except InvalidConstraint:
                warnings.append(AnalysisWarning(
                    source=SOURCE,
                    message=f"Advisory {record.cve_id or record.advisory_id} has unparseable range {raw!r}",
                    subject=record.package,
                ))
                continue
            if declared.intersects(affected):
                return raw
        return None

    def _to_vulnerability(self, record: AdvisoryRecord, dep: DependencyRef, affected_range: str) -> Vulnerability:
        severity = record.severity_score
        if severity is None:
            severity = self.DEFAULT_SEVERITY
        severity = max(0.0, min(10.0, float(severity)))
        return Vulnerability(
            cve_id=record.cve_id,
            advisory_id=record.advisory_id,
            description=record.description or f"Known vulnerability in {dep.name}",
            severity_score=severity,
            dependency_name=dep.name,
            affected_range=affected_range,
            dependency_constraint=dep.version_constraint,
            references=record.references,
        )

    @staticmethod
    def score(vulnerabilities: list[Vulnerability]) -> float:
        """Vulnerability component: the worst severity scaled to 0-100."""
        if not vulnerabilities:
            return 0.0
        return max(v.severity_score for v in vulnerabilities) * 10.0
