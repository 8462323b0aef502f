"""Quality signals for a package: documentation, tests, CI, maintenance."""

import logging

from pkgguard.adapters.pypi import TEST_TOOLS
from pkgguard.models.schemas import DependencyKind, PackageInfo, PackageType, QualityMetrics
from pkgguard.versions import InvalidConstraint, parse_version

logger = logging.getLogger(__name__)

NPM_TEST_TOOLS = {
    "mocha", "jest", "ava", "tap", "vitest", "jasmine", "karma", "nyc", "c8",
    "@jest/core", "@playwright/test", "cypress",
}


class QualityEvaluator:
    """Derives QualityMetrics from manifest data and repository layout.

    Informational only; nothing here feeds the risk score.
    """

    def evaluate(self, package: PackageInfo) -> QualityMetrics:
        """Evaluate quality signals.

        Args:
            package: Normalized package.

        Returns:
            QualityMetrics with ``computed=True``.
        """
        has_tests = self._has_tests(package)
        has_ci_cd = bool(package.attributes.get("has_ci_config", False))
        documentation = self._documentation_score(package)
        maintenance = self._maintenance_score(package, has_tests, has_ci_cd)
        logger.debug(
            f"Quality of {package.name}: docs={documentation:.2f} maintenance={maintenance:.2f} "
            f"tests={has_tests} ci={has_ci_cd}"
        )
        return QualityMetrics(
            documentation_score=documentation,
            has_tests=has_tests,
            has_ci_cd=has_ci_cd,
            maintenance_score=maintenance,
            computed=True,
        )

    def _documentation_score(self, package: PackageInfo) -> float:
        """Score documentation signals (0-1).

        Points (100 max):
        - Description: 25 (+5 if more than a few words)
        - README: 25
        - Homepage: 10
        - Repository: 15
        - License: 10
        - Keywords: 5
        - Author: 5
        """
        metadata = package.metadata
        score = 0.0

        if metadata.description:
            score += 25
            if len(metadata.description.split()) >= 5:
                score += 5

        if package.attributes.get("has_readme"):
            score += 25

        if metadata.homepage:
            score += 10

        if metadata.repository:
            score += 15

        if metadata.license:
            score += 10

        if metadata.keywords:
            score += 5

        if metadata.author:
            score += 5

        return max(0.0, min(100.0, score)) / 100

    def _has_tests(self, package: PackageInfo) -> bool:
        attributes = package.attributes
        if attributes.get("has_tests_dir") or attributes.get("declares_test_requirements"):
            return True
        if package.package_type == PackageType.NPM and attributes.get("has_real_test_script"):
            return True

        tools = NPM_TEST_TOOLS if package.package_type == PackageType.NPM else TEST_TOOLS
        return any(
            dep.kind == DependencyKind.DEV and dep.name.lower() in tools
            for dep in package.dependencies
        )

    def _maintenance_score(self, package: PackageInfo, has_tests: bool, has_ci_cd: bool) -> float:
        """Score maintenance signals (0-1).

        Points (100 max):
        - Version maturity: 30 (>= 1.0), 15 (0.x with a minor release)
        - Repository: 20
        - License: 15
        - Tests: 15
        - CI: 15
        - Changelog: 5
        """
        score = 0.0

        try:
            version = parse_version(package.version) if package.version else None
        except InvalidConstraint:
            version = None
        if version is not None:
            if version.major >= 1:
                score += 30
            elif version.minor >= 1:
                score += 15

        if package.metadata.repository:
            score += 20

        if package.metadata.license:
            score += 15

        if has_tests:
            score += 15

        if has_ci_cd:
            score += 15

        if package.attributes.get("has_changelog"):
            score += 5

        return max(0.0, min(100.0, score)) / 100
