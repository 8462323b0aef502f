"""Tests for risk aggregation."""

import pytest

from pkgguard.analyzers.scorer import COMPONENTS, RiskAggregator
from pkgguard.models.schemas import (
    MaliciousPattern,
    RiskLevel,
    RiskPolicy,
    Severity,
    TyposquattingRisk,
    Vulnerability,
)


def vuln(score, cve="CVE-2000-0001"):
    return Vulnerability(cve_id=cve, description="x", severity_score=score, dependency_name="dep", affected_range="*")


def pattern(severity):
    return MaliciousPattern(
        pattern_name="remote-code-exec", description="x", location="scripts.install", severity=severity, weight=40
    )


def typo(confidence):
    return TyposquattingRisk(is_potential_typosquatting=True, similar_packages=["lodash"], confidence_score=confidence)


@pytest.fixture
def aggregator():
    return RiskAggregator()


class TestWeightedScore:
    def test_clean_package_is_safe(self, aggregator):
        assessment = aggregator.assess({}, [], [], None)
        assert assessment.risk_level == RiskLevel.SAFE
        assert assessment.risk_score.overall == 0.0
        assert set(assessment.risk_score.components) == set(COMPONENTS)
        assert assessment.overrides == []

    @pytest.mark.parametrize(
        "score,level",
        [(19.5, RiskLevel.SAFE), (20.5, RiskLevel.LOW), (40.5, RiskLevel.MEDIUM), (60.5, RiskLevel.HIGH), (80.5, RiskLevel.CRITICAL)],
    )
    def test_level_thresholds(self, aggregator, score, level):
        components = {name: score for name in COMPONENTS}
        assert aggregator.assess(components, [], [], None).risk_level == level

    def test_weights(self, aggregator):
        assessment = aggregator.assess({"malicious_code": 100, "supply_chain": 100}, [], [], None)
        assert assessment.risk_score.overall == pytest.approx(45.0)

    def test_components_clamped(self, aggregator):
        assessment = aggregator.assess({"malicious_code": 150, "supply_chain": -5}, [], [], None)
        assert assessment.risk_score.components["malicious_code"] == 100.0
        assert assessment.risk_score.components["supply_chain"] == 0.0

    def test_monotonic_in_each_component(self, aggregator):
        for name in COMPONENTS:
            levels = [aggregator.assess({name: value}, [], [], None).risk_level for value in range(0, 101, 5)]
            assert levels == sorted(levels)

    def test_custom_policy(self):
        policy = RiskPolicy(weights={"malicious_code": 1.0})
        assessment = RiskAggregator(policy).assess({"malicious_code": 50, "vulnerability": 100}, [], [], None)
        assert assessment.risk_score.overall == 50.0
        assert assessment.risk_level == RiskLevel.MEDIUM


class TestFloors:
    def test_critical_vulnerability_floor(self, aggregator):
        assessment = aggregator.assess({"vulnerability": 98}, [vuln(9.8)], [], None)
        assert assessment.weighted_level == RiskLevel.LOW
        assert assessment.risk_level == RiskLevel.HIGH
        assert "CVE-2000-0001" in assessment.overrides[0]

    def test_non_critical_vulnerability_has_no_floor(self, aggregator):
        assessment = aggregator.assess({"vulnerability": 75}, [vuln(7.5)], [], None)
        assert assessment.risk_level == RiskLevel.LOW
        assert assessment.overrides == []

    def test_critical_pattern_floor(self, aggregator):
        assessment = aggregator.assess({"malicious_code": 40}, [], [pattern(Severity.CRITICAL)], None)
        assert assessment.risk_level == RiskLevel.HIGH
        assert "remote-code-exec" in assessment.overrides[0]

    def test_high_pattern_has_no_floor(self, aggregator):
        assessment = aggregator.assess({"malicious_code": 25}, [], [pattern(Severity.HIGH)], None)
        assert assessment.risk_level == RiskLevel.SAFE

    def test_typosquatting_floor(self, aggregator):
        assessment = aggregator.assess({"typosquatting": 95}, [], [], typo(0.95))
        assert assessment.weighted_level == RiskLevel.SAFE
        assert assessment.risk_level == RiskLevel.MEDIUM
        assert "lodash" in assessment.overrides[0]

    def test_weak_typosquatting_has_no_floor(self, aggregator):
        assert aggregator.assess({"typosquatting": 80}, [], [], typo(0.8)).risk_level == RiskLevel.SAFE

    def test_floor_never_lowers(self, aggregator):
        components = {name: 90 for name in COMPONENTS}
        assessment = aggregator.assess(components, [vuln(9.8)], [pattern(Severity.CRITICAL)], typo(0.95))
        assert assessment.risk_level == RiskLevel.CRITICAL
        assert assessment.overrides == []
