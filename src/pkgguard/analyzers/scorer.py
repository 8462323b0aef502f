"""Risk aggregation: component scores -> overall score -> risk level."""

import logging

from pkgguard.models.schemas import (
    MaliciousPattern,
    RiskAssessment,
    RiskLevel,
    RiskPolicy,
    RiskScore,
    Severity,
    TyposquattingRisk,
    Vulnerability,
)

logger = logging.getLogger(__name__)

COMPONENTS = ("malicious_code", "vulnerability", "typosquatting", "supply_chain")


class RiskAggregator:
    """Combines detector outputs into one verdict.

    Scoring weights (defaults, see RiskPolicy):
    - Malicious code: 35%
    - Vulnerabilities: 35%
    - Typosquatting: 20%
    - Supply chain: 10%

    The weighted level is then raised by floors, so that one critical
    finding is never averaged away by clean components.
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self.policy = policy or RiskPolicy()

    def assess(
        self,
        components: dict[str, float],
        vulnerabilities: list[Vulnerability],
        malicious_patterns: list[MaliciousPattern],
        typosquatting: TyposquattingRisk | None,
    ) -> RiskAssessment:
        """Aggregate component scores and findings.

        Args:
            components: Component name -> score (0-100). Missing components count as 0.
            vulnerabilities: Matched vulnerabilities (for floors).
            malicious_patterns: Scanner findings (for floors).
            typosquatting: Typosquatting verdict (for floors).

        Returns:
            RiskAssessment with the final level and any floor overrides.
        """
        components = {
            name: max(0.0, min(100.0, float(components.get(name, 0.0))))
            for name in COMPONENTS
        }
        overall = self._weighted_overall(components)
        weighted_level = self._score_to_level(overall)

        level, overrides = self._apply_floors(weighted_level, vulnerabilities, malicious_patterns, typosquatting)
        for reason in overrides:
            logger.info(f"Risk floor applied: {reason}")

        return RiskAssessment(
            risk_score=RiskScore(components=components, overall=round(overall, 2), risk_level=level),
            weighted_level=weighted_level,
            overrides=overrides,
        )

    def _weighted_overall(self, components: dict[str, float]) -> float:
        weights = self.policy.weights
        total_weight = sum(weights.get(name, 0.0) for name in COMPONENTS)
        if total_weight <= 0:
            return 0.0
        overall = sum(components[name] * weights.get(name, 0.0) for name in COMPONENTS) / total_weight
        return max(0.0, min(100.0, overall))

    def _score_to_level(self, score: float) -> RiskLevel:
        """Convert overall score to a risk level."""
        for level in (RiskLevel.SAFE, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH):
            if score < self.policy.level_thresholds[level]:
                return level
        return RiskLevel.CRITICAL

    def _apply_floors(
        self,
        level: RiskLevel,
        vulnerabilities: list[Vulnerability],
        malicious_patterns: list[MaliciousPattern],
        typosquatting: TyposquattingRisk | None,
    ) -> tuple[RiskLevel, list[str]]:
        """Raise the level to the floor implied by critical findings."""
        overrides = []

        def raise_to(floor: RiskLevel, reason: str) -> None:
            nonlocal level
            if level < floor:
                level = floor
                overrides.append(reason)

        critical_vulns = [
            v for v in vulnerabilities
            if v.severity_score >= self.policy.critical_vulnerability_severity
        ]
        if critical_vulns:
            worst = max(critical_vulns, key=lambda v: v.severity_score)
            raise_to(
                RiskLevel.HIGH,
                f"Critical vulnerability {worst.identifier} ({worst.severity_score:g}) in {worst.dependency_name}",
            )

        critical_patterns = [p for p in malicious_patterns if p.severity == Severity.CRITICAL]
        if critical_patterns:
            first = critical_patterns[0]
            raise_to(RiskLevel.HIGH, f"Critical malicious pattern '{first.pattern_name}' in {first.location}")

        if (
            typosquatting is not None
            and typosquatting.is_potential_typosquatting
            and typosquatting.confidence_score >= self.policy.typosquatting_floor_confidence
        ):
            raise_to(
                RiskLevel.MEDIUM,
                f"Name closely resembles {typosquatting.similar_packages[0]} "
                f"(confidence {typosquatting.confidence_score:.2f})",
            )

        return level, overrides
