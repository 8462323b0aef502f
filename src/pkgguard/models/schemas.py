"""Pydantic models for package risk analysis."""

import json
import os
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _OrderedEnum(str, Enum):
    """String enum whose members compare by declaration order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: str):
        """Look up a member by value, case-insensitively."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown {cls.__name__} '{value}'. Expected one of: {choices}") from None


class PackageType(str, Enum):
    """Package ecosystems understood by the engine."""

    NPM = "npm"
    PYTHON = "python"


class RiskLevel(_OrderedEnum):
    """Overall risk level. Safe < Low < Medium < High < Critical."""

    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(_OrderedEnum):
    """Severity of an individual finding."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DependencyKind(str, Enum):
    """How a dependency is declared."""

    RUNTIME = "runtime"
    DEV = "dev"
    OPTIONAL = "optional"


class DetectorStatus(str, Enum):
    """Outcome of a single detector run."""

    COMPLETED = "completed"  # Ran over all of its input
    SKIPPED = "skipped"  # Disabled by options, default output
    DEGRADED = "degraded"  # Ran, but some lookups failed (see warnings)
    FAILED = "failed"  # Raised, default output


# --- Package Models ---


class PackageMetadata(BaseModel):
    """Core package metadata from any ecosystem."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: str = ""
    description: str | None = None
    author: str | None = None
    license: str | None = None
    homepage: str | None = None
    repository: str | None = None
    publish_date: str | None = None
    keywords: list[str] = Field(default_factory=list)


class DependencyRef(BaseModel):
    """A dependency reference: name + version constraint + kind."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version_constraint: str = "*"
    kind: DependencyKind = DependencyKind.RUNTIME
    depth: int = Field(default=1, ge=1)
    parent: str | None = None


class PackageInfo(BaseModel):
    """Normalized package description, tagged by ecosystem.

    Detectors work on the common fields and dispatch on ``package_type``
    where the ecosystems differ (e.g. which scripts run at install time).
    """

    model_config = ConfigDict(frozen=True)

    package_type: PackageType
    metadata: PackageMetadata
    dependencies: list[DependencyRef] = Field(default_factory=list)
    scripts: dict[str, str] = Field(default_factory=dict)
    source_files: dict[str, str] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    manifest_path: str | None = None

    @property
    def name(self) -> str:
        """Package name (convenience accessor)."""
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    def custom_attributes(self) -> dict[str, Any]:
        """Ecosystem-specific attributes."""
        return dict(self.attributes)


# --- Findings ---


class AnalysisWarning(BaseModel):
    """A recovered, non-fatal problem observed during analysis."""

    model_config = ConfigDict(frozen=True)

    source: str  # Detector that recorded it
    message: str
    subject: str | None = None  # Dependency or file concerned


class DependencyAnalysis(BaseModel):
    """Declared and transitive dependencies of a package."""

    dependencies: list[DependencyRef] = Field(default_factory=list)
    resolved_depth: int = Field(default=0, ge=0)
    breadth: int = Field(default=0, ge=0)
    unresolved: list[str] = Field(default_factory=list)
    warnings: list[AnalysisWarning] = Field(default_factory=list)

    @property
    def direct_dependencies(self) -> list[DependencyRef]:
        return [dep for dep in self.dependencies if dep.depth == 1]


class AdvisoryRecord(BaseModel):
    """A feed entry: one advisory affecting some versions of one package."""

    model_config = ConfigDict(frozen=True)

    package: str
    cve_id: str = ""
    advisory_id: str = ""
    description: str = ""
    severity_score: float | None = None
    affected_ranges: list[str] = Field(default_factory=list)  # Ecosystem constraint syntax
    references: list[str] = Field(default_factory=list)


class Vulnerability(BaseModel):
    """A known vulnerability matched against a declared dependency."""

    model_config = ConfigDict(frozen=True)

    cve_id: str = ""
    advisory_id: str = ""
    description: str = Field(min_length=1)
    severity_score: float = Field(ge=0.0, le=10.0)
    dependency_name: str
    affected_range: str
    dependency_constraint: str = "*"
    references: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_identifier(self) -> "Vulnerability":
        if not self.cve_id and not self.advisory_id:
            raise ValueError("A vulnerability needs a cve_id or an advisory_id")
        return self

    @property
    def identifier(self) -> str:
        """Deduplication key: the CVE id when tracked, else the advisory id."""
        return self.cve_id or self.advisory_id

    @property
    def severity(self) -> Severity:
        if self.severity_score >= 9.0:
            return Severity.CRITICAL
        elif self.severity_score >= 7.0:
            return Severity.HIGH
        elif self.severity_score >= 4.0:
            return Severity.MEDIUM
        return Severity.LOW


class MaliciousPattern(BaseModel):
    """A suspicious construct found in install-time content."""

    model_config = ConfigDict(frozen=True)

    pattern_name: str  # remote-code-exec, data-exfiltration, ...
    description: str = Field(min_length=1)
    location: str  # scripts.preinstall, setup.py, ...
    severity: Severity
    weight: float = Field(ge=0)
    matched_content: str = ""


class TyposquattingRisk(BaseModel):
    """Likelihood that the package name imitates a popular package."""

    is_potential_typosquatting: bool = False
    similar_packages: list[str] = Field(default_factory=list)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _flag_needs_candidates(self) -> "TyposquattingRisk":
        if self.is_potential_typosquatting and not self.similar_packages:
            raise ValueError("A typosquatting flag needs at least one similar package")
        return self


class QualityMetrics(BaseModel):
    """Maintenance and documentation signals.

    The defaults mean "unknown", never "safe"; ``computed`` tells them apart
    from a real evaluation that happened to land on the same numbers.
    """

    documentation_score: float = Field(default=0.5, ge=0.0, le=1.0)
    has_tests: bool = False
    has_ci_cd: bool = False
    maintenance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    computed: bool = False


# --- Scoring Models ---


class RiskScore(BaseModel):
    """Per-component risk scores (0-100) and the derived level."""

    components: dict[str, float] = Field(default_factory=dict)
    overall: float = Field(default=0.0, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.SAFE

    @model_validator(mode="after")
    def _components_in_range(self) -> "RiskScore":
        for name, value in self.components.items():
            if not 0.0 <= value <= 100.0:
                raise ValueError(f"Risk component '{name}' out of range: {value}")
        return self


class RiskAssessment(BaseModel):
    """Aggregated verdict."""

    risk_score: RiskScore = Field(default_factory=RiskScore)
    weighted_level: RiskLevel = RiskLevel.SAFE  # Before floors were applied
    overrides: list[str] = Field(default_factory=list)

    @property
    def risk_level(self) -> RiskLevel:
        return self.risk_score.risk_level


class DetectorReport(BaseModel):
    """Result-or-warning container for one detector."""

    status: DetectorStatus = DetectorStatus.COMPLETED
    warnings: list[AnalysisWarning] = Field(default_factory=list)


# --- Configuration ---


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class AnalysisOptions(BaseModel):
    """Options for a single analysis run."""

    analyze_dependencies: bool = True
    check_vulnerabilities: bool = True
    scan_malicious_patterns: bool = True
    detect_typosquatting: bool = True
    evaluate_quality: bool = True
    max_dependency_depth: int = Field(default=5, ge=0)
    timeout_seconds: float = Field(default=300.0, gt=0)
    lookup_timeout_seconds: float = Field(default=10.0, gt=0)
    max_concurrent_lookups: int = Field(default=8, ge=1)

    @property
    def lookup_budget(self) -> float:
        """Per-lookup timeout derived from the overall budget."""
        return min(self.lookup_timeout_seconds, self.timeout_seconds / 4)

    @classmethod
    def from_env(cls, **overrides: Any) -> "AnalysisOptions":
        """Build options from PKGGUARD_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: dict[str, Any] = {}
        if "PKGGUARD_TIMEOUT" in os.environ:
            values["timeout_seconds"] = float(os.environ["PKGGUARD_TIMEOUT"])
        if "PKGGUARD_MAX_DEPTH" in os.environ:
            values["max_dependency_depth"] = int(os.environ["PKGGUARD_MAX_DEPTH"])
        if "PKGGUARD_LOOKUP_TIMEOUT" in os.environ:
            values["lookup_timeout_seconds"] = float(os.environ["PKGGUARD_LOOKUP_TIMEOUT"])
        values["check_vulnerabilities"] = _env_bool("PKGGUARD_CHECK_VULNERABILITIES", True)
        values["detect_typosquatting"] = _env_bool("PKGGUARD_DETECT_TYPOSQUATTING", True)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class RiskPolicy(BaseModel):
    """Tunable weights and thresholds for scoring."""

    weights: dict[str, float] = Field(
        default_factory=lambda: {
            "malicious_code": 0.35,
            "vulnerability": 0.35,
            "typosquatting": 0.20,
            "supply_chain": 0.10,
        }
    )
    # Upper bounds (exclusive) of each level; anything above is Critical
    level_thresholds: dict[RiskLevel, float] = Field(
        default_factory=lambda: {
            RiskLevel.SAFE: 20.0,
            RiskLevel.LOW: 40.0,
            RiskLevel.MEDIUM: 60.0,
            RiskLevel.HIGH: 80.0,
        }
    )
    typosquatting_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    critical_vulnerability_severity: float = Field(default=9.0, ge=0.0, le=10.0)
    typosquatting_floor_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    supply_chain_saturation: int = Field(default=200, ge=1)

    @model_validator(mode="after")
    def _check_weights(self) -> "RiskPolicy":
        if sum(self.weights.values()) <= 0:
            raise ValueError("Risk weights must sum to a positive number")
        if any(w < 0 for w in self.weights.values()):
            raise ValueError("Risk weights must not be negative")
        return self

    @classmethod
    def from_env(cls) -> "RiskPolicy":
        """Build a policy, honouring PKGGUARD_TYPOSQUAT_THRESHOLD."""
        values: dict[str, Any] = {}
        if "PKGGUARD_TYPOSQUAT_THRESHOLD" in os.environ:
            values["typosquatting_threshold"] = float(os.environ["PKGGUARD_TYPOSQUAT_THRESHOLD"])
        return cls(**values)


# --- Final Result ---


class AnalysisResult(BaseModel):
    """Complete analysis of a package."""

    package_info: PackageInfo
    risk_assessment: RiskAssessment
    dependency_analysis: DependencyAnalysis = Field(default_factory=DependencyAnalysis)
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)
    malicious_patterns: list[MaliciousPattern] = Field(default_factory=list)
    typosquatting_risk: TyposquattingRisk | None = None
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    detectors: dict[str, DetectorReport] = Field(default_factory=dict)
    analyzer_version: str = ""

    @property
    def overall_risk_level(self) -> RiskLevel:
        return self.risk_assessment.risk_score.risk_level

    @property
    def malicious_indicators(self) -> list[MaliciousPattern]:
        return self.malicious_patterns

    @property
    def supply_chain_risk_score(self) -> float:
        return self.risk_assessment.risk_score.components.get("supply_chain", 0.0)

    @property
    def warnings(self) -> list[AnalysisWarning]:
        """All recovered problems, across detectors."""
        return [w for report in self.detectors.values() for w in report.warnings]

    def to_json(self) -> dict[str, Any]:
        """JSON-compatible document for external consumers."""
        return self.model_dump(mode="json")

    def to_json_string(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_json(), indent=indent)
