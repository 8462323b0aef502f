"""Data models and schemas."""

from pkgguard.models.schemas import (
    AdvisoryRecord,
    AnalysisOptions,
    AnalysisResult,
    AnalysisWarning,
    DependencyAnalysis,
    DependencyKind,
    DependencyRef,
    DetectorReport,
    DetectorStatus,
    MaliciousPattern,
    PackageInfo,
    PackageMetadata,
    PackageType,
    QualityMetrics,
    RiskAssessment,
    RiskLevel,
    RiskPolicy,
    RiskScore,
    Severity,
    TyposquattingRisk,
    Vulnerability,
)

__all__ = [
    "AdvisoryRecord",
    "AnalysisOptions",
    "AnalysisResult",
    "AnalysisWarning",
    "DependencyAnalysis",
    "DependencyKind",
    "DependencyRef",
    "DetectorReport",
    "DetectorStatus",
    "MaliciousPattern",
    "PackageInfo",
    "PackageMetadata",
    "PackageType",
    "QualityMetrics",
    "RiskAssessment",
    "RiskLevel",
    "RiskPolicy",
    "RiskScore",
    "Severity",
    "TyposquattingRisk",
    "Vulnerability",
]
