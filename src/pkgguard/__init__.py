"""pkgguard: supply-chain risk assessment for npm and Python packages."""

__version__ = "0.1.0"

from pkgguard.analyzers.pipeline import AnalysisPipeline, analyze, analyze_async  # noqa: E402
from pkgguard.models.schemas import AnalysisOptions, AnalysisResult, RiskLevel, RiskPolicy  # noqa: E402

__all__ = [
    "AnalysisOptions",
    "AnalysisPipeline",
    "AnalysisResult",
    "RiskLevel",
    "RiskPolicy",
    "__version__",
    "analyze",
    "analyze_async",
]
