"""Detectors and the pipeline that runs them."""

from pkgguard.analyzers.dependencies import DependencyAnalyzer
from pkgguard.analyzers.osv import OSVFeed, SnapshotFeed, VulnerabilityFeed
from pkgguard.analyzers.pipeline import AnalysisPipeline
from pkgguard.analyzers.quality import QualityEvaluator
from pkgguard.analyzers.scorer import RiskAggregator
from pkgguard.analyzers.supply_chain import MaliciousPatternScanner
from pkgguard.analyzers.typosquatting import TyposquattingCorpus, TyposquattingDetector
from pkgguard.analyzers.vulnerabilities import VulnerabilityMatcher

__all__ = [
    "AnalysisPipeline",
    "DependencyAnalyzer",
    "MaliciousPatternScanner",
    "OSVFeed",
    "QualityEvaluator",
    "RiskAggregator",
    "SnapshotFeed",
    "TyposquattingCorpus",
    "TyposquattingDetector",
    "VulnerabilityFeed",
    "VulnerabilityMatcher",
]
