"""End-to-end risk analysis pipeline for packages."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from pkgguard import __version__
from pkgguard.adapters.base import BaseAdapter
from pkgguard.adapters.npm import NpmAdapter
from pkgguard.adapters.pypi import PyPiAdapter
from pkgguard.analyzers.dependencies import DependencyAnalyzer
from pkgguard.analyzers.osv import OSVFeed, SnapshotFeed, VulnerabilityFeed
from pkgguard.analyzers.quality import QualityEvaluator
from pkgguard.analyzers.scorer import RiskAggregator
from pkgguard.analyzers.supply_chain import MaliciousPatternScanner
from pkgguard.analyzers.typosquatting import TyposquattingCorpus, TyposquattingDetector
from pkgguard.analyzers.vulnerabilities import VulnerabilityMatcher
from pkgguard.errors import AnalysisTimeoutError, ManifestNotFoundError, PackagePathError
from pkgguard.models.schemas import (
    AnalysisOptions,
    AnalysisResult,
    AnalysisWarning,
    DependencyAnalysis,
    DetectorReport,
    DetectorStatus,
    PackageInfo,
    QualityMetrics,
    RiskPolicy,
)

logger = logging.getLogger(__name__)

# Worker threads for the CPU-bound detectors of one analysis
DETECTOR_THREADS = 3


class AnalysisPipeline:
    """Orchestrates the full risk analysis of one package.

    Pipeline stages:
    1. Load the manifest through the matching ecosystem adapter
    2. Run the detector branches concurrently:
       dependencies -> vulnerabilities, malicious patterns, typosquatting, quality
    3. Aggregate component scores into a risk level

    Each branch is isolated: a detector that raises is reported as failed
    and contributes its default output. The whole run is bounded by
    ``options.timeout_seconds``; on expiry the pattern scan is told to stop
    and the worker threads are released without waiting for them.
    """

    def __init__(
        self,
        feed: VulnerabilityFeed | None = None,
        corpus: TyposquattingCorpus | None = None,
        policy: RiskPolicy | None = None,
        online: bool = False,
        adapters: list[BaseAdapter] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            feed: Advisory source. Defaults to OSV when online, else the bundled snapshot.
            corpus: Popular package names. Defaults to the bundled corpus.
            policy: Scoring weights and thresholds.
            online: Resolve transitive dependencies and advisories over the network.
            adapters: Ecosystem adapters, tried in order. Defaults to npm then Python.
        """
        self.online = online
        self.policy = policy or RiskPolicy()
        self.corpus = corpus or TyposquattingCorpus.default()
        self._feed = feed
        self._adapters = adapters
        self._http_client: httpx.AsyncClient | None = None
        self.scanner = MaliciousPatternScanner()
        self.quality = QualityEvaluator()
        self.aggregator = RiskAggregator(self.policy)

    async def __aenter__(self) -> AnalysisPipeline:
        """Set up shared HTTP client."""
        if self.online:
            self._http_client = httpx.AsyncClient(timeout=60.0)
        return self

    async def __aexit__(self, *args) -> None:
        """Clean up HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def adapters(self) -> list[BaseAdapter]:
        if self._adapters is None:
            self._adapters = [NpmAdapter(self._http_client), PyPiAdapter(self._http_client)]
        return self._adapters

    @property
    def feed(self) -> VulnerabilityFeed:
        if self._feed is None:
            self._feed = OSVFeed(self._http_client) if self.online else SnapshotFeed.default()
        return self._feed

    def select_adapter(self, path: Path) -> BaseAdapter:
        """Pick the adapter for a package directory or manifest file.

        Raises:
            PackagePathError: If the path does not exist.
            ManifestNotFoundError: If no adapter recognizes the path.
        """
        if not path.exists():
            raise PackagePathError(path)
        for adapter in self.adapters:
            if adapter.can_analyze(path):
                return adapter
        raise ManifestNotFoundError(path)

    def load(self, target: str | Path) -> tuple[PackageInfo, BaseAdapter]:
        """Load a package from a directory or manifest file."""
        path = Path(target)
        adapter = self.select_adapter(path)
        root = path if path.is_dir() else path.parent
        package = adapter.load_package(root)
        logger.info(f"Loaded {package.package_type.value} package {package.name} {package.version}".rstrip())
        return package, adapter

    async def analyze(
        self,
        target: str | Path | PackageInfo,
        options: AnalysisOptions | None = None,
    ) -> AnalysisResult:
        """Run the full analysis on a single package.

        Args:
            target: Package directory, manifest file, or an already loaded PackageInfo.
            options: Detector switches, depth and time budget.

        Returns:
            Complete AnalysisResult.

        Raises:
            PackagePathError: If the path does not exist.
            ManifestNotFoundError: If no manifest is recognized.
            ManifestParseError: If the manifest is malformed.
            AnalysisTimeoutError: If the run exceeds ``options.timeout_seconds``.
        """
        options = options or AnalysisOptions()

        if isinstance(target, PackageInfo):
            package = target
            resolver = next((a for a in self.adapters if a.package_type == package.package_type), None)
        else:
            package, resolver = self.load(target)

        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=DETECTOR_THREADS, thread_name_prefix="pkgguard-detector")
        try:
            return await asyncio.wait_for(
                self._run(package, options, resolver if self.online else None, executor, cancelled),
                timeout=options.timeout_seconds,
            )
        except asyncio.TimeoutError:
            cancelled.set()
            logger.error(f"Analysis of {package.name} timed out after {options.timeout_seconds:g}s")
            raise AnalysisTimeoutError(package.name, options.timeout_seconds) from None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    async def _run(
        self,
        package: PackageInfo,
        options: AnalysisOptions,
        resolver: BaseAdapter | None,
        executor: ThreadPoolExecutor,
        cancelled: threading.Event,
    ) -> AnalysisResult:
        reports: dict[str, DetectorReport] = {}
        loop = asyncio.get_running_loop()

        def in_thread(func, *args, **kwargs):
            return _no_warnings(loop.run_in_executor(executor, functools.partial(func, *args, **kwargs)))

        async def dependency_branch():
            dependency_analysis = await self._run_detector(
                "dependencies",
                options.analyze_dependencies,
                lambda: self._analyze_dependencies(package, options, resolver),
                DependencyAnalysis(),
                reports,
            )
            # Vulnerabilities are matched against the walked dependencies only
            vulnerabilities = await self._run_detector(
                "vulnerabilities",
                options.analyze_dependencies and options.check_vulnerabilities,
                lambda: self._match_vulnerabilities(package, dependency_analysis.dependencies, options),
                [],
                reports,
            )
            return dependency_analysis, vulnerabilities

        (dependency_analysis, vulnerabilities), malicious_patterns, typosquatting, quality = await asyncio.gather(
            dependency_branch(),
            self._run_detector(
                "malicious_patterns",
                options.scan_malicious_patterns,
                lambda: in_thread(self.scanner.scan, package, cancelled=cancelled),
                [],
                reports,
            ),
            self._run_detector(
                "typosquatting",
                options.detect_typosquatting,
                lambda: in_thread(self._typosquatting_detector().check, package.package_type, package.name),
                None,
                reports,
            ),
            self._run_detector(
                "quality",
                options.evaluate_quality,
                lambda: in_thread(self.quality.evaluate, package),
                QualityMetrics(),
                reports,
            ),
        )

        components = {
            "malicious_code": MaliciousPatternScanner.score(malicious_patterns),
            "vulnerability": VulnerabilityMatcher.score(vulnerabilities),
            "typosquatting": TyposquattingDetector.score(typosquatting),
            "supply_chain": DependencyAnalyzer.score(dependency_analysis, self.policy.supply_chain_saturation),
        }
        assessment = self.aggregator.assess(components, vulnerabilities, malicious_patterns, typosquatting)
        logger.info(
            f"{package.name}: {assessment.risk_level.value} "
            f"(overall {assessment.risk_score.overall:.1f}, weighted {assessment.weighted_level.value})"
        )

        return AnalysisResult(
            package_info=package,
            risk_assessment=assessment,
            dependency_analysis=dependency_analysis,
            vulnerabilities=vulnerabilities,
            malicious_patterns=malicious_patterns,
            typosquatting_risk=typosquatting,
            quality_metrics=quality,
            detectors={name: reports[name] for name in sorted(reports)},
            analyzer_version=__version__,
        )

    async def _run_detector(
        self,
        name: str,
        enabled: bool,
        run: Callable[[], Awaitable[tuple[Any, list[AnalysisWarning]]]],
        default: Any,
        reports: dict[str, DetectorReport],
    ) -> Any:
        """Run one detector, recording its status. Never raises except on cancellation."""
        if not enabled:
            reports[name] = DetectorReport(status=DetectorStatus.SKIPPED)
            return default
        try:
            value, warnings = await run()
        except Exception as e:
            logger.error(f"Detector {name} failed: {e}", exc_info=True)
            reports[name] = DetectorReport(
                status=DetectorStatus.FAILED,
                warnings=[AnalysisWarning(source=name, message=f"Detector failed: {type(e).__name__}: {e}")],
            )
            return default
        status = DetectorStatus.DEGRADED if warnings else DetectorStatus.COMPLETED
        reports[name] = DetectorReport(status=status, warnings=warnings)
        return value

    async def _analyze_dependencies(
        self,
        package: PackageInfo,
        options: AnalysisOptions,
        resolver: BaseAdapter | None,
    ) -> tuple[DependencyAnalysis, list[AnalysisWarning]]:
        analyzer = DependencyAnalyzer(
            resolver=resolver,
            lookup_timeout=options.lookup_budget,
            max_concurrent_lookups=options.max_concurrent_lookups,
        )
        analysis = await analyzer.analyze(package.dependencies, options.max_dependency_depth)
        return analysis, list(analysis.warnings)

    async def _match_vulnerabilities(self, package: PackageInfo, dependencies, options: AnalysisOptions):
        matcher = VulnerabilityMatcher(
            self.feed,
            lookup_timeout=options.lookup_budget,
            max_concurrent_lookups=options.max_concurrent_lookups,
        )
        return await matcher.match(package.package_type, dependencies)

    def _typosquatting_detector(self) -> TyposquattingDetector:
        return TyposquattingDetector(self.corpus, threshold=self.policy.typosquatting_threshold)


async def _no_warnings(awaitable: Awaitable[Any]) -> tuple[Any, list[AnalysisWarning]]:
    return await awaitable, []


async def analyze_async(
    target: str | Path | PackageInfo,
    options: AnalysisOptions | None = None,
    **pipeline_kwargs: Any,
) -> AnalysisResult:
    """Analyze a package with a one-off pipeline."""
    async with AnalysisPipeline(**pipeline_kwargs) as pipeline:
        return await pipeline.analyze(target, options)


def analyze(
    target: str | Path | PackageInfo,
    options: AnalysisOptions | None = None,
    **pipeline_kwargs: Any,
) -> AnalysisResult:
    """Synchronous wrapper around :func:`analyze_async`."""
    return asyncio.run(analyze_async(target, options, **pipeline_kwargs))
