"""Exceptions raised by the analysis engine."""

from pathlib import Path


class PkgGuardError(Exception):
    """Base class for all pkgguard errors."""


class AnalysisError(PkgGuardError):
    """Fatal analysis error. No result is produced."""


class PackagePathError(AnalysisError):
    """Raised when the target path does not exist."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Package path does not exist: {path}")


class ManifestNotFoundError(AnalysisError):
    """Raised when no recognizable manifest is found at the target path."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"No package manifest found in {path}")


class ManifestParseError(AnalysisError):
    """Raised when a manifest is not well-formed for its ecosystem."""

    def __init__(self, manifest: Path, reason: str) -> None:
        self.manifest = manifest
        self.reason = reason
        super().__init__(f"Could not parse {manifest.name}: {reason}")


class AnalysisTimeoutError(PkgGuardError):
    """Raised when an analysis exceeds its wall-clock budget."""

    def __init__(self, package: str, timeout_seconds: float) -> None:
        self.package = package
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Analysis of '{package}' did not finish within {timeout_seconds:g}s"
        )


class DependencyResolutionError(PkgGuardError):
    """Raised when the metadata lookup for a dependency fails.

    Recovered by the dependency analyzer; never aborts an analysis.
    """

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Could not resolve dependencies of '{name}': {reason}")


class FeedError(PkgGuardError):
    """Raised when a vulnerability feed lookup fails."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Vulnerability feed lookup failed for '{name}': {reason}")


class ScanCancelledError(PkgGuardError):
    """Raised inside a worker thread when its analysis has been cancelled."""

    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__(f"Scan cancelled at {location}")
