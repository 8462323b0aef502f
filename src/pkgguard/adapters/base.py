"""Abstract base class for manifest adapters."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from pkgguard.errors import DependencyResolutionError
from pkgguard.models.schemas import DependencyRef, PackageInfo, PackageType

logger = logging.getLogger(__name__)

# Files that indicate a CI/CD configuration in a package directory
CI_CONFIG_PATHS = (
    ".github/workflows",
    ".gitlab-ci.yml",
    ".travis.yml",
    ".circleci",
    "azure-pipelines.yml",
    "Jenkinsfile",
    ".drone.yml",
    "bitbucket-pipelines.yml",
)

TEST_DIR_NAMES = ("test", "tests", "__tests__", "spec")

# Largest source file read into a PackageInfo for scanning
MAX_SOURCE_BYTES = 512 * 1024


class BaseAdapter(ABC):
    """Base class for ecosystem adapters.

    Each adapter turns an on-disk manifest into a normalized PackageInfo,
    and can optionally resolve a dependency's own declared dependencies
    from the ecosystem's registry.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        """Initialize the adapter.

        Args:
            client: Optional httpx client used for registry lookups.
        """
        self._client = client

    @property
    @abstractmethod
    def package_type(self) -> PackageType:
        """Return the ecosystem this adapter handles."""
        ...

    @property
    @abstractmethod
    def manifest_names(self) -> tuple[str, ...]:
        """Manifest file names this adapter recognizes, in priority order."""
        ...

    def can_analyze(self, path: Path) -> bool:
        """Check if a recognized manifest exists at the given path."""
        if path.is_file():
            return path.name in self.manifest_names or self._matches_extra(path)
        return any((path / name).is_file() for name in self.manifest_names)

    def _matches_extra(self, path: Path) -> bool:
        return False

    @abstractmethod
    def load_package(self, path: Path) -> PackageInfo:
        """Read the manifest(s) under path into a PackageInfo.

        Args:
            path: Package directory.

        Returns:
            Normalized PackageInfo.

        Raises:
            ManifestParseError: If a manifest is malformed.
        """
        ...

    @abstractmethod
    async def resolve(self, name: str, constraint: str) -> list[DependencyRef]:
        """Return the declared runtime dependencies of a dependency.

        Args:
            name: Dependency name.
            constraint: Version constraint it was declared with.

        Returns:
            DependencyRefs with depth/parent left for the caller to set.

        Raises:
            DependencyResolutionError: If the lookup fails.
        """
        ...

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=30.0)

    async def _fetch_json(self, name: str, url: str) -> dict:
        """Fetch JSON from a registry URL, mapping failures to DependencyResolutionError."""
        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise DependencyResolutionError(name, f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise DependencyResolutionError(name, str(e) or type(e).__name__) from e
        except ValueError as e:
            # JSON decode error
            raise DependencyResolutionError(name, f"invalid JSON: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()


def detect_repo_signals(root: Path) -> dict[str, bool]:
    """Probe a package directory for readme, tests and CI configuration."""
    has_readme = any(
        p.is_file() and p.name.lower().startswith("readme") for p in root.iterdir()
    )
    return {
        "has_readme": has_readme,
        "has_tests_dir": any((root / name).is_dir() for name in TEST_DIR_NAMES),
        "has_ci_config": any((root / rel).exists() for rel in CI_CONFIG_PATHS),
        "has_changelog": any(
            p.is_file() and p.name.lower().startswith(("changelog", "history", "changes"))
            for p in root.iterdir()
        ),
    }


def read_source(root: Path, relative: str) -> str | None:
    """Read a bundled source file for scanning.

    Only files inside ``root`` and under MAX_SOURCE_BYTES are read.
    """
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        logger.warning(f"Ignoring source outside the package directory: {relative}")
        return None
    if not candidate.is_file():
        return None
    if candidate.stat().st_size > MAX_SOURCE_BYTES:
        logger.warning(f"Source file too large to scan, skipped: {relative}")
        return None
    return candidate.read_text(encoding="utf-8", errors="replace")


def clean_repo_url(repository: dict | str | None) -> str | None:
    """Extract a repository URL from a manifest field.

    Handles various formats:
    - {"type": "git", "url": "git+https://github.com/owner/repo.git"}
    - "github:owner/repo"
    - "https://github.com/owner/repo"
    """
    if not repository:
        return None

    if isinstance(repository, str):
        url = repository
    elif isinstance(repository, dict):
        url = repository.get("url", "")
    else:
        return None

    if not url or not isinstance(url, str):
        return None

    url = url.replace("git+", "").replace("git://", "https://")
    url = re.sub(r"\.git$", "", url)

    # GitHub shorthand
    if url.startswith("github:"):
        url = f"https://github.com/{url[7:]}"

    return url or None


def str_or_none(value: object) -> str | None:
    """Stripped string value, or None for blanks and non-strings."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
