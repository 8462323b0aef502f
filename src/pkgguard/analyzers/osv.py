"""Vulnerability feeds: bundled advisory snapshot and OSV.dev."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from importlib import resources
from pathlib import Path

import httpx
from cvss import CVSS2, CVSS3, CVSS4

from pkgguard.adapters.pypi import normalize_name
from pkgguard.errors import FeedError
from pkgguard.models.schemas import AdvisoryRecord, PackageType

logger = logging.getLogger(__name__)


# Representative scores for advisories that only carry a severity label
SEVERITY_LABEL_SCORES = {
    "CRITICAL": 9.0,
    "HIGH": 7.5,
    "MODERATE": 5.5,
    "MEDIUM": 5.5,
    "LOW": 2.5,
}


# Vector parsers, most preferred first
CVSS_PARSERS = [
    ("CVSS_V4", CVSS4),
    ("CVSS_V3", CVSS3),
    ("CVSS_V2", CVSS2),
]


class VulnerabilityFeed(ABC):
    """Source of advisories for a package name."""

    @abstractmethod
    async def query(self, package_type: PackageType, name: str) -> list[AdvisoryRecord]:
        """Return every advisory recorded against a package.

        Raises:
            FeedError: If the feed could not be consulted.
        """


def _lookup_key(package_type: PackageType, name: str) -> str:
    if package_type == PackageType.PYTHON:
        return normalize_name(name)
    return name.lower()


class SnapshotFeed(VulnerabilityFeed):
    """Read-only advisory snapshot loaded from JSON.

    The file maps ecosystem -> package name -> list of advisories::

        {"npm": {"lodash": [{"cve_id": "CVE-2019-10744", "severity": 9.1,
                             "affected": ["<4.17.12"], ...}]}}

    The bundled snapshot is used by default, which keeps analyses offline
    and reproducible.
    """

    def __init__(self, advisories: dict[PackageType, dict[str, list[AdvisoryRecord]]]) -> None:
        self._advisories = advisories

    @classmethod
    def default(cls) -> SnapshotFeed:
        """Load the snapshot bundled with the package."""
        text = resources.files("pkgguard").joinpath("data/advisories.json").read_text(encoding="utf-8")
        return cls.from_dict(json.loads(text))

    @classmethod
    def from_file(cls, path: Path) -> SnapshotFeed:
        """Load a snapshot from a JSON file in the bundled format.

        Raises:
            FeedError: If the file cannot be read or is malformed.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise FeedError(str(path), f"cannot load advisory snapshot: {e}") from e
        if not isinstance(data, dict):
            raise FeedError(str(path), "advisory snapshot must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> SnapshotFeed:
        advisories: dict[PackageType, dict[str, list[AdvisoryRecord]]] = {}
        for ecosystem, packages in data.items():
            if ecosystem.startswith("_"):
                continue
            package_type = PackageType(ecosystem)
            table = advisories.setdefault(package_type, {})
            for name, entries in packages.items():
                key = _lookup_key(package_type, name)
                table.setdefault(key, []).extend(
                    AdvisoryRecord(
                        package=name,
                        cve_id=entry.get("cve_id", ""),
                        advisory_id=entry.get("advisory_id", ""),
                        description=entry.get("description", ""),
                        severity_score=entry.get("severity"),
                        affected_ranges=entry.get("affected", []),
                        references=entry.get("references", []),
                    )
                    for entry in entries
                )
        return cls(advisories)

    async def query(self, package_type: PackageType, name: str) -> list[AdvisoryRecord]:
        return list(self._advisories.get(package_type, {}).get(_lookup_key(package_type, name), []))

    def __len__(self) -> int:
        return sum(len(entries) for table in self._advisories.values() for entries in table.values())


class OSVFeed(VulnerabilityFeed):
    """Fetches advisories from the OSV (Open Source Vulnerabilities) database.

    OSV is a distributed vulnerability database for open source:
    https://osv.dev/

    No authentication required.
    """

    BASE_URL = "https://api.osv.dev/v1"

    # Map our ecosystem names to OSV ecosystem names
    ECOSYSTEM_MAP = {
        PackageType.NPM: "npm",
        PackageType.PYTHON: "PyPI",
    }

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        """Initialize the feed.

        Args:
            client: Optional httpx client. If not provided, creates one per request.
        """
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=30.0)

    async def _query(self, name: str, body: dict) -> list[dict]:
        """Query OSV API.

        Args:
            name: Package name, for error reporting.
            body: Request body for OSV query.

        Returns:
            List of vulnerability records.

        Raises:
            FeedError: On HTTP or transport errors.
        """
        client = await self._get_client()
        url = f"{self.BASE_URL}/query"

        try:
            response = await client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
            return data.get("vulns", [])
        except httpx.HTTPStatusError as e:
            raise FeedError(name, f"OSV returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise FeedError(name, f"OSV request failed: {e}") from e
        except ValueError as e:
            raise FeedError(name, "OSV returned invalid JSON") from e
        finally:
            if self._client is None:
                await client.aclose()

    async def query(self, package_type: PackageType, name: str) -> list[AdvisoryRecord]:
        body = {
            "package": {
                "name": name,
                "ecosystem": self.ECOSYSTEM_MAP[package_type],
            }
        }
        vulns = await self._query(name, body)
        logger.debug(f"OSV returned {len(vulns)} records for {name}")
        return [self._to_advisory(package_type, name, vuln) for vuln in vulns]

    def _to_advisory(self, package_type: PackageType, name: str, vuln: dict) -> AdvisoryRecord:
        vuln_id = vuln.get("id", "")
        aliases = vuln.get("aliases", [])
        cve_id = vuln_id if vuln_id.startswith("CVE-") else next(
            (a for a in aliases if a.startswith("CVE-")), ""
        )
        summary = vuln.get("summary", "") or vuln.get("details", "")[:200]
        return AdvisoryRecord(
            package=name,
            cve_id=cve_id,
            advisory_id=vuln_id,
            description=summary[:500],  # Truncate long summaries
            severity_score=self._parse_severity(vuln),
            affected_ranges=self._parse_ranges(package_type, name, vuln),
            references=self._parse_references(vuln),
        )

    def _parse_severity(self, vuln: dict) -> float | None:
        """Extract a 0-10 severity score from OSV record.

        Args:
            vuln: OSV vulnerability record.

        Returns:
            Numeric score, or None when the record carries no usable severity.
        """
        severities = [s for s in vuln.get("severity") or [] if isinstance(s, dict)]
        for sev in severities:
            score = sev.get("score")
            if isinstance(score, (int, float)):
                return float(score)

        # Vector strings (e.g. "CVSS:3.1/AV:N/...") need their base score computed
        vectors = {sev.get("type"): sev.get("score") for sev in severities if isinstance(sev.get("score"), str)}
        for cvss_type, parser in CVSS_PARSERS:
            vector = vectors.get(cvss_type)
            if not vector:
                continue
            try:
                return float(parser(vector).base_score)
            except Exception as e:
                logger.debug(f"Failed to parse {cvss_type} vector {vector!r}: {e}")

        # Check database_specific for CVSS
        db_specific = vuln.get("database_specific", {})
        cvss_data = db_specific.get("cvss")
        if isinstance(cvss_data, dict) and isinstance(cvss_data.get("score"), (int, float)):
            return float(cvss_data["score"])
        if isinstance(cvss_data, (int, float)):
            return float(cvss_data)

        label = db_specific.get("severity")
        if not label:
            # Check ecosystem_specific for npm/pypi severity
            for eco_data in vuln.get("affected", []):
                label = eco_data.get("ecosystem_specific", {}).get("severity")
                if label:
                    break
        if isinstance(label, str):
            return SEVERITY_LABEL_SCORES.get(label.upper())
        return None

    def _parse_ranges(self, package_type: PackageType, name: str, vuln: dict) -> list[str]:
        """Convert OSV affected ranges into constraints in the ecosystem's syntax.

        Args:
            package_type: Ecosystem, which decides the constraint syntax.
            name: Package the query was for; other affected packages are ignored.
            vuln: OSV vulnerability record.

        Returns:
            Constraint strings such as ">=1.0.0 <1.2.3" (npm) or ">=1.0,<1.2.3" (Python).
        """
        joiner = " " if package_type == PackageType.NPM else ","
        key = _lookup_key(package_type, name)
        constraints = []
        for affected in vuln.get("affected", []):
            affected_name = affected.get("package", {}).get("name")
            if affected_name and _lookup_key(package_type, affected_name) != key:
                continue
            for rng in affected.get("ranges", []):
                if rng.get("type") not in ("SEMVER", "ECOSYSTEM"):
                    continue
                lower = None
                for event in rng.get("events", []):
                    if "introduced" in event:
                        lower = event["introduced"]
                    elif "fixed" in event or "last_affected" in event:
                        op, bound = ("<", event["fixed"]) if "fixed" in event else ("<=", event["last_affected"])
                        parts = [f">={lower}"] if lower not in (None, "0") else []
                        parts.append(f"{op}{bound}")
                        constraints.append(joiner.join(parts))
                        lower = None
                if lower is not None:
                    constraints.append("*" if lower == "0" else f">={lower}")
            for version in affected.get("versions", []):
                constraints.append(version if package_type == PackageType.NPM else f"=={version}")
        return constraints

    def _parse_references(self, vuln: dict) -> list[str]:
        """Extract reference URLs from OSV record.

        Args:
            vuln: OSV vulnerability record.

        Returns:
            List of reference URLs.
        """
        refs = []
        for ref in vuln.get("references", []):
            url = ref.get("url")
            if url:
                refs.append(url)
        return refs[:5]  # Limit to 5 references
