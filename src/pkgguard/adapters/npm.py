"""NPM manifest adapter."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from pkgguard.adapters.base import (
    BaseAdapter,
    clean_repo_url,
    detect_repo_signals,
    read_source,
    str_or_none,
)
from pkgguard.errors import DependencyResolutionError, ManifestParseError
from pkgguard.models.schemas import (
    DependencyKind,
    DependencyRef,
    PackageInfo,
    PackageMetadata,
    PackageType,
)
from pkgguard.versions import InvalidConstraint, max_satisfying, parse_npm_range

logger = logging.getLogger(__name__)


# Lifecycle scripts npm runs automatically on install/uninstall
DANGEROUS_LIFECYCLE_SCRIPTS = {
    "preinstall",
    "install",
    "postinstall",
    "preuninstall",
    "postuninstall",
}

# Also run on install from a git checkout
LIFECYCLE_SCRIPTS = DANGEROUS_LIFECYCLE_SCRIPTS | {"prepare"}

# npm's placeholder test script, written by `npm init`
DEFAULT_TEST_SCRIPT = 'echo "Error: no test specified" && exit 1'

DEPENDENCY_SECTIONS = (
    ("dependencies", DependencyKind.RUNTIME),
    ("peerDependencies", DependencyKind.RUNTIME),
    ("optionalDependencies", DependencyKind.OPTIONAL),
    ("devDependencies", DependencyKind.DEV),
)

# Top-level fields and the JSON types a well-formed package.json gives them
FIELD_TYPES = {
    "description": (str,),
    "homepage": (str,),
    "keywords": (list,),
    "author": (str, dict),
    "license": (str, dict),
    "licenses": (list,),
    "repository": (str, dict),
}

JSON_TYPE_NAMES = {str: "a string", list: "an array", dict: "an object"}

# Files a lifecycle script hands to an interpreter, e.g. "node scripts/install.js"
SCRIPT_FILE_REFERENCE = re.compile(
    r"(?:\b(?:node|sh|bash|python3?)\s+(?:-{1,2}[\w-]+\s+)*|(?:^|[;&|]\s*)\./)"
    r"([\w./-]+\.(?:js|cjs|mjs|sh|py))\b"
)


class NpmAdapter(BaseAdapter):
    """Adapter for npm packages.

    Data sources:
    - Local manifest: package.json
    - Registry metadata (dependency resolution): https://registry.npmjs.org/{package}
    """

    REGISTRY_URL = "https://registry.npmjs.org"

    @property
    def package_type(self) -> PackageType:
        return PackageType.NPM

    @property
    def manifest_names(self) -> tuple[str, ...]:
        return ("package.json",)

    def load_package(self, path: Path) -> PackageInfo:
        """Read package.json into a PackageInfo.

        Args:
            path: Package directory.

        Returns:
            PackageInfo with metadata, dependencies, scripts and referenced sources.

        Raises:
            ManifestParseError: If package.json is not a well-formed manifest.
        """
        manifest = path / "package.json"
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ManifestParseError(manifest, f"invalid JSON ({e.msg} at line {e.lineno})") from e
        except UnicodeDecodeError as e:
            raise ManifestParseError(manifest, "not UTF-8 text") from e

        if not isinstance(data, dict):
            raise ManifestParseError(manifest, "top-level value must be an object")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            name = path.resolve().name
            logger.warning(f"package.json has no name, using directory name '{name}'")

        self._check_field_types(manifest, data)
        version = data.get("version", "")
        try:
            metadata = PackageMetadata(
                name=name.strip(),
                version=version if isinstance(version, str) else str(version),
                description=str_or_none(data.get("description")),
                author=self._extract_author(data.get("author")),
                license=self._extract_license(data),
                homepage=str_or_none(data.get("homepage")),
                repository=clean_repo_url(data.get("repository")),
                keywords=[k for k in data.get("keywords") or [] if isinstance(k, str)],
            )
        except ValidationError as e:
            raise ManifestParseError(manifest, f"invalid metadata ({e.errors()[0]['msg']})") from e

        scripts = data.get("scripts") or {}
        if not isinstance(scripts, dict):
            raise ManifestParseError(manifest, "'scripts' must be an object")
        scripts = {k: v for k, v in scripts.items() if isinstance(v, str)}

        attributes = {
            "main": data.get("main"),
            "bin": data.get("bin"),
            "engines": data.get("engines"),
            "private": bool(data.get("private", False)),
            "gypfile": bool(data.get("gypfile", False)),
            "bugs": data.get("bugs"),
            "has_real_test_script": self._has_real_test_script(scripts),
            **detect_repo_signals(path),
        }

        return PackageInfo(
            package_type=PackageType.NPM,
            metadata=metadata,
            dependencies=self._extract_dependencies(manifest, data),
            scripts=scripts,
            source_files=self._collect_script_sources(path, scripts),
            attributes=attributes,
            manifest_path=str(manifest),
        )

    def _extract_dependencies(self, manifest: Path, data: dict) -> list[DependencyRef]:
        """Collect declared dependencies, first declaration of a name wins."""
        seen: set[str] = set()
        dependencies = []
        for section, kind in DEPENDENCY_SECTIONS:
            declared = data.get(section) or {}
            if not isinstance(declared, dict):
                raise ManifestParseError(manifest, f"'{section}' must be an object")
            for dep_name, constraint in declared.items():
                if dep_name in seen or not dep_name:
                    continue
                seen.add(dep_name)
                dependencies.append(
                    DependencyRef(
                        name=dep_name,
                        version_constraint=constraint if isinstance(constraint, str) else "*",
                        kind=kind,
                    )
                )
        return dependencies

    def _collect_script_sources(self, root: Path, scripts: dict[str, str]) -> dict[str, str]:
        """Read files that lifecycle scripts execute."""
        sources = {}
        for script_name in sorted(LIFECYCLE_SCRIPTS & scripts.keys()):
            for match in SCRIPT_FILE_REFERENCE.finditer(scripts[script_name]):
                relative = match.group(1)
                if relative in sources:
                    continue
                content = read_source(root, relative)
                if content is not None:
                    sources[relative] = content
        return sources

    def _has_real_test_script(self, scripts: dict[str, str]) -> bool:
        test = scripts.get("test", "").strip()
        return bool(test) and test != DEFAULT_TEST_SCRIPT

    def _check_field_types(self, manifest: Path, data: dict) -> None:
        """Reject metadata fields whose JSON type npm would not accept."""
        for field, types in FIELD_TYPES.items():
            value = data.get(field)
            if value is not None and not isinstance(value, types):
                expected = " or ".join(JSON_TYPE_NAMES[t] for t in types)
                raise ManifestParseError(manifest, f"'{field}' must be {expected}")
        for field, key in (("author", "name"), ("author", "email"), ("repository", "url")):
            value = data.get(field)
            if isinstance(value, dict) and value.get(key) is not None and not isinstance(value[key], str):
                raise ManifestParseError(manifest, f"'{field}.{key}' must be a string")

    def _extract_author(self, author: dict | str | None) -> str | None:
        """Extract author from npm "author" field (string or person object)."""
        if isinstance(author, str):
            return author.strip() or None
        if isinstance(author, dict):
            name = author.get("name")
            email = author.get("email")
            if name and email:
                return f"{name} <{email}>"
            return name or email
        return None

    def _extract_license(self, data: dict) -> str | None:
        """Extract license from npm package data."""
        license_info = data.get("license") or data.get("licenses")

        if isinstance(license_info, str):
            return license_info
        elif isinstance(license_info, dict):
            return license_info.get("type") or license_info.get("name")
        elif isinstance(license_info, list) and license_info:
            first = license_info[0]
            if isinstance(first, str):
                return first
            elif isinstance(first, dict):
                return first.get("type") or first.get("name")

        return None

    async def resolve(self, name: str, constraint: str) -> list[DependencyRef]:
        """Fetch the declared dependencies of an npm dependency from the registry.

        Picks the highest version satisfying the constraint, falling back to
        the "latest" dist-tag.

        Args:
            name: Package name (supports scoped packages like @org/pkg).
            constraint: Declared semver range.

        Returns:
            Runtime and optional dependencies of the selected version.

        Raises:
            DependencyResolutionError: If the registry lookup fails.
        """
        # URL-encode scoped package names
        encoded_name = name.replace("/", "%2F")
        data = await self._fetch_json(name, f"{self.REGISTRY_URL}/{encoded_name}")

        versions = data.get("versions", {})
        selected = None
        try:
            selected = max_satisfying(parse_npm_range(constraint), versions.keys())
        except InvalidConstraint:
            logger.debug(f"Unparseable constraint for {name}: {constraint!r}")
        if selected is None:
            selected = data.get("dist-tags", {}).get("latest")
        if selected is None or selected not in versions:
            raise DependencyResolutionError(name, f"no version matching {constraint!r}")

        version_data = versions[selected]
        refs = []
        for section, kind in (
            ("dependencies", DependencyKind.RUNTIME),
            ("optionalDependencies", DependencyKind.OPTIONAL),
        ):
            for dep_name, dep_constraint in (version_data.get(section) or {}).items():
                refs.append(
                    DependencyRef(
                        name=dep_name,
                        version_constraint=dep_constraint if isinstance(dep_constraint, str) else "*",
                        kind=kind,
                    )
                )
        return refs
