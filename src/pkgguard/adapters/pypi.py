"""Python package manifest adapter."""

from __future__ import annotations

import ast
import configparser
import logging
import re
import tomllib
from pathlib import Path
from typing import Any

from packaging.requirements import InvalidRequirement, Requirement

from pkgguard.adapters.base import BaseAdapter, detect_repo_signals, str_or_none
from pkgguard.errors import DependencyResolutionError, ManifestParseError
from pkgguard.models.schemas import (
    DependencyKind,
    DependencyRef,
    PackageInfo,
    PackageMetadata,
    PackageType,
)
from pkgguard.versions import InvalidConstraint, max_satisfying, parse_pep440

logger = logging.getLogger(__name__)

# Extras whose dependencies are development-only
DEV_EXTRAS = {"dev", "develop", "development", "test", "tests", "testing", "lint", "docs", "doc"}
TEST_EXTRAS = {"test", "tests", "testing"}
TEST_TOOLS = {"pytest", "nose", "nose2", "tox", "nox", "coverage", "pytest-cov", "hypothesis"}

REQUIREMENTS_FILE = re.compile(r"^(?:(dev|test)s?[-_])?requirements(?:[-_]([\w-]+))?\.txt$")


def normalize_name(name: str) -> str:
    """Normalize a Python package name.

    PyPI package names are case-insensitive and treat underscores,
    hyphens, and periods as equivalent.
    """
    return re.sub(r"[-_.]+", "-", name).lower()


class PyPiAdapter(BaseAdapter):
    """Adapter for Python distributions.

    Data sources:
    - Local manifests: setup.py (read statically, never executed),
      pyproject.toml, setup.cfg, requirements*.txt
    - Registry metadata (dependency resolution): https://pypi.org/pypi/{package}/json
    """

    PYPI_URL = "https://pypi.org/pypi"

    @property
    def package_type(self) -> PackageType:
        return PackageType.PYTHON

    @property
    def manifest_names(self) -> tuple[str, ...]:
        return ("setup.py", "pyproject.toml", "setup.cfg", "requirements.txt")

    def can_analyze(self, path: Path) -> bool:
        if super().can_analyze(path):
            return True
        return path.is_dir() and bool(self._requirement_files(path))

    def _matches_extra(self, path: Path) -> bool:
        return bool(REQUIREMENTS_FILE.match(path.name))

    def load_package(self, path: Path) -> PackageInfo:
        """Merge every Python manifest under path into one PackageInfo.

        Precedence for metadata is setup.py, then pyproject.toml, then
        setup.cfg. Dependencies are merged in the same order, followed by
        requirements files; the first declaration of a name wins.

        Raises:
            ManifestParseError: If any manifest present is malformed.
        """
        fields: dict[str, Any] = {}
        requirements: list[tuple[str, DependencyKind]] = []
        source_files: dict[str, str] = {}
        attributes: dict[str, Any] = {}
        manifest_path = None

        setup_py = path / "setup.py"
        if setup_py.is_file():
            source = setup_py.read_text(encoding="utf-8", errors="replace")
            source_files["setup.py"] = source
            setup_fields, dynamic = self._parse_setup_py(setup_py, source)
            attributes["dynamic_setup_fields"] = dynamic
            attributes["custom_install_commands"] = "cmdclass" in setup_fields or "cmdclass" in dynamic
            self._merge_setup_fields(fields, requirements, attributes, setup_fields)
            manifest_path = manifest_path or setup_py

        pyproject = path / "pyproject.toml"
        if pyproject.is_file():
            self._parse_pyproject(pyproject, fields, requirements, attributes)
            manifest_path = manifest_path or pyproject

        setup_cfg = path / "setup.cfg"
        if setup_cfg.is_file():
            self._parse_setup_cfg(setup_cfg, fields, requirements, attributes)
            manifest_path = manifest_path or setup_cfg

        for req_file in self._requirement_files(path):
            match = REQUIREMENTS_FILE.match(req_file.name)
            qualifier = (match.group(1) or match.group(2) or "").lower()
            kind = DependencyKind.DEV if qualifier.startswith(("dev", "test", "lint", "doc")) else DependencyKind.RUNTIME
            requirements.extend((req, kind) for req in self._parse_requirements_file(req_file))
            manifest_path = manifest_path or req_file

        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            name = path.resolve().name
            logger.warning(f"No package name declared, using directory name '{name}'")

        metadata = PackageMetadata(
            name=name.strip(),
            version=str(fields.get("version") or ""),
            description=str_or_none(fields.get("description")),
            author=str_or_none(fields.get("author")),
            license=str_or_none(fields.get("license")),
            homepage=str_or_none(fields.get("homepage")),
            repository=str_or_none(fields.get("repository")),
            keywords=self._parse_keywords(fields.get("keywords")),
        )
        attributes.update(detect_repo_signals(path))

        return PackageInfo(
            package_type=PackageType.PYTHON,
            metadata=metadata,
            dependencies=self._to_refs(requirements),
            source_files=source_files,
            attributes=attributes,
            manifest_path=str(manifest_path) if manifest_path else None,
        )

    # --- setup.py ---

    def _parse_setup_py(self, manifest: Path, source: str) -> tuple[dict[str, Any], list[str]]:
        """Extract literal keyword arguments of the setup() call.

        Returns:
            Tuple of (literal fields, names of non-literal fields).
        """
        try:
            tree = ast.parse(source, filename=str(manifest))
        except SyntaxError as e:
            raise ManifestParseError(manifest, f"invalid Python syntax at line {e.lineno}") from e

        fields: dict[str, Any] = {}
        dynamic: list[str] = []
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call) or not _is_setup_call(node.func):
                continue
            for keyword in node.keywords:
                if keyword.arg is None:
                    continue
                try:
                    fields[keyword.arg] = ast.literal_eval(keyword.value)
                except (ValueError, TypeError, SyntaxError, RecursionError):
                    dynamic.append(keyword.arg)
            break
        return fields, dynamic

    def _merge_setup_fields(
        self,
        fields: dict[str, Any],
        requirements: list[tuple[str, DependencyKind]],
        attributes: dict[str, Any],
        setup_fields: dict[str, Any],
    ) -> None:
        project_urls = setup_fields.get("project_urls") or {}
        _set_default(fields, "name", setup_fields.get("name"))
        _set_default(fields, "version", setup_fields.get("version"))
        _set_default(fields, "description", setup_fields.get("description"))
        _set_default(fields, "author", setup_fields.get("author") or setup_fields.get("maintainer"))
        _set_default(fields, "license", setup_fields.get("license"))
        _set_default(fields, "homepage", setup_fields.get("url"))
        _set_default(fields, "repository", _repo_from_urls(project_urls) if isinstance(project_urls, dict) else None)
        _set_default(fields, "keywords", setup_fields.get("keywords"))

        install_requires = _as_list(setup_fields.get("install_requires"))
        attributes["install_requires"] = install_requires
        requirements.extend((req, DependencyKind.RUNTIME) for req in install_requires)
        tests_require = _as_list(setup_fields.get("tests_require"))
        requirements.extend((req, DependencyKind.DEV) for req in tests_require)
        extras = setup_fields.get("extras_require") or {}
        if isinstance(extras, dict):
            self._add_extras(requirements, attributes, extras)
        if tests_require:
            attributes["declares_test_requirements"] = True
        if "entry_points" in setup_fields:
            attributes["entry_points"] = setup_fields["entry_points"]

    def _add_extras(
        self,
        requirements: list[tuple[str, DependencyKind]],
        attributes: dict[str, Any],
        extras: dict[str, Any],
    ) -> None:
        for extra, reqs in extras.items():
            kind = DependencyKind.DEV if str(extra).lower() in DEV_EXTRAS else DependencyKind.OPTIONAL
            requirements.extend((req, kind) for req in _as_list(reqs))
            if str(extra).lower() in TEST_EXTRAS:
                attributes["declares_test_requirements"] = True

    # --- pyproject.toml ---

    def _parse_pyproject(
        self,
        manifest: Path,
        fields: dict[str, Any],
        requirements: list[tuple[str, DependencyKind]],
        attributes: dict[str, Any],
    ) -> None:
        try:
            data = tomllib.loads(manifest.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ManifestParseError(manifest, f"invalid TOML ({e})") from e

        attributes["build_requires"] = data.get("build-system", {}).get("requires", [])

        project = data.get("project")
        if isinstance(project, dict):
            authors = project.get("authors") or []
            author = None
            if authors and isinstance(authors[0], dict):
                author = authors[0].get("name") or authors[0].get("email")
            license_info = project.get("license")
            if isinstance(license_info, dict):
                license_info = license_info.get("text") or license_info.get("file")
            urls = project.get("urls") or {}

            _set_default(fields, "name", project.get("name"))
            _set_default(fields, "version", project.get("version"))
            _set_default(fields, "description", project.get("description"))
            _set_default(fields, "author", author)
            _set_default(fields, "license", license_info)
            _set_default(fields, "homepage", urls.get("Homepage") or urls.get("homepage"))
            _set_default(fields, "repository", _repo_from_urls(urls))
            _set_default(fields, "keywords", project.get("keywords"))

            requirements.extend((req, DependencyKind.RUNTIME) for req in _as_list(project.get("dependencies")))
            self._add_extras(requirements, attributes, project.get("optional-dependencies") or {})

        poetry = data.get("tool", {}).get("poetry")
        if isinstance(poetry, dict):
            authors = poetry.get("authors") or []
            _set_default(fields, "name", poetry.get("name"))
            _set_default(fields, "version", poetry.get("version"))
            _set_default(fields, "description", poetry.get("description"))
            _set_default(fields, "author", authors[0] if authors else None)
            _set_default(fields, "license", poetry.get("license"))
            _set_default(fields, "homepage", poetry.get("homepage"))
            _set_default(fields, "repository", poetry.get("repository"))
            _set_default(fields, "keywords", poetry.get("keywords"))

            requirements.extend(
                (req, DependencyKind.RUNTIME) for req in _poetry_requirements(poetry.get("dependencies"))
            )
            requirements.extend(
                (req, DependencyKind.DEV) for req in _poetry_requirements(poetry.get("dev-dependencies"))
            )
            for group in (poetry.get("group") or {}).values():
                if isinstance(group, dict):
                    requirements.extend(
                        (req, DependencyKind.DEV) for req in _poetry_requirements(group.get("dependencies"))
                    )

        pytest_config = data.get("tool", {}).get("pytest")
        if pytest_config:
            attributes["declares_test_requirements"] = True

    # --- setup.cfg ---

    def _parse_setup_cfg(
        self,
        manifest: Path,
        fields: dict[str, Any],
        requirements: list[tuple[str, DependencyKind]],
        attributes: dict[str, Any],
    ) -> None:
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(manifest.read_text(encoding="utf-8"), source=str(manifest))
        except configparser.Error as e:
            raise ManifestParseError(manifest, f"invalid setup.cfg ({e.message})") from e

        if parser.has_section("metadata"):
            meta = parser["metadata"]
            _set_default(fields, "name", meta.get("name"))
            _set_default(fields, "version", meta.get("version"))
            _set_default(fields, "description", meta.get("description"))
            _set_default(fields, "author", meta.get("author"))
            _set_default(fields, "license", meta.get("license"))
            _set_default(fields, "homepage", meta.get("url"))
            _set_default(fields, "keywords", meta.get("keywords"))

        if parser.has_section("options"):
            install_requires = _cfg_list(parser["options"].get("install_requires", ""))
            requirements.extend((req, DependencyKind.RUNTIME) for req in install_requires)
            tests_require = _cfg_list(parser["options"].get("tests_require", ""))
            requirements.extend((req, DependencyKind.DEV) for req in tests_require)
            if tests_require:
                attributes["declares_test_requirements"] = True

        if parser.has_section("options.extras_require"):
            extras = {k: _cfg_list(v) for k, v in parser["options.extras_require"].items()}
            self._add_extras(requirements, attributes, extras)

        if parser.has_section("tool:pytest"):
            attributes["declares_test_requirements"] = True

    # --- requirements files ---

    def _requirement_files(self, path: Path) -> list[Path]:
        if not path.is_dir():
            return []
        return sorted(p for p in path.iterdir() if p.is_file() and REQUIREMENTS_FILE.match(p.name))

    def _parse_requirements_file(self, manifest: Path) -> list[str]:
        """Parse a pip requirements file, skipping options and includes."""
        text = manifest.read_text(encoding="utf-8", errors="replace")
        text = re.sub(r"\\\r?\n", " ", text)
        reqs = []
        for lineno, line in enumerate(text.splitlines(), 1):
            line = re.sub(r"(^|\s)#.*$", "", line).strip()
            if not line or line.startswith("-"):
                continue
            # Per-requirement options such as --hash
            line = line.split(" --", 1)[0].strip()
            if re.match(r"^(?:https?|git\+|file:|\.{0,2}/)", line):
                continue
            try:
                Requirement(line)
            except InvalidRequirement as e:
                raise ManifestParseError(manifest, f"invalid requirement on line {lineno}: {e}") from e
            reqs.append(line)
        return reqs

    # --- helpers ---

    def _to_refs(self, requirements: list[tuple[str, DependencyKind]]) -> list[DependencyRef]:
        seen: set[str] = set()
        refs = []
        for raw, kind in requirements:
            try:
                req = Requirement(raw)
            except InvalidRequirement:
                logger.warning(f"Skipping invalid requirement: {raw!r}")
                continue
            name = normalize_name(req.name)
            if name in seen:
                continue
            seen.add(name)
            if req.marker is not None and "extra" in str(req.marker) and kind == DependencyKind.RUNTIME:
                kind = DependencyKind.OPTIONAL
            refs.append(
                DependencyRef(
                    name=name,
                    version_constraint=str(req.specifier) or "*",
                    kind=kind,
                )
            )
        return refs

    def _parse_keywords(self, keywords: Any) -> list[str]:
        """Parse keywords, which can be a comma-separated string or already a list."""
        if not keywords:
            return []

        if isinstance(keywords, (list, tuple)):
            return [str(k) for k in keywords]

        if isinstance(keywords, str):
            return [k.strip() for k in re.split(r"[,\s]+", keywords) if k.strip()]

        return []

    async def resolve(self, name: str, constraint: str) -> list[DependencyRef]:
        """Fetch the declared runtime dependencies of a PyPI distribution.

        Args:
            name: Distribution name.
            constraint: Declared PEP 440 specifier set.

        Returns:
            Runtime dependencies (extras are skipped).

        Raises:
            DependencyResolutionError: If the PyPI lookup fails.
        """
        normalized_name = normalize_name(name)
        data = await self._fetch_json(name, f"{self.PYPI_URL}/{normalized_name}/json")

        info = data.get("info", {})
        try:
            selected = max_satisfying(parse_pep440(constraint), (data.get("releases") or {}).keys())
        except InvalidConstraint:
            selected = None
        if selected and selected != info.get("version"):
            data = await self._fetch_json(name, f"{self.PYPI_URL}/{normalized_name}/{selected}/json")
            info = data.get("info", {})

        refs = []
        for raw in info.get("requires_dist") or []:
            # Skip extras/optional dependencies
            if "extra ==" in raw or "extra==" in raw:
                continue
            try:
                req = Requirement(raw)
            except InvalidRequirement:
                continue
            refs.append(DependencyRef(name=normalize_name(req.name), version_constraint=str(req.specifier) or "*"))
        return refs


def _is_setup_call(func: ast.expr) -> bool:
    if isinstance(func, ast.Name):
        return func.id == "setup"
    if isinstance(func, ast.Attribute):
        return func.attr == "setup"
    return False


def _set_default(fields: dict[str, Any], key: str, value: Any) -> None:
    if value and not fields.get(key):
        fields[key] = value


def _as_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return []


def _cfg_list(value: str) -> list[str]:
    return [line.strip() for line in re.split(r"[\n;]", value) if line.strip()]


def _poetry_requirements(deps: Any) -> list[str]:
    """Convert a poetry dependency table to PEP 508 strings (caret ranges become >=)."""
    if not isinstance(deps, dict):
        return []
    reqs = []
    for dep_name, spec in deps.items():
        if dep_name.lower() == "python":
            continue
        if isinstance(spec, dict):
            spec = spec.get("version", "*")
        spec = str(spec).strip()
        if spec in ("", "*"):
            reqs.append(dep_name)
        elif spec[0] in "^~" and spec[1:2] != "=":
            reqs.append(f"{dep_name}>={spec[1:]}")
        elif spec[0].isdigit():
            reqs.append(f"{dep_name}=={spec}")
        else:
            reqs.append(f"{dep_name}{spec}")
    return reqs


def _repo_from_urls(urls: dict) -> str | None:
    """Pick a source repository URL from project_urls."""
    repo_keys = ["Source", "Source Code", "Repository", "GitHub", "Code", "source", "repository"]
    for key in repo_keys:
        if urls.get(key):
            return urls[key]
    for url in urls.values():
        if isinstance(url, str) and ("github.com" in url or "gitlab.com" in url or "bitbucket.org" in url):
            return url
    return None
