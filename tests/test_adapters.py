"""Tests for the npm and Python manifest adapters."""

import asyncio
import json

import httpx
import pytest

from pkgguard.adapters import NpmAdapter, PyPiAdapter
from pkgguard.adapters.base import clean_repo_url
from pkgguard.errors import DependencyResolutionError, ManifestParseError
from pkgguard.models.schemas import DependencyKind, PackageType


def _mock_client(routes: dict[str, dict], status: int = 200) -> httpx.AsyncClient:
    """Client answering GETs from a url -> JSON table."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url not in routes:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(status, json=routes[url])

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestNpmAdapter:
    def test_parse_manifest(self, npm_package, benign_manifest):
        """Metadata, scripts and dependency kinds come through."""
        root = npm_package(benign_manifest)
        package = NpmAdapter().load_package(root)

        assert package.package_type == PackageType.NPM
        assert package.name == "benign-test-package"
        assert package.version == "1.0.0"
        assert package.scripts["test"] == "mocha"
        kinds = {dep.name: dep.kind for dep in package.dependencies}
        assert kinds == {
            "lodash": DependencyKind.RUNTIME,
            "express": DependencyKind.RUNTIME,
            "mocha": DependencyKind.DEV,
            "chai": DependencyKind.DEV,
        }
        assert all(dep.depth == 1 for dep in package.dependencies)
        assert package.attributes["has_real_test_script"] is True

    def test_author_license_repository(self, npm_package):
        root = npm_package({
            "name": "demo",
            "version": "0.1.0",
            "author": {"name": "Jane Doe", "email": "jane@example.com"},
            "licenses": [{"type": "MIT"}],
            "repository": {"type": "git", "url": "git+https://github.com/jane/demo.git"},
            "keywords": ["demo", 42],
        })
        package = NpmAdapter().load_package(root)
        assert package.metadata.author == "Jane Doe <jane@example.com>"
        assert package.metadata.license == "MIT"
        assert package.metadata.repository == "https://github.com/jane/demo"
        assert package.metadata.keywords == ["demo"]

    def test_optional_and_peer_dependencies(self, npm_package):
        root = npm_package({
            "name": "demo",
            "peerDependencies": {"react": ">=16"},
            "optionalDependencies": {"fsevents": "^2.3.0"},
        })
        package = NpmAdapter().load_package(root)
        kinds = {dep.name: dep.kind for dep in package.dependencies}
        assert kinds == {"react": DependencyKind.RUNTIME, "fsevents": DependencyKind.OPTIONAL}

    def test_reads_files_run_by_lifecycle_scripts(self, npm_package):
        root = npm_package(
            {"name": "demo", "scripts": {"postinstall": "node scripts/setup.js", "build": "node build.js"}},
            files={"scripts/setup.js": "console.log('hi')", "build.js": "console.log('build')"},
        )
        package = NpmAdapter().load_package(root)
        assert package.source_files == {"scripts/setup.js": "console.log('hi')"}

    def test_does_not_read_outside_package(self, npm_package, tmp_path_factory):
        outside = tmp_path_factory.mktemp("outside") / "evil.js"
        outside.write_text("secret")
        root = npm_package({"name": "demo", "scripts": {"install": f"node ../{outside.parent.name}/evil.js"}})
        package = NpmAdapter().load_package(root)
        assert package.source_files == {}

    def test_placeholder_test_script(self, npm_package):
        root = npm_package({"name": "demo", "scripts": {"test": 'echo "Error: no test specified" && exit 1'}})
        assert NpmAdapter().load_package(root).attributes["has_real_test_script"] is False

    def test_missing_name_uses_directory(self, npm_package, tmp_path):
        root = npm_package({"version": "1.0.0"})
        assert NpmAdapter().load_package(root).name == tmp_path.resolve().name

    def test_repo_signals(self, npm_package):
        root = npm_package(
            {"name": "demo"},
            files={"README.md": "# demo", "test/index.js": "", ".github/workflows/ci.yml": "", "CHANGELOG.md": ""},
        )
        attributes = NpmAdapter().load_package(root).attributes
        assert attributes["has_readme"]
        assert attributes["has_tests_dir"]
        assert attributes["has_ci_config"]
        assert attributes["has_changelog"]

    @pytest.mark.parametrize(
        "manifest",
        [
            '{"name": "broken",',
            '["not", "an", "object"]',
            '{"name": "demo", "scripts": ["build"]}',
            '{"name": "demo", "dependencies": ["lodash"]}',
            '{"name": "demo", "keywords": 5}',
            '{"name": "demo", "description": ["x"]}',
            '{"name": "demo", "repository": {"url": 5}}',
            '{"name": "demo", "author": {"name": 5}}',
            '{"name": "demo", "license": {"type": 5}}',
        ],
    )
    def test_malformed_manifest(self, npm_package, manifest):
        root = npm_package(manifest)
        with pytest.raises(ManifestParseError):
            NpmAdapter().load_package(root)

    def test_can_analyze(self, npm_package, tmp_path):
        root = npm_package({"name": "demo"})
        assert NpmAdapter().can_analyze(root)
        assert NpmAdapter().can_analyze(root / "package.json")
        assert not NpmAdapter().can_analyze(tmp_path / "nowhere")

    def test_resolve_picks_highest_matching_version(self):
        routes = {
            "https://registry.npmjs.org/debug": {
                "dist-tags": {"latest": "4.3.4"},
                "versions": {
                    "2.6.9": {"dependencies": {"ms": "2.0.0"}},
                    "4.3.4": {"dependencies": {"ms": "2.1.2"}, "optionalDependencies": {"supports-color": "^8"}},
                },
            }
        }

        async def run():
            async with _mock_client(routes) as client:
                return await NpmAdapter(client).resolve("debug", "^2.6.0")

        refs = asyncio.run(run())
        assert [(r.name, r.version_constraint) for r in refs] == [("ms", "2.0.0")]

    def test_resolve_failure(self):
        async def run():
            async with _mock_client({}) as client:
                return await NpmAdapter(client).resolve("does-not-exist", "*")

        with pytest.raises(DependencyResolutionError, match="HTTP 404"):
            asyncio.run(run())


class TestPyPiAdapter:
    def test_setup_py_is_read_statically(self, python_package, tmp_path):
        """setup() keywords are read from the AST; module code never runs."""
        marker = tmp_path / "executed"
        root = python_package(setup_py=f'''
from setuptools import setup
open({str(marker)!r}, "w").write("ran")
setup(
    name="Demo_Package",
    version="1.2.0",
    description="A demo package",
    url="https://example.com/demo",
    license="BSD",
    install_requires=["requests>=2.0", "Click"],
    tests_require=["pytest"],
    extras_require={{"yaml": ["PyYAML>=5.1"], "dev": ["black"]}},
    cmdclass={{"install": object}},
)
''')
        package = PyPiAdapter().load_package(root)

        assert not marker.exists()
        assert package.package_type == PackageType.PYTHON
        assert package.name == "Demo_Package"
        assert package.version == "1.2.0"
        assert package.metadata.homepage == "https://example.com/demo"
        assert "setup.py" in package.source_files
        deps = {dep.name: dep for dep in package.dependencies}
        assert deps["requests"].version_constraint == ">=2.0"
        assert deps["click"].version_constraint == "*"
        assert deps["pytest"].kind == DependencyKind.DEV
        assert deps["pyyaml"].kind == DependencyKind.OPTIONAL
        assert deps["black"].kind == DependencyKind.DEV
        assert package.attributes["declares_test_requirements"] is True
        assert package.attributes["custom_install_commands"] is True

    def test_requirements_files(self, python_package):
        root = python_package(
            requirements="# pinned\nDjango==1.11.0\nrequests>=2.0  # http\n-r base.txt\ngit+https://github.com/x/y.git\n",
            files={"requirements-dev.txt": "pytest>=7\n"},
        )
        package = PyPiAdapter().load_package(root)
        deps = {dep.name: dep for dep in package.dependencies}
        assert deps["django"].version_constraint == "==1.11.0"
        assert deps["django"].kind == DependencyKind.RUNTIME
        assert deps["pytest"].kind == DependencyKind.DEV
        assert len(deps) == 3

    def test_pyproject(self, python_package):
        root = python_package(files={"pyproject.toml": '''
[project]
name = "demo"
version = "2.0.0"
description = "Demo"
authors = [{name = "Jane"}]
dependencies = ["httpx>=0.25"]

[project.optional-dependencies]
test = ["pytest"]

[project.urls]
Repository = "https://github.com/jane/demo"
'''})
        package = PyPiAdapter().load_package(root)
        assert package.name == "demo"
        assert package.metadata.author == "Jane"
        assert package.metadata.repository == "https://github.com/jane/demo"
        kinds = {dep.name: dep.kind for dep in package.dependencies}
        assert kinds == {"httpx": DependencyKind.RUNTIME, "pytest": DependencyKind.DEV}
        assert package.attributes["declares_test_requirements"] is True

    def test_poetry(self, python_package):
        root = python_package(files={"pyproject.toml": '''
[tool.poetry]
name = "poetry-demo"
version = "0.3.0"

[tool.poetry.dependencies]
python = "^3.11"
requests = "^2.28"

[tool.poetry.group.dev.dependencies]
pytest = "*"
'''})
        package = PyPiAdapter().load_package(root)
        deps = {dep.name: dep for dep in package.dependencies}
        assert set(deps) == {"requests", "pytest"}
        assert deps["requests"].version_constraint == ">=2.28"
        assert deps["pytest"].kind == DependencyKind.DEV

    def test_setup_cfg(self, python_package):
        root = python_package(files={"setup.cfg": '''
[metadata]
name = cfg-demo
version = 1.0.0
keywords = one, two

[options]
install_requires =
    flask<1.0
'''})
        package = PyPiAdapter().load_package(root)
        assert package.name == "cfg-demo"
        assert package.metadata.keywords == ["one", "two"]
        assert [(d.name, d.version_constraint) for d in package.dependencies] == [("flask", "<1.0")]

    def test_invalid_requirement(self, python_package):
        root = python_package(requirements="requests >>> 2\n")
        with pytest.raises(ManifestParseError, match="line 1"):
            PyPiAdapter().load_package(root)

    def test_setup_py_syntax_error(self, python_package):
        root = python_package(setup_py="setup(name='x'\n")
        with pytest.raises(ManifestParseError):
            PyPiAdapter().load_package(root)

    def test_can_analyze(self, python_package, tmp_path):
        assert not PyPiAdapter().can_analyze(tmp_path)
        python_package(files={"requirements-test.txt": "pytest\n"})
        assert PyPiAdapter().can_analyze(tmp_path)
        assert PyPiAdapter().can_analyze(tmp_path / "requirements-test.txt")

    def test_resolve_skips_extras(self):
        routes = {
            "https://pypi.org/pypi/requests/json": {
                "info": {
                    "version": "2.31.0",
                    "requires_dist": ["urllib3<3,>=1.21.1", "PySocks!=1.5.7; extra == 'socks'"],
                },
                "releases": {"2.31.0": []},
            }
        }

        async def run():
            async with _mock_client(routes) as client:
                return await PyPiAdapter(client).resolve("Requests", "*")

        refs = asyncio.run(run())
        assert [r.name for r in refs] == ["urllib3"]


class TestCleanRepoUrl:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ({"type": "git", "url": "git+https://github.com/o/r.git"}, "https://github.com/o/r"),
            ("github:o/r", "https://github.com/o/r"),
            ("https://github.com/o/r", "https://github.com/o/r"),
            (None, None),
            ({"type": "git"}, None),
            ({"type": "git", "url": 5}, None),
        ],
    )
    def test_formats(self, value, expected):
        assert clean_repo_url(value) == expected


def test_package_json_round_trip_is_stable(npm_package, benign_manifest):
    """Loading twice yields equal packages."""
    root = npm_package(benign_manifest)
    first = NpmAdapter().load_package(root)
    second = NpmAdapter().load_package(root)
    assert first == second
    assert json.loads(first.model_dump_json())["metadata"]["name"] == "benign-test-package"
