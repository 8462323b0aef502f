"""Malicious pattern scanner for install-time package content.

Detects constructs typical of supply-chain attacks in lifecycle scripts,
setup.py and the files those scripts run:
- Remote code fetch-and-execute (curl | sh, exec(urlopen(...).read()))
- Destructive filesystem operations
- Process/shell spawning
- Credential harvesting and data exfiltration
- Obfuscated/encoded payloads

Content is only ever matched as text. Nothing is executed.
"""

from __future__ import annotations

import logging
import re
import threading
from bisect import bisect_left
from dataclasses import dataclass
from pathlib import PurePosixPath

from pkgguard.adapters.npm import LIFECYCLE_SCRIPTS
from pkgguard.errors import ScanCancelledError
from pkgguard.models.schemas import MaliciousPattern, PackageInfo, PackageType, Severity

logger = logging.getLogger(__name__)


SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 40.0,
    Severity.HIGH: 25.0,
    Severity.MEDIUM: 10.0,
    Severity.LOW: 3.0,
}

# Signals closer than this many lines count as adjacent
ADJACENCY_WINDOW = 8

MAX_EVIDENCE_CHARS = 100


# === Pattern Definitions ===
# (regex, pattern_name, severity, description)

# Download piped or handed straight to an interpreter
REMOTE_EXEC_PATTERNS = [
    (r"\b(?:curl|wget)\b[^|;&\n]{0,500}\|\s*(?:sudo\s+)?(?:ba|z|k|da)?sh\b", "remote-code-exec", Severity.CRITICAL,
     "Downloads a script and pipes it into a shell"),
    (r"\b(?:curl|wget)\b[^|;&\n]{0,500}\|\s*(?:sudo\s+)?(?:python[0-9.]*|node|perl|ruby|php)\b", "remote-code-exec", Severity.CRITICAL,
     "Downloads code and pipes it into an interpreter"),
    (r"\b(?:curl|wget)\b[^;&|\n]{0,500}(?:-o|-O|--output)\s*['\"]?(\S{1,300}?)['\"]?\s*(?:&&|;)\s*(?:(?:ba)?sh|source|\.|chmod\s+\+x)\s",
     "remote-code-exec", Severity.CRITICAL, "Downloads a file and executes it"),
    (r"\b(?:iex|Invoke-Expression)\b[^\n]{0,500}\b(?:iwr|Invoke-WebRequest|DownloadString|Net\.WebClient)\b", "remote-code-exec",
     Severity.CRITICAL, "PowerShell download-and-execute"),
    (r"\b(?:exec|eval)\s*\(\s*(?:urllib\.request\.|urllib2\.)?urlopen\s*\(", "remote-code-exec", Severity.CRITICAL,
     "Executes code fetched with urlopen"),
    (r"\b(?:exec|eval)\s*\(\s*requests\.get\s*\(", "remote-code-exec", Severity.CRITICAL,
     "Executes code fetched with requests"),
    (r"\beval\s*\(\s*(?:await\s+)?\(?\s*(?:fetch|axios(?:\.get)?|https?\.get)\s*\(", "remote-code-exec", Severity.CRITICAL,
     "Evaluates code fetched over the network"),
]

DESTRUCTIVE_PATTERNS = [
    (r"\brm\s+(?:-[a-zA-Z]*\s+){0,8}-[a-zA-Z]*[rR][a-zA-Z]*\s+(?:-[a-zA-Z]*\s+){0,8}(?:--no-preserve-root\s+)?(?:/|/\*|~/?|~/\*|\$HOME/?|\$\{HOME\}/?)(?=[\s'\";)&|]|$)",
     "destructive-filesystem", Severity.CRITICAL, "Recursive delete of the root or home directory"),
    (r"\bmkfs(?:\.\w+)?\s+/dev/", "destructive-filesystem", Severity.CRITICAL, "Formats a block device"),
    (r"\bdd\s+if=\S+\s+of=/dev/(?:sd|hd|nvme|disk)", "destructive-filesystem", Severity.CRITICAL, "Overwrites a raw disk device"),
    (r"\b(?:del|rd|rmdir)\s+/[sq]\s+(?:/[sq]\s+)?[A-Za-z]:\\", "destructive-filesystem", Severity.CRITICAL,
     "Recursive delete of a Windows drive"),
    (r"\bshutil\.rmtree\s*\(\s*(?:['\"](?:/|~|[A-Za-z]:\\\\)['\"]|os\.path\.expanduser\(\s*['\"]~['\"]\s*\))",
     "destructive-filesystem", Severity.CRITICAL, "Recursive delete of the root or home directory"),
    (r"\b(?:fs\.)?(?:rmSync|rmdirSync|rimraf(?:\.sync)?)\s*\(\s*(?:['\"](?:/|~)['\"]|os\.homedir\(\))",
     "destructive-filesystem", Severity.CRITICAL, "Recursive delete of the root or home directory"),
    (r"\bchmod\s+-R\s+0?777\s+/(?=[\s'\"]|$)", "destructive-filesystem", Severity.HIGH, "Makes the whole filesystem world-writable"),
    (r">\s*/etc/(?:passwd|shadow|hosts|sudoers)\b", "destructive-filesystem", Severity.HIGH, "Overwrites a system file"),
]

CREDENTIAL_PATTERNS = [
    (r"\.npmrc\b", "credential-access", Severity.HIGH, "Accesses .npmrc (npm tokens)"),
    (r"\.pypirc\b", "credential-access", Severity.HIGH, "Accesses .pypirc (PyPI tokens)"),
    (r"\bNPM_TOKEN\b|\bNODE_AUTH_TOKEN\b|\bGITHUB_TOKEN\b|\bGH_TOKEN\b", "credential-access", Severity.HIGH,
     "Reads a registry or GitHub token"),
    (r"[~/]\.ssh[/\\]|\bid_(?:rsa|ed25519|ecdsa|dsa)\b", "credential-access", Severity.HIGH, "Accesses SSH keys"),
    (r"[~/]\.(?:aws|azure|config/gcloud)[/\\]|\bAWS_(?:ACCESS_KEY_ID|SECRET_ACCESS_KEY|SESSION_TOKEN)\b|\bGOOGLE_APPLICATION_CREDENTIALS\b",
     "credential-access", Severity.HIGH, "Accesses cloud credentials"),
    (r"/etc/(?:passwd|shadow)\b", "credential-access", Severity.HIGH, "Reads system account files"),
    (r"\.git-credentials\b|\.gnupg[/\\]", "credential-access", Severity.HIGH, "Accesses stored git or GPG credentials"),
]

OBFUSCATION_PATTERNS = [
    (r"\beval\s*\(\s*(?:atob|Buffer\.from|unescape|decodeURIComponent|String\.fromCharCode)\s*\(", "obfuscated-payload",
     Severity.CRITICAL, "eval() of a decoded string"),
    (r"new\s+Function\s*\(\s*(?:atob|Buffer\.from|unescape)\s*\(", "obfuscated-payload", Severity.CRITICAL,
     "Function constructor over a decoded string"),
    (r"\b(?:exec|eval)\s*\(\s*(?:base64\.\w*decode|codecs\.decode|zlib\.decompress|marshal\.loads|bytes\.fromhex|__import__\s*\(\s*['\"](?:base64|zlib|marshal|codecs)['\"])",
     "obfuscated-payload", Severity.CRITICAL, "exec() of a decoded payload"),
    (r"\bbase64\s+(?:-d|--decode)\b[^|\n]{0,500}\|\s*(?:ba|z)?sh\b", "obfuscated-payload", Severity.CRITICAL,
     "Decodes base64 and pipes it into a shell"),
    (r"\beval\s*\([^)\n+]{0,200}\+[^)\n]{0,200}\)", "obfuscated-payload", Severity.HIGH, "eval() with concatenation (code injection risk)"),
    (r"new\s+Function\s*\([^)\n+]{0,200}\+[^)\n]{0,200}\)", "obfuscated-payload", Severity.HIGH, "Function constructor with concatenation"),
    (r"String\.fromCharCode\s*\([^)]{50,2000}\)", "obfuscated-payload", Severity.HIGH,
     "String.fromCharCode with many codes (deobfuscation)"),
    (r"\\x[0-9a-fA-F]{2}(?:\\x[0-9a-fA-F]{2}){30,}", "obfuscated-payload", Severity.HIGH, "Long hex-encoded string sequence"),
    (r"['\"][A-Za-z0-9+/=]{200,}['\"]", "obfuscated-payload", Severity.MEDIUM, "Very long base64-encoded string"),
]

# (regex, signal kind). Signals are combined by proximity into findings.
SIGNAL_PATTERNS = [
    # Network-capable calls
    (r"\b(?:curl|wget)\b(?!\s*['\"]?\s*--version)", "network"),
    (r"['\"](?:curl|wget|nc|ncat|netcat)['\"]", "network"),
    (r"\b(?:urllib\.request\.)?urlopen\s*\(|\burllib2\.urlopen\s*\(|\burllib\.request\.(?:Request|urlretrieve)\s*\(", "network"),
    (r"\brequests\.(?:get|post|put|patch|request)\s*\(|\bhttpx\.(?:get|post|put|Client|AsyncClient)\b", "network"),
    (r"\bhttp\.client\.HTTPS?Connection\s*\(|\bsocket\.(?:socket|create_connection)\s*\(", "network"),
    (r"\brequire\s*\(\s*['\"](?:https?|net|tls|dgram)['\"]\s*\)", "network"),
    (r"\b(?:https?)\.(?:get|request)\s*\(|\bfetch\s*\(\s*[`'\"]https?://|\baxios(?:\.(?:get|post))?\s*\(", "network"),
    (r"\bnew\s+WebSocket\s*\(|\bnet\.(?:connect|createConnection)\s*\(|\bdns\.(?:resolve\w*|lookup)\s*\(", "network"),
    (r"\b(?:nslookup|dig)\s+\S{0,300}\$\(", "network"),
    # Process spawning
    (r"\bsubprocess\.(?:run|call|check_call|check_output|Popen|getoutput|getstatusoutput)\s*\(", "spawn"),
    (r"\bos\.(?:system|popen|exec[lv]p?e?|spawn[lv]p?e?)\s*\(", "spawn"),
    (r"\bchild_process\b|\b(?:exec|execSync|spawn|spawnSync|execFile|execFileSync)\s*\(\s*['\"`]", "spawn"),
    (r"\b(?:ba|z)?sh\s+-c\b|\bchmod\s+\+x\b", "spawn"),
    # Dynamic evaluation
    (r"\beval\s*\(|(?<![\w.])exec\s*\(|\bnew\s+Function\s*\(|\bvm\.runIn\w*Context\s*\(", "eval"),
    # Data worth stealing
    (r"\bprocess\.env\b(?!\.NODE_ENV\b)|\bos\.environ\b|\bos\.getenv\s*\(|\$\(\s*(?:env|printenv)\s*\)|\bprintenv\b",
     "sensitive"),
    (r"\bos\.(?:homedir|hostname|userInfo)\s*\(|\bsocket\.gethostname\s*\(|\bgetpass\.getuser\s*\(|\bplatform\.node\s*\(",
     "sensitive"),
    # Encoded blobs
    (r"['\"][A-Za-z0-9+/=]{200,}['\"]", "blob"),
]

# Posting data out, as opposed to downloading
UPLOAD_PATTERN = re.compile(
    r"\b(?:curl|wget)\b[^\n;&|]{0,500}\s(?:-d|--data(?:-binary|-raw|-urlencode)?|--upload-file|-T|-F|--form|--post-data|--post-file)\b"
    r"|\brequests\.(?:post|put)\s*\(|\bhttpx\.(?:post|put)\s*\(|method\s*:\s*['\"](?:POST|PUT)['\"]|\.write\s*\(",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Signal:
    kind: str
    line: int
    text: str


class MaliciousPatternScanner:
    """Static scanner for malicious constructs in install-time content.

    Detectors run in a fixed order; every detector may fire several times
    per input, and findings are deduplicated by (pattern_name, location),
    keeping the most severe one.
    """

    def __init__(self, adjacency_window: int = ADJACENCY_WINDOW) -> None:
        self.adjacency_window = adjacency_window
        self._tables = [
            REMOTE_EXEC_PATTERNS,
            DESTRUCTIVE_PATTERNS,
            CREDENTIAL_PATTERNS,
            OBFUSCATION_PATTERNS,
        ]

    def scan(self, package: PackageInfo, cancelled: threading.Event | None = None) -> list[MaliciousPattern]:
        """Scan every piece of install-time content in a package.

        Args:
            package: Normalized package.
            cancelled: Set by the caller to stop the scan between patterns.

        Returns:
            Deduplicated findings, most severe first.

        Raises:
            ScanCancelledError: If ``cancelled`` was set before the scan finished.
        """
        findings: list[MaliciousPattern] = []
        for location, content in self.scannable_content(package):
            findings.extend(self.scan_content(content, location, cancelled))
        return self._deduplicate(findings)

    def scannable_content(self, package: PackageInfo) -> list[tuple[str, str]]:
        """Return (location, text) pairs that run at install/build time."""
        content = []
        if package.package_type == PackageType.NPM:
            for script_name in sorted(LIFECYCLE_SCRIPTS & package.scripts.keys()):
                content.append((f"scripts.{script_name}", package.scripts[script_name]))
        for relative in sorted(package.source_files):
            content.append((relative, package.source_files[relative]))
        return content

    def scan_content(
        self,
        content: str,
        location: str,
        cancelled: threading.Event | None = None,
    ) -> list[MaliciousPattern]:
        """Run all detectors over one piece of content.

        Args:
            content: Script or source text.
            location: Manifest field or file it came from.
            cancelled: Checked before each pattern.

        Returns:
            Findings, not yet deduplicated across locations.
        """
        if PurePosixPath(location).suffix == ".py":
            content = _strip_python_comments(content)

        findings = []
        for table in self._tables:
            for regex, pattern_name, severity, description in table:
                if cancelled is not None and cancelled.is_set():
                    raise ScanCancelledError(location)
                for match in re.finditer(regex, content, re.IGNORECASE | re.MULTILINE):
                    findings.append(self._finding(pattern_name, severity, description, location, match.group(0)))

        newlines = [i for i, char in enumerate(content) if char == "\n"]
        signals = self._collect_signals(content, newlines)
        findings.extend(self._combine_signals(signals, content, newlines, location))
        return self._deduplicate(findings)

    def _collect_signals(self, content: str, newlines: list[int]) -> list[Signal]:
        signals = []
        for regex, kind in SIGNAL_PATTERNS:
            for match in re.finditer(regex, content, re.IGNORECASE | re.MULTILINE):
                line = bisect_left(newlines, match.start()) + 1
                signals.append(Signal(kind=kind, line=line, text=match.group(0)))
        return signals

    def _combine_signals(
        self,
        signals: list[Signal],
        content: str,
        newlines: list[int],
        location: str,
    ) -> list[MaliciousPattern]:
        """Structural detectors: findings from signals that occur close together."""
        by_kind: dict[str, list[Signal]] = {}
        for signal in signals:
            by_kind.setdefault(signal.kind, []).append(signal)
        executors = _by_line(by_kind.get("spawn", []) + by_kind.get("eval", []))
        sensitive = _by_line(by_kind.get("sensitive", []))
        evals = _by_line(by_kind.get("eval", []))

        findings = []
        network = by_kind.get("network", [])

        # Network access next to process spawning or dynamic evaluation
        for signal in network:
            partner = self._nearest(signal, executors)
            if partner is not None:
                findings.append(self._finding(
                    "remote-code-exec",
                    Severity.CRITICAL,
                    "Fetches content over the network next to a process spawn or eval call",
                    location,
                    f"{signal.text} ... {partner.text}",
                ))
                break

        # Network access next to secrets or host information
        credential_hits = [
            m for regex, *_ in CREDENTIAL_PATTERNS for m in re.finditer(regex, content, re.IGNORECASE)
        ]
        credential_lines = sorted(bisect_left(newlines, m.start()) + 1 for m in credential_hits)
        for signal in network:
            first_after = bisect_left(credential_lines, signal.line - self.adjacency_window)
            near_credential = (
                first_after < len(credential_lines)
                and credential_lines[first_after] <= signal.line + self.adjacency_window
            )
            partner = self._nearest(signal, sensitive)
            if near_credential or partner is not None:
                uploading = bool(UPLOAD_PATTERN.search(content))
                severity = Severity.CRITICAL if near_credential or uploading else Severity.HIGH
                findings.append(self._finding(
                    "data-exfiltration",
                    severity,
                    "Sends environment or credential data over the network",
                    location,
                    signal.text if partner is None else f"{partner.text} ... {signal.text}",
                ))
                break

        # Encoded blob next to dynamic evaluation
        for signal in by_kind.get("blob", []):
            partner = self._nearest(signal, evals)
            if partner is not None:
                findings.append(self._finding(
                    "obfuscated-payload",
                    Severity.CRITICAL,
                    "Evaluates a large encoded payload",
                    location,
                    partner.text,
                ))
                break

        # Process spawning in install-time code
        for signal in by_kind.get("spawn", []):
            window = content.splitlines()[max(0, signal.line - 1):signal.line - 1 + self.adjacency_window]
            context = "\n".join(window)
            attacker_influenced = re.search(
                r"shell\s*=\s*True|\b(?:curl|wget|nc|powershell|bash|sh)\b|process\.env|os\.environ|\$\{|\+\s*\w",
                context,
            )
            findings.append(self._finding(
                "shell-spawn",
                Severity.HIGH if attacker_influenced else Severity.MEDIUM,
                "Spawns a shell or process at install time",
                location,
                signal.text,
            ))
            break

        # Any other network access at install time
        if network:
            findings.append(self._finding(
                "install-time-network",
                Severity.MEDIUM,
                "Makes a network request at install time",
                location,
                network[0].text,
            ))

        return findings

    def _nearest(self, signal: Signal, candidates: tuple[list[int], list[Signal]]) -> Signal | None:
        """Closest candidate within the adjacency window, the earlier line on ties."""
        lines, ordered = candidates
        index = bisect_left(lines, signal.line)
        options = []
        if index < len(lines):
            options.append(ordered[index])
        if index > 0:
            options.append(ordered[bisect_left(lines, lines[index - 1])])
        close = [c for c in options if abs(c.line - signal.line) <= self.adjacency_window]
        if not close:
            return None
        return min(close, key=lambda c: (abs(c.line - signal.line), c.line))

    def _finding(
        self,
        pattern_name: str,
        severity: Severity,
        description: str,
        location: str,
        matched: str,
    ) -> MaliciousPattern:
        # Truncate matched content for readability
        if len(matched) > MAX_EVIDENCE_CHARS:
            matched = matched[:MAX_EVIDENCE_CHARS] + "..."
        return MaliciousPattern(
            pattern_name=pattern_name,
            description=description,
            location=location,
            severity=severity,
            weight=SEVERITY_WEIGHTS[severity],
            matched_content=matched,
        )

    def _deduplicate(self, findings: list[MaliciousPattern]) -> list[MaliciousPattern]:
        """Keep the most severe finding per (pattern_name, location)."""
        best: dict[tuple[str, str], MaliciousPattern] = {}
        for finding in findings:
            key = (finding.pattern_name, finding.location)
            current = best.get(key)
            if current is None or finding.severity > current.severity:
                best[key] = finding
        return sorted(
            best.values(),
            key=lambda f: (-f.severity.rank, f.location, f.pattern_name),
        )

    @staticmethod
    def score(findings: list[MaliciousPattern]) -> float:
        """Malicious-code component: weighted sum of findings, capped at 100."""
        return min(100.0, sum(f.weight for f in findings))


def _by_line(signals: list[Signal]) -> tuple[list[int], list[Signal]]:
    ordered = sorted(signals, key=lambda s: s.line)
    return [s.line for s in ordered], ordered


def _strip_python_comments(source: str) -> str:
    """Blank out full-line comments, keeping line numbers stable."""
    return "\n".join("" if line.lstrip().startswith("#") else line for line in source.splitlines())
