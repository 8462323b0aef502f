"""Version constraints as unions of intervals.

Both npm semver ranges and PEP 440 specifier sets are reduced to the same
representation so that a declared constraint can be intersected with the
affected ranges of an advisory.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from packaging.specifiers import InvalidSpecifier, Specifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from pkgguard.models.schemas import PackageType


class InvalidConstraint(ValueError):
    """Raised when a constraint cannot be interpreted as a version range."""


@dataclass(frozen=True)
class Bound:
    version: Version
    inclusive: bool


@dataclass(frozen=True)
class Interval:
    """A contiguous range of versions. None means unbounded."""

    lower: Bound | None = None
    upper: Bound | None = None

    def is_empty(self) -> bool:
        if self.lower is None or self.upper is None:
            return False
        if self.lower.version > self.upper.version:
            return True
        if self.lower.version == self.upper.version:
            return not (self.lower.inclusive and self.upper.inclusive)
        return False

    def intersect(self, other: Interval) -> Interval:
        return Interval(
            lower=_tighter_lower(self.lower, other.lower),
            upper=_tighter_upper(self.upper, other.upper),
        )

    def contains(self, version: Version) -> bool:
        if self.lower is not None:
            if version < self.lower.version:
                return False
            if version == self.lower.version and not self.lower.inclusive:
                return False
        if self.upper is not None:
            if version > self.upper.version:
                return False
            if version == self.upper.version and not self.upper.inclusive:
                return False
        return True


def _tighter_lower(a: Bound | None, b: Bound | None) -> Bound | None:
    if a is None:
        return b
    if b is None:
        return a
    if a.version != b.version:
        return a if a.version > b.version else b
    return a if not a.inclusive else b


def _tighter_upper(a: Bound | None, b: Bound | None) -> Bound | None:
    if a is None:
        return b
    if b is None:
        return a
    if a.version != b.version:
        return a if a.version < b.version else b
    return a if not a.inclusive else b


@dataclass(frozen=True)
class VersionRange:
    """A union of intervals."""

    intervals: tuple[Interval, ...]
    source: str = ""

    @classmethod
    def any(cls, source: str = "*") -> VersionRange:
        return cls((Interval(),), source)

    def is_empty(self) -> bool:
        return all(interval.is_empty() for interval in self.intervals)

    def intersects(self, other: VersionRange) -> bool:
        return any(
            not a.intersect(b).is_empty()
            for a in self.intervals
            for b in other.intervals
        )

    def contains(self, version: str | Version) -> bool:
        if isinstance(version, str):
            try:
                version = parse_version(version)
            except InvalidConstraint:
                return False
        return any(interval.contains(version) for interval in self.intervals)


def parse_version(text: str) -> Version:
    """Parse an npm or Python version string.

    npm prerelease tags that PEP 440 cannot express (e.g. ``1.0.0-canary.3``)
    are ordered just below their release.
    """
    text = text.strip().lstrip("=v").strip()
    try:
        return Version(text)
    except InvalidVersion:
        pass
    match = re.match(r"^(\d+(?:\.\d+)*)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$", text)
    if not match:
        raise InvalidConstraint(f"Not a version: {text!r}")
    base, pre = match.groups()
    try:
        return Version(f"{base}.dev0" if pre else base)
    except InvalidVersion as e:
        raise InvalidConstraint(f"Not a version: {text!r}") from e


def parse_constraint(package_type: PackageType, text: str) -> VersionRange:
    """Parse a constraint in the syntax of the given ecosystem."""
    if package_type == PackageType.NPM:
        return parse_npm_range(text)
    return parse_pep440(text)


def max_satisfying(constraint: VersionRange, versions: Iterable[str]) -> str | None:
    """Return the highest non-prerelease version admitted by the constraint."""
    best: tuple[Version, str] | None = None
    for raw in versions:
        try:
            version = parse_version(raw)
        except InvalidConstraint:
            continue
        if version.is_prerelease or not constraint.contains(version):
            continue
        if best is None or version > best[0]:
            best = (version, raw)
    return best[1] if best else None


# --- npm semver ranges ---

_NON_RANGE_PREFIXES = (
    "git", "http:", "https:", "file:", "link:", "npm:", "workspace:", "portal:", "patch:",
)
_PARTIAL = re.compile(
    r"^v?(?P<major>[0-9]+|[xX*])"
    r"(?:\.(?P<minor>[0-9]+|[xX*])"
    r"(?:\.(?P<patch>[0-9]+|[xX*])"
    r"(?P<qualifier>-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?)?)?$"
)
_COMPARATOR = re.compile(r"^(<=|>=|<|>|=|~>|~|\^)?(.*)$")


def _partial(text: str) -> tuple[int | None, int | None, int | None, str]:
    match = _PARTIAL.match(text)
    if not match:
        raise InvalidConstraint(f"Not a semver version: {text!r}")

    def num(part: str | None) -> int | None:
        if part is None or part in ("x", "X", "*"):
            return None
        return int(part)

    major = num(match.group("major"))
    minor = num(match.group("minor")) if major is not None else None
    patch = num(match.group("patch")) if minor is not None else None
    qualifier = (match.group("qualifier") or "") if patch is not None else ""
    return major, minor, patch, qualifier


def _v(major: int, minor: int = 0, patch: int = 0, qualifier: str = "") -> Version:
    return parse_version(f"{major}.{minor}.{patch}{qualifier}")


def _incl(version: Version) -> Bound:
    return Bound(version, True)


def _excl(version: Version) -> Bound:
    return Bound(version, False)


def _xrange(major: int | None, minor: int | None, patch: int | None, qualifier: str) -> Interval:
    if major is None:
        return Interval()
    if minor is None:
        return Interval(_incl(_v(major)), _excl(_v(major + 1)))
    if patch is None:
        return Interval(_incl(_v(major, minor)), _excl(_v(major, minor + 1)))
    exact = _v(major, minor, patch, qualifier)
    return Interval(_incl(exact), _incl(exact))


def _comparator(token: str) -> Interval:
    op, rest = _COMPARATOR.match(token).groups()
    major, minor, patch, qualifier = _partial(rest)

    if op in (None, "="):
        return _xrange(major, minor, patch, qualifier)

    if op in ("~", "~>"):
        if major is None:
            return Interval()
        if minor is None:
            return Interval(_incl(_v(major)), _excl(_v(major + 1)))
        return Interval(
            _incl(_v(major, minor, patch or 0, qualifier)),
            _excl(_v(major, minor + 1)),
        )

    if op == "^":
        if major is None:
            return Interval()
        lower = _incl(_v(major, minor or 0, patch or 0, qualifier))
        if major > 0 or minor is None:
            return Interval(lower, _excl(_v(major + 1)))
        if minor > 0 or patch is None:
            return Interval(lower, _excl(_v(0, minor + 1)))
        return Interval(lower, _excl(_v(0, 0, patch + 1)))

    # Plain comparators against a possibly partial version
    if major is None:
        # "<*" admits nothing, ">=*" admits everything
        return Interval(_incl(_v(0)), _excl(_v(0))) if op == "<" else Interval()
    if op == ">=":
        return Interval(lower=_incl(_v(major, minor or 0, patch or 0, qualifier)))
    if op == "<":
        return Interval(upper=_excl(_v(major, minor or 0, patch or 0, qualifier)))
    if op == ">":
        if minor is None:
            return Interval(lower=_incl(_v(major + 1)))
        if patch is None:
            return Interval(lower=_incl(_v(major, minor + 1)))
        return Interval(lower=_excl(_v(major, minor, patch, qualifier)))
    # "<="
    if minor is None:
        return Interval(upper=_excl(_v(major + 1)))
    if patch is None:
        return Interval(upper=_excl(_v(major, minor + 1)))
    return Interval(upper=_incl(_v(major, minor, patch, qualifier)))


def _hyphen(low: str, high: str) -> Interval:
    lmajor, lminor, lpatch, lqual = _partial(low)
    hmajor, hminor, hpatch, hqual = _partial(high)
    lower = None if lmajor is None else _incl(_v(lmajor, lminor or 0, lpatch or 0, lqual))
    if hmajor is None:
        upper = None
    elif hminor is None:
        upper = _excl(_v(hmajor + 1))
    elif hpatch is None:
        upper = _excl(_v(hmajor, hminor + 1))
    else:
        upper = _incl(_v(hmajor, hminor, hpatch, hqual))
    return Interval(lower, upper)


def parse_npm_range(text: str) -> VersionRange:
    """Parse an npm semver range (``^1.2.3``, ``>=1 <2 || 3.x``, ``1.2 - 1.4``)."""
    raw = text
    text = text.strip()
    if text.lower().startswith(_NON_RANGE_PREFIXES) or "/" in text:
        raise InvalidConstraint(f"Not a version range: {raw!r}")
    if text in ("", "*", "x", "X"):
        return VersionRange.any(raw)

    intervals = []
    for alternative in text.split("||"):
        alternative = alternative.strip()
        if alternative in ("", "*", "x", "X"):
            intervals.append(Interval())
            continue
        hyphen = re.match(r"^(\S+)\s+-\s+(\S+)$", alternative)
        if hyphen:
            intervals.append(_hyphen(*hyphen.groups()))
            continue
        alternative = re.sub(r"(<=|>=|<|>|=|~>|~|\^)\s+", r"\1", alternative)
        interval = Interval()
        for token in alternative.split():
            interval = interval.intersect(_comparator(token))
        intervals.append(interval)
    return VersionRange(tuple(intervals), raw)


# --- PEP 440 specifiers ---


def _specifier_interval(spec: Specifier) -> Interval:
    op, version = spec.operator, spec.version
    if op in ("==", "===") and version.endswith(".*"):
        parts = [int(p) for p in version[:-2].split(".") if p.isdigit()]
        if not parts:
            return Interval()
        upper = parts[:-1] + [parts[-1] + 1]
        return Interval(
            _incl(Version(".".join(map(str, parts)))),
            _excl(Version(".".join(map(str, upper)))),
        )
    if op == "!=":
        # Exclusions are ignored; the range stays an over-approximation
        return Interval()
    parsed = parse_version(version)
    if op in ("==", "==="):
        return Interval(_incl(parsed), _incl(parsed))
    if op == ">=":
        return Interval(lower=_incl(parsed))
    if op == ">":
        return Interval(lower=_excl(parsed))
    if op == "<=":
        return Interval(upper=_incl(parsed))
    if op == "<":
        return Interval(upper=_excl(parsed))
    if op == "~=":
        release = list(parsed.release)
        if len(release) < 2:
            raise InvalidConstraint(f"Invalid compatible release: {spec}")
        prefix = release[:-2] + [release[-2] + 1]
        return Interval(_incl(parsed), _excl(Version(".".join(map(str, prefix)))))
    raise InvalidConstraint(f"Unsupported operator in {spec}")


def parse_pep440(text: str) -> VersionRange:
    """Parse a PEP 440 specifier set (``>=1.0,<2``); a bare version means ``==``."""
    raw = text
    text = text.strip()
    if text in ("", "*"):
        return VersionRange.any(raw)
    if re.match(r"^v?\d", text):
        text = f"=={text}"
    intervals = []
    for alternative in text.split("||"):
        try:
            specifiers = SpecifierSet(alternative.strip())
        except InvalidSpecifier as e:
            raise InvalidConstraint(f"Invalid specifier {raw!r}: {e}") from e
        interval = Interval()
        for spec in specifiers:
            interval = interval.intersect(_specifier_interval(spec))
        intervals.append(interval)
    return VersionRange(tuple(intervals), raw)
