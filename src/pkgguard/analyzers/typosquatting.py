"""Typosquatting detection against a corpus of popular package names.

Similarity combines two views of a name:
- Edit distance (Levenshtein, with an adjacent swap counted as one edit)
- Substitution heuristics: separator games, doubled letters, digit/letter
  homoglyphs, common affixes and repetition of a popular name
"""

from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from importlib import resources
from pathlib import Path

import Levenshtein

from pkgguard.adapters.pypi import normalize_name
from pkgguard.models.schemas import PackageType, TyposquattingRisk

logger = logging.getLogger(__name__)


# Digit/letter look-alikes, applied to the candidate name
HOMOGLYPHS = {
    "0": "o",
    "1": "l",
    "3": "e",
    "4": "a",
    "5": "s",
    "6": "g",
    "7": "t",
    "8": "b",
}

# Suffixes/prefixes attackers bolt onto a popular name
COMMON_AFFIXES = {
    "js", "node", "nodejs", "py", "py3", "python", "python3", "lib", "dev",
    "official", "cli", "sdk", "api", "pkg", "package", "2", "3",
}

SEPARATORS = re.compile(r"[-_.]+")

MIN_EDIT_DISTANCE_LENGTH = 4
# Up to this length, names differing in length are compared by heuristics only
SHORT_NAME_LENGTH = 6
MAX_CANDIDATES = 5

# Similarity assigned to each heuristic match
SEPARATOR_SIMILARITY = 0.95
DOUBLED_LETTER_SIMILARITY = 0.9
HOMOGLYPH_SIMILARITY = 0.9
AFFIX_SIMILARITY = 0.8


def normalize(package_type: PackageType, name: str) -> str:
    """Normalize a name the way its registry does for lookups."""
    if package_type == PackageType.PYTHON:
        return normalize_name(name)
    return name.strip().lower()


class TyposquattingCorpus:
    """Popular package names per ecosystem. Read-only once built."""

    def __init__(self, names: dict[PackageType, list[str]]) -> None:
        self._names: dict[PackageType, dict[str, str]] = {
            package_type: {normalize(package_type, n): n for n in entries}
            for package_type, entries in names.items()
        }

    @classmethod
    def default(cls) -> TyposquattingCorpus:
        """Corpus bundled with the package (loaded once per process)."""
        return _bundled_corpus()

    @classmethod
    def from_file(cls, path: Path) -> TyposquattingCorpus:
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    @classmethod
    def from_dict(cls, data: dict) -> TyposquattingCorpus:
        return cls({
            PackageType(ecosystem): list(names)
            for ecosystem, names in data.items()
            if not ecosystem.startswith("_")
        })

    def names(self, package_type: PackageType) -> dict[str, str]:
        """Normalized name -> name as published."""
        return self._names.get(package_type, {})

    def __contains__(self, item: tuple[PackageType, str]) -> bool:
        package_type, name = item
        return normalize(package_type, name) in self.names(package_type)


@lru_cache(maxsize=1)
def _bundled_corpus() -> TyposquattingCorpus:
    text = resources.files("pkgguard").joinpath("data/popular_packages.json").read_text(encoding="utf-8")
    return TyposquattingCorpus.from_dict(json.loads(text))


def edit_similarity(a: str, b: str) -> float:
    """1 - distance / longer length, with adjacent transpositions as one edit."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - _distance(a, b) / longest


def _distance(a: str, b: str) -> int:
    distance = Levenshtein.distance(a, b)
    if distance < 2:
        return distance
    # Swapping neighbours costs two Levenshtein edits but is a single typo
    for i in range(len(a) - 1):
        if a[i] != a[i + 1]:
            swapped = a[:i] + a[i + 1] + a[i] + a[i + 2:]
            distance = min(distance, 1 + Levenshtein.distance(swapped, b))
    return distance


def heuristic_similarity(candidate: str, popular: str) -> float:
    """Similarity from substitution heuristics, 0.0 when none applies."""
    bare_candidate = SEPARATORS.sub("", candidate)
    bare_popular = SEPARATORS.sub("", popular)

    if bare_candidate == bare_popular:
        return SEPARATOR_SIMILARITY

    if _collapse_runs(bare_candidate) == _collapse_runs(bare_popular):
        return DOUBLED_LETTER_SIMILARITY

    deglyphed = "".join(HOMOGLYPHS.get(c, c) for c in bare_candidate).replace("rn", "m")
    if deglyphed in (bare_popular, bare_popular.replace("rn", "m")):
        return HOMOGLYPH_SIMILARITY

    if len(bare_popular) >= MIN_EDIT_DISTANCE_LENGTH:
        if bare_candidate == bare_popular * 2:
            return AFFIX_SIMILARITY
        for affix in COMMON_AFFIXES:
            if bare_candidate in (bare_popular + affix, affix + bare_popular):
                return AFFIX_SIMILARITY

    return 0.0


def _collapse_runs(text: str) -> str:
    return re.sub(r"(.)\1+", r"\1", text)


class TyposquattingDetector:
    """Scores how much a package name imitates a popular one."""

    def __init__(self, corpus: TyposquattingCorpus | None = None, threshold: float = 0.75) -> None:
        self.corpus = corpus or TyposquattingCorpus.default()
        self.threshold = threshold

    def similarity(self, candidate: str, popular: str) -> float:
        """Similarity of two normalized names, in [0, 1]."""
        if candidate == popular:
            return 1.0
        heuristic = heuristic_similarity(candidate, popular)
        if len(candidate) < MIN_EDIT_DISTANCE_LENGTH:
            return heuristic
        if len(candidate) != len(popular) and max(len(candidate), len(popular)) <= SHORT_NAME_LENGTH:
            # One added or dropped letter already clears the threshold (tomli, toml)
            return heuristic
        return max(heuristic, edit_similarity(candidate, popular))

    def check(self, package_type: PackageType, name: str) -> TyposquattingRisk:
        """Compare a name against the popular names of its ecosystem.

        Args:
            package_type: Ecosystem of the name.
            name: Package name as declared.

        Returns:
            TyposquattingRisk. Popular packages themselves are never flagged.
        """
        candidate = normalize(package_type, name)
        popular = self.corpus.names(package_type)
        if candidate in popular:
            return TyposquattingRisk()

        scored = []
        for normalized, published in popular.items():
            score = self.similarity(candidate, normalized)
            if score >= self.threshold:
                scored.append((score, published))

        if not scored:
            return TyposquattingRisk()

        scored.sort(key=lambda item: (-item[0], item[1]))
        top = scored[:MAX_CANDIDATES]
        logger.info(f"'{name}' resembles {', '.join(p for _, p in top)}")
        return TyposquattingRisk(
            is_potential_typosquatting=True,
            similar_packages=[published for _, published in top],
            confidence_score=round(top[0][0], 4),
        )

    @staticmethod
    def score(risk: TyposquattingRisk | None) -> float:
        """Typosquatting component: confidence scaled to 0-100 when flagged."""
        if risk is None or not risk.is_potential_typosquatting:
            return 0.0
        return risk.confidence_score * 100.0
