# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Version Range Matcher

Single responsibility: Parse semantic versions and range expressions,
check satisfaction and pick the highest satisfying candidate.

Supported range syntax:
- exact pins: 1.2.3, =1.2.3
- comparisons: >1.2.3, >=1.2.3, <2.0.0, <=2.0.0
- caret: ^1.2.3 (same major; same minor below 1.0.0)
- tilde: ~1.2.3 (same major.minor)
- wildcards: *, latest, 1.x, 1.2.*
- hyphen ranges: 1.2.3 - 2.3.4
- comparator sets joined by whitespace (AND) and by || (OR)

A pre-release version satisfies a range only if some comparator in the
matching set carries a pre-release tag on the same major.minor.patch.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache, total_ordering
from typing import Iterable, List, Optional, Tuple, Union

from package_engine.core.errors import InvalidRangeError, InvalidVersionError
from package_engine.models.package_models import CompatibilityLevel, ImpactLevel

logger = logging.getLogger(__name__)

SEMVER_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

_WILDCARD = r"(?:0|[1-9]\d*|[xX*])"
PARTIAL_RE = re.compile(
    r"^(?P<op><=|>=|<|>|=|\^|~>|~)?v?"
    rf"(?P<major>{_WILDCARD})"
    rf"(?:\.(?P<minor>{_WILDCARD}))?"
    rf"(?:\.(?P<patch>{_WILDCARD}))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
HYPHEN_RE = re.compile(r"^\s*(?P<low>\S+)\s+-\s+(?P<high>\S+)\s*$")
OPERATOR_SPACE_RE = re.compile(r"(<=|>=|<|>|=|\^|~>|~)\s+")


@total_ordering
@dataclass(frozen=True)
class SemVer:
    """Semantic version; build metadata is ignored for ordering and equality"""
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        if self.build:
            text += "+" + ".".join(self.build)
        return text

    @property
    def release(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def _prerelease_key(self) -> tuple:
        # Numeric identifiers sort before alphanumeric ones
        return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.prerelease)

    def _cmp_key(self) -> tuple:
        # A release sorts above any of its pre-releases
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, self._prerelease_key())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._cmp_key() == other._cmp_key()

    def __lt__(self, other: "SemVer") -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._cmp_key() < other._cmp_key()

    def __hash__(self) -> int:
        return hash(self._cmp_key())


VersionLike = Union[str, SemVer]


def parse_version(text: VersionLike) -> SemVer:
    """
    Parse a semantic version string.

    Raises:
        InvalidVersionError: If text is not valid semver
    """
    if isinstance(text, SemVer):
        return text
    match = SEMVER_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise InvalidVersionError(str(text))
    return SemVer(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=tuple(match.group("prerelease").split(".")) if match.group("prerelease") else (),
        build=tuple(match.group("build").split(".")) if match.group("build") else (),
    )


def is_valid_version(text: str) -> bool:
    return bool(SEMVER_RE.match(text.strip()))


@dataclass(frozen=True)
class Comparator:
    operator: str  # one of <, <=, >, >=, =
    version: SemVer

    def test(self, version: SemVer) -> bool:
        if self.operator == "=":
            return version == self.version
        if self.operator == ">":
            return version > self.version
        if self.operator == ">=":
            return version >= self.version
        if self.operator == "<":
            return version < self.version
        return version <= self.version

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"


def _floor(major: int, minor: int = 0, patch: int = 0) -> SemVer:
    """Lowest possible version of a release line, below any of its pre-releases"""
    return SemVer(major, minor, patch, ("0",))


@dataclass(frozen=True)
class VersionRange:
    """Parsed range: OR of comparator sets, each set an AND of comparators"""
    expression: str
    sets: Tuple[Tuple[Comparator, ...], ...]

    def test(self, version: VersionLike) -> bool:
        parsed = parse_version(version)
        return any(self._test_set(comparators, parsed) for comparators in self.sets)

    @staticmethod
    def _test_set(comparators: Tuple[Comparator, ...], version: SemVer) -> bool:
        if not all(c.test(version) for c in comparators):
            return False
        if not version.is_prerelease:
            return True
        return any(
            c.version.is_prerelease and c.version.release == version.release
            for c in comparators
        )

    def __str__(self) -> str:
        return self.expression


@lru_cache(maxsize=1024)
def parse_range(expression: str) -> VersionRange:
    """
    Parse a range expression.

    Raises:
        InvalidRangeError: On malformed syntax
    """
    if not isinstance(expression, str):
        raise InvalidRangeError(str(expression), "range must be a string")

    text = expression.strip()
    if text in ("", "*", "latest", "x", "X"):
        return VersionRange(expression, ((),))

    sets = []
    for part in text.split("||"):
        part = part.strip()
        if not part:
            raise InvalidRangeError(expression, "empty alternative")
        sets.append(tuple(_parse_set(part, expression)))
    return VersionRange(expression, tuple(sets))


def _parse_set(part: str, expression: str) -> List[Comparator]:
    hyphen = HYPHEN_RE.match(part)
    if hyphen:
        low = _parse_partial(hyphen.group("low"), expression)
        high = _parse_partial(hyphen.group("high"), expression)
        if low[0] or high[0]:
            raise InvalidRangeError(expression, "operators are not allowed in hyphen ranges")
        return _hyphen_comparators(low, high)

    comparators: List[Comparator] = []
    for token in OPERATOR_SPACE_RE.sub(r"\1", part).split():
        comparators.extend(_desugar(_parse_partial(token, expression)))
    return comparators


def _parse_partial(token: str, expression: str):
    match = PARTIAL_RE.match(token)
    if not match:
        raise InvalidRangeError(expression, f"cannot parse '{token}'")

    def num(name):
        value = match.group(name)
        if value is None or value in ("x", "X", "*"):
            return None
        return int(value)

    major, minor, patch = num("major"), num("minor"), num("patch")
    if major is None and (minor is not None or patch is not None):
        raise InvalidRangeError(expression, f"wildcard major with fixed minor/patch in '{token}'")
    if minor is None and patch is not None:
        raise InvalidRangeError(expression, f"wildcard minor with fixed patch in '{token}'")
    prerelease = match.group("prerelease")
    if prerelease and patch is None:
        raise InvalidRangeError(expression, f"pre-release tag on partial version '{token}'")
    prerelease_parts = tuple(prerelease.split(".")) if prerelease else ()
    return (match.group("op") or "", major, minor, patch, prerelease_parts)


def _desugar(partial) -> List[Comparator]:
    op, major, minor, patch, prerelease = partial

    if major is None:
        # Any version; a bound with an operator on "*" is still "any" except for < and >
        if op in ("<", ">"):
            return [Comparator("<", _floor(0))]
        return []

    full = minor is not None and patch is not None
    exact = SemVer(major, minor or 0, patch or 0, prerelease)
    # Partial lower bounds start at the plain release, never at a pre-release
    lower_bound = exact if full else SemVer(major, minor or 0, 0)

    if op in ("", "="):
        if full:
            return [Comparator("=", exact)]
        if minor is None:
            return [Comparator(">=", lower_bound), Comparator("<", _floor(major + 1))]
        return [Comparator(">=", lower_bound), Comparator("<", _floor(major, minor + 1))]

    if op == "^":
        lower = Comparator(">=", lower_bound)
        if major > 0 or minor is None:
            upper = _floor(major + 1)
        elif minor > 0 or patch is None:
            upper = _floor(0, minor + 1)
        else:
            upper = _floor(0, 0, patch + 1)
        return [lower, Comparator("<", upper)]

    if op in ("~", "~>"):
        lower = Comparator(">=", lower_bound)
        if minor is None:
            return [lower, Comparator("<", _floor(major + 1))]
        return [lower, Comparator("<", _floor(major, minor + 1))]

    if op == ">":
        if full:
            return [Comparator(">", exact)]
        if minor is None:
            return [Comparator(">=", SemVer(major + 1, 0, 0))]
        return [Comparator(">=", SemVer(major, minor + 1, 0))]

    if op == ">=":
        return [Comparator(">=", lower_bound)]

    if op == "<":
        return [Comparator("<", exact if full else _floor(major, minor or 0))]

    # <=
    if full:
        return [Comparator("<=", exact)]
    if minor is None:
        return [Comparator("<", _floor(major + 1))]
    return [Comparator("<", _floor(major, minor + 1))]


def _hyphen_comparators(low, high) -> List[Comparator]:
    comparators = []
    _, l_major, l_minor, l_patch, l_pre = low
    if l_major is not None:
        comparators.append(Comparator(">=", SemVer(l_major, l_minor or 0, l_patch or 0, l_pre)))

    _, h_major, h_minor, h_patch, h_pre = high
    if h_major is None:
        return comparators
    if h_minor is None:
        comparators.append(Comparator("<", _floor(h_major + 1)))
    elif h_patch is None:
        comparators.append(Comparator("<", _floor(h_major, h_minor + 1)))
    else:
        comparators.append(Comparator("<=", SemVer(h_major, h_minor, h_patch, h_pre)))
    return comparators


def satisfies(version: VersionLike, range_expression: Union[str, VersionRange]) -> bool:
    """
    Check whether a version satisfies a range expression.

    Raises:
        InvalidRangeError: On malformed range syntax
        InvalidVersionError: On malformed version
    """
    version_range = range_expression if isinstance(range_expression, VersionRange) else parse_range(range_expression)
    return version_range.test(version)


def satisfies_all(version: VersionLike, ranges: Iterable[Union[str, VersionRange]]) -> bool:
    """Check a version against every range (an empty set accepts anything)"""
    return all(satisfies(version, r) for r in ranges)


def resolve_highest(
    candidates: Iterable[VersionLike],
    range_expression: Union[str, VersionRange, Iterable[str]]
) -> Optional[str]:
    """
    Pick the highest candidate satisfying the range (or every range of a list).

    Invalid candidate versions are skipped.

    Returns:
        Version string or None if nothing satisfies
    """
    if isinstance(range_expression, (str, VersionRange)):
        ranges = [range_expression]
    else:
        ranges = list(range_expression)
    parsed_ranges = [r if isinstance(r, VersionRange) else parse_range(r) for r in ranges]

    best: Optional[SemVer] = None
    for candidate in candidates:
        try:
            version = parse_version(candidate)
        except InvalidVersionError:
            logger.debug(f"Skipping invalid candidate version: {candidate}")
            continue
        if all(r.test(version) for r in parsed_ranges) and (best is None or version > best):
            best = version
    return str(best) if best is not None else None


def compare_versions(version1: VersionLike, version2: VersionLike) -> int:
    """
    Compare two semantic versions

    Returns:
        -1 if version1 < version2
         0 if version1 == version2
         1 if version1 > version2
    """
    v1, v2 = parse_version(version1), parse_version(version2)
    if v1 < v2:
        return -1
    if v1 > v2:
        return 1
    return 0


def compatibility_level(from_version: VersionLike, to_version: VersionLike) -> CompatibilityLevel:
    """Determine compatibility between an installed and a target version"""
    source, target = parse_version(from_version), parse_version(to_version)

    if source == target:
        return CompatibilityLevel.FULLY_COMPATIBLE
    if target < source:
        return CompatibilityLevel.INCOMPATIBLE
    if source.major != target.major:
        return CompatibilityLevel.BREAKING_CHANGES
    if source.minor != target.minor:
        return CompatibilityLevel.BACKWARD_COMPATIBLE
    return CompatibilityLevel.FULLY_COMPATIBLE


def impact_level(from_version: VersionLike, to_version: VersionLike) -> ImpactLevel:
    """Map a version change onto an upgrade impact level"""
    if parse_version(from_version) == parse_version(to_version):
        return ImpactLevel.NONE
    return {
        CompatibilityLevel.FULLY_COMPATIBLE: ImpactLevel.LOW,
        CompatibilityLevel.BACKWARD_COMPATIBLE: ImpactLevel.MEDIUM,
        CompatibilityLevel.BREAKING_CHANGES: ImpactLevel.HIGH,
        CompatibilityLevel.INCOMPATIBLE: ImpactLevel.CRITICAL,
    }[compatibility_level(from_version, to_version)]
