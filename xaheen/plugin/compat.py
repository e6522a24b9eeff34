"""
Host Compatibility Resolver.

This module checks a plugin's declared host-version range against the
running CLI version.

Key features:
- Version parsing via packaging (leading ``v`` accepted)
- npm-style ranges: ``^1.2.3``, ``~1.2.3``, ``1.x``, ``>=1.0.0 <2.0.0``, ``a || b``
- Python-style ``==`` and ``~=`` constraints
- Force downgrades an incompatibility to a warning
"""

import logging
import re
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from xaheen.errors import IncompatibleVersionError, ValidationError

logger = logging.getLogger(__name__)

_COMPARATOR_RE = re.compile(r"^(\^|~=|~|>=|<=|>|<|==|=)?\s*(.+)$")
_WILDCARDS = ("x", "X", "*")


def parse_version(version: str) -> Version:
    """
    Parse a version string.

    Args:
        version: Version string (e.g., "2.0.0", "v1.4.2", "2.1.0-beta.1")

    Returns:
        packaging Version

    Raises:
        ValidationError: If the version string is invalid
    """
    if not isinstance(version, str) or not version.strip():
        raise ValidationError(f"Invalid version: {version!r}")
    text = version.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion as e:
        raise ValidationError(f"Invalid version: {version!r}") from e


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    a, b = parse_version(v1), parse_version(v2)
    return (a > b) - (a < b)


@dataclass(frozen=True)
class Comparator:
    """
    A single version comparison.

    Attributes:
        operator: One of >, >=, <, <=, ==
        version: Version bound
    """

    operator: str
    version: Version

    def matches(self, version: Version) -> bool:
        if self.operator == "==":
            return version == self.version
        if self.operator == ">=":
            return version >= self.version
        if self.operator == ">":
            return version > self.version
        if self.operator == "<=":
            return version <= self.version
        if self.operator == "<":
            return version < self.version
        raise ValidationError(f"Unknown version operator: {self.operator}")

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"


@dataclass(frozen=True)
class VersionRange:
    """
    A parsed host-version range.

    Attributes:
        raw: Range as declared by the plugin
        alternatives: OR-ed groups of AND-ed comparators; empty means any version
    """

    raw: str
    alternatives: tuple[tuple[Comparator, ...], ...]

    def contains(self, version: str | Version) -> bool:
        """Check if a version satisfies this range."""
        if isinstance(version, str):
            version = parse_version(version)
        if not self.alternatives:
            return True
        return any(
            all(c.matches(version) for c in group) for group in self.alternatives
        )

    def __str__(self) -> str:
        return self.raw


def _partial(text: str, original: str) -> list[int | None]:
    """Split ``1.2.x`` into [1, 2, None]; missing parts are None."""
    parts: list[int | None] = []
    release, _, _ = text.partition("-")
    for piece in release.split(".")[:3]:
        if piece in _WILDCARDS:
            parts.append(None)
            continue
        # "3rc1" contributes 3; the pre-release is kept by parse_version
        digits = re.match(r"^\d+", piece)
        if not digits:
            raise ValidationError(f"Invalid version range: {original!r}")
        parts.append(int(digits.group(0)))
    while len(parts) < 3:
        parts.append(None)
    # Anything after a wildcard is a wildcard too
    if None in parts:
        first = parts.index(None)
        parts = parts[:first] + [None] * (3 - first)
    return parts


def _v(major: int, minor: int = 0, patch: int = 0) -> Version:
    return Version(f"{major}.{minor}.{patch}")


def _expand(operator: str, operand: str, original: str) -> list[Comparator]:
    """Translate one range token into plain comparators."""
    if operand in _WILDCARDS:
        return []

    parts = _partial(operand, original)
    major, minor, patch = parts
    is_full = patch is not None
    if major is None:
        return []

    if operator in ("", "=", "=="):
        if is_full:
            return [Comparator("==", parse_version(operand))]
        # x-range: 1.x -> >=1.0.0 <2.0.0 ; 1.2.x -> >=1.2.0 <1.3.0
        if minor is None:
            return [Comparator(">=", _v(major)), Comparator("<", _v(major + 1))]
        return [Comparator(">=", _v(major, minor)), Comparator("<", _v(major, minor + 1))]

    if operator == "^":
        low = parse_version(operand) if is_full else _v(major, minor or 0)
        if major > 0 or minor is None:
            high = _v(major + 1)
        elif minor > 0 or patch is None:
            high = _v(0, minor + 1)
        else:
            high = _v(0, 0, patch + 1)
        return [Comparator(">=", low), Comparator("<", high)]

    if operator == "~":
        low = parse_version(operand) if is_full else _v(major, minor or 0)
        high = _v(major + 1) if minor is None else _v(major, minor + 1)
        return [Comparator(">=", low), Comparator("<", high)]

    if operator == "~=":
        # ~=1.2.3 -> >=1.2.3 <1.3.0 ; ~=1.2 -> >=1.2 <2.0
        if minor is None:
            raise ValidationError(f"Invalid version for ~= operator: {operand!r}")
        low = parse_version(operand) if is_full else _v(major, minor)
        high = _v(major, minor + 1) if is_full else _v(major + 1)
        return [Comparator(">=", low), Comparator("<", high)]

    # Plain comparators with partial operands: >1.2 means >=1.3.0, <=1.2 means <1.3.0
    if not is_full:
        bump = _v(major + 1) if minor is None else _v(major, minor + 1)
        floor = _v(major, minor or 0)
        return {
            ">": [Comparator(">=", bump)],
            ">=": [Comparator(">=", floor)],
            "<": [Comparator("<", floor)],
            "<=": [Comparator("<", bump)],
        }[operator]
    return [Comparator(operator, parse_version(operand))]


def parse_range(range_str: str) -> VersionRange:
    """
    Parse a host-version range.

    Args:
        range_str: Range string (e.g., "^2.0.0", ">=1.0.0 <3.0.0", "1.x || 2.x")

    Returns:
        VersionRange object

    Raises:
        ValidationError: If the range string is invalid
    """
    if range_str is None:
        raise ValidationError("Invalid version range: None")
    raw = range_str.strip()
    if raw in ("", "*", "latest"):
        return VersionRange(raw=raw or "*", alternatives=())

    alternatives: list[tuple[Comparator, ...]] = []
    for group in raw.split("||"):
        # Allow "1.0.0 - 2.0.0" hyphen ranges
        hyphen = re.match(r"^\s*(\S+)\s+-\s+(\S+)\s*$", group)
        if hyphen:
            group = f">={hyphen.group(1)} <={hyphen.group(2)}"

        # Join operators separated from their operand (">= 1.0.0")
        tokens = re.sub(r"(\^|~=|~|>=|<=|>|<|==|=)\s+", r"\1", group.strip()).split()
        if not tokens:
            raise ValidationError(f"Invalid version range: {range_str!r}")

        comparators: list[Comparator] = []
        for token in tokens:
            match = _COMPARATOR_RE.match(token)
            if not match:
                raise ValidationError(f"Invalid version range: {range_str!r}")
            operator, operand = match.group(1) or "", match.group(2)
            if operand[:1] in ("v", "V"):
                operand = operand[1:]
            comparators.extend(_expand(operator, operand, range_str))

        if not comparators:
            return VersionRange(raw=raw, alternatives=())
        alternatives.append(tuple(comparators))

    return VersionRange(raw=raw, alternatives=tuple(alternatives))


@dataclass
class CompatibilityResult:
    """
    Outcome of a compatibility check.

    Attributes:
        compatible: Whether the host satisfies the range
        forced: Whether an incompatibility was bypassed with force
        warning: Message to surface when forced
    """

    compatible: bool
    forced: bool = False
    warning: str | None = None


def check_compatibility(
    plugin_name: str,
    host_range: str,
    host_version: str,
    force: bool = False,
) -> CompatibilityResult:
    """
    Gate a plugin on the running host version.

    Args:
        plugin_name: Plugin name (for messages)
        host_range: Range the plugin declares
        host_version: Running CLI version
        force: Proceed despite an incompatibility

    Returns:
        CompatibilityResult

    Raises:
        ValidationError: If the range or host version is invalid
        IncompatibleVersionError: If incompatible and not forced
    """
    version_range = parse_range(host_range)
    host = parse_version(host_version)

    if version_range.contains(host):
        return CompatibilityResult(compatible=True)

    message = (
        f"incompatible version: {plugin_name} requires xaheen {version_range}, "
        f"running {host_version}"
    )
    if not force:
        raise IncompatibleVersionError(message)

    logger.info("%s (forced)", message)
    return CompatibilityResult(
        compatible=False,
        forced=True,
        warning=f"{message}; installing anyway because --force was given",
    )
