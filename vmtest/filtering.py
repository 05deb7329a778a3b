"""
Test selection for vmtest.

Narrows the registry down to the tests that should run for a given
platform, distro, channel, offering, board and OS version.
"""

import functools
import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from packaging.version import Version

from .models import FilterCriteria, TestDescriptor, is_zero_version


# Platforms on which the board selects the machine architecture.
BOARD_PLATFORMS = frozenset({"qemu", "equinixmetal", "aws", "azure"})

DEFAULT_ARCH = "amd64"


class FilterError(Exception):
    """Raised for malformed name patterns."""
    pass


def architecture(platform: str, board: str = "") -> str:
    """
    Architecture of machines created on ``platform``.

    ``arm64-usr`` on qemu gives ``arm64``; platforms that ignore the board
    are always ``amd64``.
    """
    if platform in BOARD_PLATFORMS and board:
        return board.split("-", 1)[0]
    return DEFAULT_ARCH


def _class_char(pattern: str, i: int) -> Tuple[str, int]:
    if i >= len(pattern) or pattern[i] in "-]":
        raise FilterError(f"syntax error in pattern {pattern!r}")
    if pattern[i] == "\\":
        i += 1
        if i >= len(pattern):
            raise FilterError(f"syntax error in pattern {pattern!r}")
    return pattern[i], i + 1


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> "re.Pattern[str]":
    """
    Translate a path-style glob into a regex.

    ``*`` and ``?`` never match ``/``; ``[...]`` is a character class with
    ``^`` negation and ``lo-hi`` ranges; ``\\`` escapes the next character.
    """
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "\\":
            if i >= n:
                raise FilterError(f"syntax error in pattern {pattern!r}")
            out.append(re.escape(pattern[i]))
            i += 1
        elif c == "[":
            negate = i < n and pattern[i] == "^"
            if negate:
                i += 1
            ranges: List[str] = []
            count = 0
            while True:
                if i >= n:
                    raise FilterError(f"syntax error in pattern {pattern!r}")
                if pattern[i] == "]" and count > 0:
                    i += 1
                    break
                lo, i = _class_char(pattern, i)
                hi = lo
                if i < n and pattern[i] == "-":
                    hi, i = _class_char(pattern, i + 1)
                count += 1
                if lo <= hi:
                    ranges.append(f"{re.escape(lo)}-{re.escape(hi)}")
            if ranges:
                out.append("[" + ("^" if negate else "") + "".join(ranges) + "]")
            else:
                out.append("[\\s\\S]" if negate else "(?!)")
        else:
            out.append(re.escape(c))
    return re.compile("".join(out), re.DOTALL)


def match_pattern(pattern: str, name: str) -> bool:
    """
    True if ``name`` matches the glob ``pattern`` in full.

    Raises:
        FilterError: the pattern is malformed.
    """
    return _compile(pattern).fullmatch(name) is not None


def version_outside_range(
    version: Optional[Version],
    min_version: Optional[Version],
    end_version: Optional[Version],
) -> bool:
    """
    True if ``version`` lies outside ``[min_version, end_version)``.

    An unknown (zero) version is never outside; an unset bound is open.
    """
    if is_zero_version(version):
        return False
    if min_version is not None and version < min_version:
        return True
    if not is_zero_version(end_version) and version >= end_version:
        return True
    return False


def is_allowed(
    item: str,
    include: Sequence[str],
    exclude: Sequence[str],
) -> Tuple[bool, bool]:
    """
    Two-tier include/exclude check.

    Returns:
        (allowed, excluded). An empty include list allows everything; any
        exclude hit forces ``(False, True)``.
    """
    allowed, excluded = False, False
    for i in include:
        if i == item:
            allowed = True
            break
    if not include:
        allowed = True
    for e in exclude:
        if e == item:
            allowed = False
            excluded = True
    return allowed, excluded


def _platform_allowed(test: TestDescriptor, platform: str, board: str) -> bool:
    candidates = [platform]
    if platform == "qemu-unpriv":
        candidates.append("qemu")

    allowed = False
    for candidate in candidates:
        platform_ok, excluded = is_allowed(
            candidate, test.platforms, test.exclude_platforms,
        )
        # An excluded candidate ends the search, even if an earlier one passed.
        if excluded:
            return False
        arch_ok, _ = is_allowed(architecture(candidate, board), test.architectures, ())
        allowed = allowed or (platform_ok and arch_ok)
    return allowed


def filter_tests(
    tests: Mapping[str, TestDescriptor],
    criteria: FilterCriteria,
) -> Dict[str, TestDescriptor]:
    """
    Select the tests to run.

    Args:
        tests: Candidate tests, keyed by name
        criteria: Patterns and the run's platform/distro/channel/offering/
            board/version

    Returns:
        The retained tests, keyed by name.

    Raises:
        FilterError: one of the patterns is malformed.
    """
    patterns = list(criteria.patterns)
    for pattern in patterns:
        _compile(pattern)

    selected: Dict[str, TestDescriptor] = {}
    for name, test in tests.items():
        if not any(match_pattern(p, test.name) for p in patterns):
            continue

        # An exact name pins the test and bypasses its version range.
        if test.name not in patterns and version_outside_range(
            criteria.version, test.min_version, test.end_version,
        ):
            continue

        if not _platform_allowed(test, criteria.platform, criteria.board):
            continue

        allowed, excluded = is_allowed(criteria.distro, test.distros, test.exclude_distros)
        if not allowed or excluded:
            continue

        allowed, excluded = is_allowed(criteria.channel, test.channels, test.exclude_channels)
        if not allowed or excluded:
            continue

        allowed, excluded = is_allowed(criteria.offering, test.offerings, test.exclude_offerings)
        if not allowed or excluded:
            continue

        if test.skip_func is not None and not is_zero_version(criteria.version):
            arch = architecture(criteria.platform, criteria.board)
            if test.skip_func(criteria.version, criteria.channel, arch, criteria.platform):
                continue

        selected[name] = test

    return selected


def match_names(
    tests: Mapping[str, TestDescriptor],
    patterns: Sequence[str],
) -> Dict[str, TestDescriptor]:
    """
    Tests whose name matches one of ``patterns``, ignoring every other
    criterion.

    Raises:
        FilterError: one of the patterns is malformed.
    """
    patterns = list(patterns)
    for pattern in patterns:
        _compile(pattern)
    return {
        name: test for name, test in tests.items()
        if any(match_pattern(p, test.name) for p in patterns)
    }
