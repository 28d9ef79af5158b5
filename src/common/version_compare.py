"""Version comparison helpers for dotted version strings."""

import re
from typing import Optional, Tuple

from packaging.version import InvalidVersion, Version


def parse_version(value: str) -> Optional[Version]:
    """Parse a version string, returning None on failure."""
    if not value:
        return None
    value = value.strip()
    try:
        return Version(value)
    except InvalidVersion:
        # Try stripping leading 'v'
        if value[:1] in ('v', 'V'):
            try:
                return Version(value[1:])
            except InvalidVersion:
                pass
    return None


def _numeric_parts(value: str) -> Tuple[int, ...]:
    parts = [int(p) for p in re.findall(r'\d+', value or '')]
    # Trailing zeros do not change ordering: 6.0 == 6.0.0
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    """
    Compare two version strings.

    Uses PEP 440 ordering where both sides parse, and falls back to
    comparing the numeric components in order (so "6.10" > "6.9").

    Returns:
        -1 if left < right, 0 if equal, 1 if left > right
    """
    left_v = parse_version(left)
    right_v = parse_version(right)
    if left_v is not None and right_v is not None:
        if left_v < right_v:
            return -1
        return 1 if left_v > right_v else 0

    left_t = _numeric_parts(left)
    right_t = _numeric_parts(right)
    if left_t < right_t:
        return -1
    return 1 if left_t > right_t else 0


def is_newer(current: str, candidate: str) -> bool:
    """Return True if candidate is newer than current."""
    if not candidate:
        return False
    if not current:
        return True
    return compare_versions(candidate, current) > 0
