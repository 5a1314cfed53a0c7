"""Version parsing utilities for image tags.

Parses tags as loose semantic versions (an optional leading 'v', optional
minor and patch numbers, pre-release and build metadata) and orders them
following the semver precedence rules.
"""

import re
from dataclasses import dataclass
from functools import cmp_to_key, total_ordering
from typing import List, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_VERSION_RE = re.compile(
    r'^v?([0-9]+)(\.[0-9]+)?(\.[0-9]+)?'
    r'(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
    r'(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$'
)


class VersionError(ValueError):
    """Raised when a tag cannot be parsed as a semantic version."""


# ---------------------------------------------------------------------------
# Internal Helper Functions
# ---------------------------------------------------------------------------

def _compare_identifier(a: str, b: str) -> int:
    """Compare two dot-separated pre-release identifiers.

    Numeric identifiers compare numerically and always have lower precedence
    than alphanumeric ones, which compare in ASCII order.
    """
    a_num, b_num = a.isdigit(), b.isdigit()
    if a_num and b_num:
        return (int(a) > int(b)) - (int(a) < int(b))
    if a_num:
        return -1
    if b_num:
        return 1
    return (a > b) - (a < b)


def _compare_pre_release(a: str, b: str) -> int:
    if a == b:
        return 0
    # A version without a pre-release has higher precedence
    if not a:
        return 1
    if not b:
        return -1

    a_parts = a.split('.')
    b_parts = b.split('.')
    for x, y in zip(a_parts, b_parts):
        result = _compare_identifier(x, y)
        if result:
            return result

    return (len(a_parts) > len(b_parts)) - (len(a_parts) < len(b_parts))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A parsed tag. Build metadata is kept but ignored for ordering."""
    major: int
    minor: int
    patch: int
    pre_release: str
    metadata: str
    original: str

    def compare(self, other: 'Version') -> int:
        for a, b in ((self.major, other.major),
                     (self.minor, other.minor),
                     (self.patch, other.patch)):
            if a != b:
                return 1 if a > b else -1
        return _compare_pre_release(self.pre_release, other.pre_release)

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self):
        return hash((self.major, self.minor, self.patch, self.pre_release))

    def __str__(self):
        return self.original


def parse_version(tag: str) -> Version:
    """Parse a tag such as '1.2', 'v1.4.5-rc.1' or '2.0.0+build.7'.

    Raises:
        VersionError: if the tag is not a semantic version
    """
    match = _VERSION_RE.match(tag or '')
    if not match:
        raise VersionError(f"invalid semantic version: '{tag}'")

    major, minor, patch, pre_release, metadata = match.groups()
    return Version(
        major=int(major),
        minor=int(minor[1:]) if minor else 0,
        patch=int(patch[1:]) if patch else 0,
        pre_release=pre_release or '',
        metadata=metadata or '',
        original=tag,
    )


def is_version(tag: str) -> bool:
    try:
        parse_version(tag)
    except VersionError:
        return False
    return True


def has_version_parts(tag: str) -> bool:
    """True when the tag has at least a major and a minor element."""
    return len(tag.split('.', 2)) in (2, 3)


def pre_release_of(tag: str) -> Optional[str]:
    """Return the pre-release identifier of a tag, or None if it is not a version."""
    try:
        return parse_version(tag).pre_release
    except VersionError:
        return None


def semver_sort(tags: List[str]) -> List[str]:
    """Keep only X.Y[.Z] version tags and sort them, highest first."""
    versions = []
    for tag in tags:
        if not has_version_parts(tag):
            continue
        try:
            versions.append(parse_version(tag))
        except VersionError:
            continue

    versions.sort(key=cmp_to_key(lambda a, b: a.compare(b)), reverse=True)
    return [v.original for v in versions]


def lowest(tags: List[str]) -> str:
    """Return the lowest version among the tags, '' when none parses."""
    ordered = semver_sort(tags)
    return ordered[-1] if ordered else ''
