"""Update policies.

A policy answers a single question: given the tag a resource currently runs
and a candidate tag, is the candidate an update worth applying?

Policies are declared as plain strings ('all', 'major', 'minor', 'patch',
'force', 'glob:<pattern>', 'regexp:<pattern>', 'never') on labels,
annotations or in the configuration file.  A declaration that cannot be
parsed never stops the controller; it is logged and degrades to a policy
that never updates.
"""

import enum
import fnmatch
import logging
import re
import threading
from abc import ABC, abstractmethod
from functools import cmp_to_key
from typing import Dict, List, Mapping, Optional

from version_utils import VersionError, has_version_parts, parse_version, semver_sort

logger = logging.getLogger(__name__)

# Label / annotation keys
POLICY_LABEL = 'tagwatch.io/policy'
POLICY_LEGACY_LABEL = 'tagwatch.observer/policy'
MATCH_TAG_LABEL = 'tagwatch.io/match-tag'
MATCH_TAG_LEGACY_LABEL = 'tagwatch.io/force-match'
MATCH_PRE_RELEASE_ANNOTATION = 'tagwatch.io/matchPreRelease'


class PolicyType(enum.Enum):
    NONE = 'none'
    SEMVER = 'semver'
    FORCE = 'force'
    GLOB = 'glob'
    REGEXP = 'regexp'


class SemverScope(enum.Enum):
    ALL = 'all'
    MAJOR = 'major'
    MINOR = 'minor'
    PATCH = 'patch'


class PolicyError(ValueError):
    """Raised for an unparseable glob or regexp policy declaration."""


def validate_regex(pattern: str, timeout: float = 2.0) -> re.Pattern:
    """Compile a regex pattern and test it against a short string to detect ReDoS.

    Raises ValueError on invalid pattern or catastrophic backtracking.
    """
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise PolicyError(f"Invalid regex pattern '{pattern}': {e}")

    # Test-match against a string that can trigger catastrophic backtracking
    test_string = "a" * 100
    error = [None]

    def _run():
        try:
            compiled.match(test_string)
        except Exception as e:
            error[0] = e

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    t.join(timeout=timeout)

    if t.is_alive():
        raise PolicyError(
            f"Regex pattern '{pattern}' is too expensive (possible ReDoS). "
            f"Simplify the pattern to avoid catastrophic backtracking."
        )
    if error[0]:
        raise PolicyError(f"Regex pattern '{pattern}' failed test: {error[0]}")

    return compiled


class Policy(ABC):
    """Decides whether a candidate tag is an update over the current one."""

    @abstractmethod
    def should_update(self, current: str, candidate: str) -> bool:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def type(self) -> PolicyType:
        ...

    def filter(self, tags: List[str]) -> List[str]:
        """Return the tags this policy would consider, best candidate first."""
        return list(tags)

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self):
        return hash((type(self), self.name))

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class NonePolicy(Policy):
    name = 'never'
    type = PolicyType.NONE

    def should_update(self, current: str, candidate: str) -> bool:
        return False

    def filter(self, tags: List[str]) -> List[str]:
        return []


class ForcePolicy(Policy):
    """Always update; with match_tag only when the tag stays the same.

    match_tag is meant for moving tags such as 'latest' or 'master' where
    only the digest changes.
    """
    name = 'force'
    type = PolicyType.FORCE

    def __init__(self, match_tag: bool = False):
        self.match_tag = match_tag

    def should_update(self, current: str, candidate: str) -> bool:
        if self.match_tag and current != candidate:
            return False
        return True


class GlobPolicy(Policy):
    type = PolicyType.GLOB

    def __init__(self, policy: str):
        prefix, sep, pattern = policy.partition(':')
        if not sep or prefix != 'glob' or not pattern:
            raise PolicyError(f"invalid glob policy: {policy}")
        self.policy = policy
        self.pattern = pattern

    @property
    def name(self) -> str:
        return self.policy

    def should_update(self, current: str, candidate: str) -> bool:
        return fnmatch.fnmatchcase(candidate, self.pattern) and candidate > current

    def filter(self, tags: List[str]) -> List[str]:
        matched = [t for t in tags if fnmatch.fnmatchcase(t, self.pattern)]
        return sorted(matched, reverse=True)


def _compare_tags(a: str, b: str) -> int:
    """Order versions semantically, anything else lexically."""
    try:
        return parse_version(a).compare(parse_version(b))
    except VersionError:
        return (a > b) - (a < b)


class RegexpPolicy(Policy):
    """Matches candidates against a regular expression.

    When the pattern defines a named group 'compare', filter() ranks tags by
    that group instead of the whole tag.
    """
    type = PolicyType.REGEXP

    def __init__(self, policy: str):
        prefix, sep, pattern = policy.partition(':')
        if not sep or prefix != 'regexp':
            raise PolicyError(f"invalid regexp policy: {policy}")
        self.policy = policy
        self.regexp = validate_regex(pattern)

    @property
    def name(self) -> str:
        return self.policy

    def __eq__(self, other):
        return isinstance(other, RegexpPolicy) and self.policy == other.policy

    __hash__ = Policy.__hash__

    def should_update(self, current: str, candidate: str) -> bool:
        return self.regexp.search(candidate) is not None

    def filter(self, tags: List[str]) -> List[str]:
        matched = [t for t in tags if self.regexp.search(t)]
        return sorted(matched, key=cmp_to_key(lambda a, b: _compare_tags(self._rank(a), self._rank(b))),
                      reverse=True)

    def _rank(self, tag: str) -> str:
        if 'compare' in self.regexp.groupindex:
            return self.regexp.search(tag).group('compare') or ''
        return tag


class SemverPolicy(Policy):
    type = PolicyType.SEMVER

    def __init__(self, scope: SemverScope, match_pre_release: bool = True):
        self.scope = scope
        self.match_pre_release = match_pre_release

    @property
    def name(self) -> str:
        return self.scope.value

    def should_update(self, current: str, candidate: str) -> bool:
        """
        Raises:
            VersionError: if either tag is not a semantic version; callers skip
                the candidate and carry on with the rest.
        """
        if current == 'latest':
            return True

        if not has_version_parts(candidate):
            raise VersionError(f"no major.minor.patch elements found in '{candidate}'")

        try:
            current_version = parse_version(current)
        except VersionError as e:
            raise VersionError(f"failed to parse current version: {e}")
        try:
            new_version = parse_version(candidate)
        except VersionError as e:
            raise VersionError(f"failed to parse new version: {e}")

        # A pre-release channel only advances within itself, unless the
        # policy is 'all' or pre-release matching was switched off
        if (current_version.pre_release != new_version.pre_release
                and self.scope != SemverScope.ALL and self.match_pre_release):
            return False

        if not current_version < new_version:
            return False

        if self.scope in (SemverScope.ALL, SemverScope.MAJOR):
            return True
        if self.scope == SemverScope.MINOR:
            return new_version.major == current_version.major
        return (new_version.major == current_version.major
                and new_version.minor == current_version.minor)

    def filter(self, tags: List[str]) -> List[str]:
        return semver_sort(tags)


# ---------------------------------------------------------------------------
# Tag collapsing
# ---------------------------------------------------------------------------

_ALL = SemverPolicy(SemverScope.ALL)


def collapse(tags: List[str]) -> List[str]:
    """Reduce tags to the highest version of each pre-release channel.

    Non-version tags are dropped and the result is sorted highest first, so
    collapse(collapse(tags)) == collapse(tags).
    """
    best: Dict[str, str] = {}
    for tag in semver_sort(tags):
        channel = parse_version(tag).pre_release
        held = best.get(channel)
        if held is None or _ALL.should_update(held, tag):
            best[channel] = tag

    return sorted(best.values(),
                  key=cmp_to_key(lambda a, b: parse_version(a).compare(parse_version(b))),
                  reverse=True)


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

def get_policy(policy_name: str, match_tag: bool = False, match_pre_release: bool = True) -> Policy:
    """Build a policy from its declaration string. Never raises."""
    policy_name = (policy_name or '').strip()

    if policy_name.startswith('glob:'):
        try:
            return GlobPolicy(policy_name)
        except PolicyError as e:
            logger.error("failed to parse glob policy %r, check your configuration: %s", policy_name, e)
            return NonePolicy()

    if policy_name.startswith('regexp:'):
        try:
            return RegexpPolicy(policy_name)
        except PolicyError as e:
            logger.error("failed to parse regexp policy %r, check your configuration: %s", policy_name, e)
            return NonePolicy()

    if policy_name in ('all', 'major', 'minor', 'patch'):
        return SemverPolicy(SemverScope(policy_name), match_pre_release)
    if policy_name == 'force':
        return ForcePolicy(match_tag)
    if policy_name in ('', 'never'):
        return NonePolicy()

    logger.warning("unknown policy '%s', please check your configuration", policy_name)
    return NonePolicy()


def _policy_name(labels: Mapping[str, str]) -> Optional[str]:
    if POLICY_LABEL in labels:
        return labels[POLICY_LABEL]
    return labels.get(POLICY_LEGACY_LABEL)


def _match_tag(labels: Mapping[str, str]) -> bool:
    for key in (MATCH_TAG_LABEL, MATCH_TAG_LEGACY_LABEL):
        if key in labels:
            return labels[key] == 'true'
    return False


def _match_pre_release(labels: Mapping[str, str]) -> bool:
    if MATCH_PRE_RELEASE_ANNOTATION in labels:
        return labels[MATCH_PRE_RELEASE_ANNOTATION] == 'true'
    return True


def get_policy_from_labels(labels: Optional[Mapping[str, str]],
                           annotations: Optional[Mapping[str, str]] = None) -> Policy:
    """Read the policy from annotations, falling back to labels.

    The match flags are read from the same mapping the policy came from.
    """
    for source in (annotations or {}, labels or {}):
        name = _policy_name(source)
        if name is not None:
            return get_policy(name, _match_tag(source), _match_pre_release(source))
    return NonePolicy()
