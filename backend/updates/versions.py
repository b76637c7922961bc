"""
Tag-level version heuristics.

Digest comparison is the primary update signal. When the digest is unchanged
and the local tag looks like a version, the registry's tag list is searched
for a newer tag of the same shape (same format, same minor/patch presence).

Supported formats, tried in order:
    semantic  v1.2.3 / 1.2.3
    date      2024.01.15
    numeric   14 / 14.2 / 14.2.1
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from updates.reference import parse_reference

logger = logging.getLogger(__name__)

SEMANTIC_VERSION_REGEX = re.compile(r"^(?:v)?(\d+)\.(\d+)\.(\d+)$")
DATE_VERSION_REGEX = re.compile(r"^(\d{4})\.(\d{1,2})\.(\d{1,2})$")
NUMERIC_VERSION_REGEX = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?$")

FORMAT_SEMANTIC = "semantic"
FORMAT_DATE = "date"
FORMAT_NUMERIC = "numeric"

# Floating tags that never take part in tag-level detection
SPECIAL_TAGS = frozenset({
    "latest", "stable", "unstable", "dev", "devel", "development",
    "test", "testing", "prod", "production", "main", "master",
    "stage", "staging", "canary", "nightly", "edge", "next",
})


@dataclass(frozen=True)
class VersionInfo:
    """Parsed version tag. `tag` keeps the original spelling (e.g. "v1.2.3")."""
    tag: str
    format: str
    major: int
    minor: Optional[int] = None
    patch: Optional[int] = None

    def same_structure(self, other: 'VersionInfo') -> bool:
        """Minor and patch presence must match between versions."""
        return (self.format == other.format
                and (self.minor is None) == (other.minor is None)
                and (self.patch is None) == (other.patch is None))

    def is_newer_than(self, current: 'VersionInfo') -> bool:
        if self.major != current.major:
            return self.major > current.major
        if self.minor is not None and current.minor is not None and self.minor != current.minor:
            return self.minor > current.minor
        if self.patch is not None and current.patch is not None:
            return self.patch > current.patch
        return False


def is_special_tag(tag: str) -> bool:
    return tag in SPECIAL_TAGS


def parse_version(tag: str) -> Optional[VersionInfo]:
    """Parse a tag into a VersionInfo, or None if it isn't version-like."""
    if not tag:
        return None

    match = SEMANTIC_VERSION_REGEX.match(tag)
    if match:
        major, minor, patch = (int(g) for g in match.groups())
        return VersionInfo(tag, FORMAT_SEMANTIC, major, minor, patch)

    match = DATE_VERSION_REGEX.match(tag)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return VersionInfo(tag, FORMAT_DATE, year, month, day)

    match = NUMERIC_VERSION_REGEX.match(tag)
    if match:
        major, minor, patch = match.groups()
        return VersionInfo(
            tag,
            FORMAT_NUMERIC,
            int(major),
            int(minor) if minor is not None else None,
            int(patch) if patch is not None else None,
        )

    return None


def find_latest_compatible(current: VersionInfo, tags: Iterable[str]) -> Optional[VersionInfo]:
    """
    Newest tag with the same format and structure as `current`.

    The result may be `current` itself (or older) when nothing newer exists;
    callers check is_newer_than().
    """
    latest: Optional[VersionInfo] = None
    for tag in tags:
        candidate = parse_version(tag)
        if candidate is None or not current.same_structure(candidate):
            continue
        if latest is None or candidate.is_newer_than(latest):
            latest = candidate
    return latest


def newer_tag(current_tag: str, tags: Iterable[str]) -> Optional[str]:
    """Original spelling of the newest compatible tag strictly newer than current_tag."""
    if is_special_tag(current_tag):
        return None
    current = parse_version(current_tag)
    if current is None:
        return None
    latest = find_latest_compatible(current, tags)
    if latest is not None and latest.is_newer_than(current):
        return latest.tag
    return None


def compare_versions(current_version: str, target_version: str) -> dict:
    """
    Compare two version tags.

    Returns:
        Dict with current_version, target_version, is_newer, update_type
        (format of the current version) and change_level (major|minor|patch|unknown)
    """
    current = parse_version(current_version)
    target = parse_version(target_version)

    if current is None or target is None:
        return {
            'current_version': current_version,
            'target_version': target_version,
            'is_newer': False,
            'update_type': 'unknown',
            'change_level': 'unknown',
        }

    if target.major > current.major:
        change_level = 'major'
    elif target.minor is not None and current.minor is not None and target.minor > current.minor:
        change_level = 'minor'
    else:
        change_level = 'patch'

    return {
        'current_version': current_version,
        'target_version': target_version,
        'is_newer': target.is_newer_than(current),
        'update_type': current.format,
        'change_level': change_level,
    }


def limit_tags(tags: List[str], limit: int) -> List[str]:
    if limit and limit > 0:
        return tags[:limit]
    return tags


async def get_available_versions(registry, image_ref: str, limit: int = 0,
                                 credentials: Iterable = ()) -> dict:
    """
    Tags of image_ref's repository plus the newest compatible tag.

    Args:
        registry: RegistryClient
        image_ref: Reference whose tag is the current version
        limit: Max tags returned (0 = all)
        credentials: Credentials for the registry auth challenge

    Returns:
        Dict with image_ref, current_version, versions, latest_version

    Raises:
        ParseError / AuthError / NetworkError
    """
    ref = parse_reference(image_ref)
    header, _, _ = await registry.resolve_auth_header(ref.registry, ref.repository, ref.tag, credentials)
    tags = await registry.get_image_tags(ref.registry, ref.repository, header)

    latest = None
    current = parse_version(ref.tag)
    if current is not None and not is_special_tag(ref.tag):
        found = find_latest_compatible(current, tags)
        latest = found.tag if found is not None else None

    return {
        'image_ref': image_ref,
        'current_version': ref.tag,
        'versions': limit_tags(tags, limit),
        'latest_version': latest,
    }
