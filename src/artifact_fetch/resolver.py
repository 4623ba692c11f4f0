"""Release selection by npm-style version range."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import nodesemver

from .models import Release

__all__ = [
    "ReleaseResolver",
    "build_sort_key",
    "parse_tag",
    "resolve_release",
]

logger = logging.getLogger(__name__)


def parse_tag(tag: str) -> Optional[nodesemver.SemVer]:
    """Parse a release tag such as ``1.2.0`` or ``v1.2.0``; ``None`` if it is not semver."""
    text = tag.strip().lstrip("=v")
    if not text:
        return None
    try:
        return nodesemver.parse(text, loose=False)
    except ValueError:
        return None


def _identifier_key(identifiers: Iterable[object]) -> tuple:
    # Numeric identifiers sort before alphanumeric ones.
    keys = []
    for part in identifiers:
        text = str(part)
        keys.append((0, int(text), "") if text.isdigit() else (1, 0, text))
    return tuple(keys)


def build_sort_key(version: nodesemver.SemVer) -> tuple:
    """
    Ordering key that honours semver precedence, then build metadata.

    Two versions equal under semver precedence are ordered by their build
    identifiers, and a version without build metadata sorts first.
    """
    if version.prerelease:
        pre = (0, _identifier_key(version.prerelease))
    else:
        pre = (1, ())
    return (
        version.major,
        version.minor,
        version.patch,
        pre,
        _identifier_key(version.build),
    )


class ReleaseResolver:
    """
    Picks the highest release whose tag satisfies an npm-style version range.

    Without ``include_prereleases``, a prerelease only satisfies a range with
    a comparator that names a prerelease of the same ``major.minor.patch``.
    With it, a prerelease is compared against the range like any other
    version, so ``1.3.0-beta`` is still below ``>=1.3.0``.
    """

    def __init__(self, include_prereleases: bool = False) -> None:
        self.include_prereleases = include_prereleases

    def satisfies(self, tag: str, target: str) -> bool:
        if tag == target:
            return True
        version = parse_tag(tag)
        if version is None:
            return False
        # A parsed version keeps its prerelease in comparisons; only the
        # comparator-set filter is relaxed by include_prerelease.
        return nodesemver.satisfies(
            version, target, loose=False, include_prerelease=self.include_prereleases
        )

    def resolve(self, target: str, releases: Iterable[Release]) -> Optional[Release]:
        """Return the best matching release, or ``None`` when nothing satisfies *target*."""
        candidates = [release for release in releases if self.satisfies(release.tag, target)]
        if not candidates:
            logger.debug("No release satisfies %s", target)
            return None

        def _key(release: Release) -> tuple:
            version = parse_tag(release.tag)
            if version is None:
                return (0, ())
            return (1, build_sort_key(version))

        return max(candidates, key=_key)


def resolve_release(
    target: str, releases: Iterable[Release], include_prereleases: bool = False
) -> Optional[Release]:
    return ReleaseResolver(include_prereleases).resolve(target, releases)
