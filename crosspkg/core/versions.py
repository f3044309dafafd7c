"""
Version string handling.

Intermediate versions keep the loose ``[epoch:]upstream[-revision]`` shape
of whatever package they came from. Each target format derives its own
legal version from that, and the resolver compares versions across
distributions with a deliberately coarse major.minor rule.
"""

import re
from typing import Optional, Tuple

_EPOCH_RE = re.compile(r'^\d+:')
_PLUS_SUFFIX_RE = re.compile(r'\+[^-]*')
_MAJOR_MINOR_RE = re.compile(r'^(\d+)\.(\d+)')
_PACMAN_INVALID_RE = re.compile(r'[^A-Za-z0-9._+]+')


def strip_epoch(version: str) -> str:
    """Remove a leading ``N:`` epoch."""
    return _EPOCH_RE.sub('', version)


def strip_revision(version: str) -> str:
    """Remove the trailing ``-revision`` (Debian revision, RPM release, pkgrel)."""
    if '-' in version:
        return version.rsplit('-', 1)[0]
    return version


def upstream_version(version: str) -> str:
    """Upstream part of a version: no epoch, no revision."""
    return strip_revision(strip_epoch(version.strip()))


def major_minor(version: str) -> Optional[Tuple[int, int]]:
    """Parse ``major.minor`` from the upstream part of a version.

    Returns:
        (major, minor), or None when the version is not numeric-dotted
        (git hashes, dates, arbitrary strings).
    """
    m = _MAJOR_MINOR_RE.match(upstream_version(version))
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def compatible(a: str, b: str) -> bool:
    """Check whether two versions are interchangeable for dependency purposes.

    Two versions are compatible when their major.minor components are equal.
    When either side cannot be parsed that way, fall back to exact equality
    of the upstream parts. The relation is symmetric and reflexive.

    Args:
        a: First version (any distro's syntax)
        b: Second version

    Returns:
        True if compatible
    """
    mm_a = major_minor(a)
    mm_b = major_minor(b)
    if mm_a is not None and mm_b is not None:
        return mm_a == mm_b
    return upstream_version(a) == upstream_version(b)


def deb_file_version(version: str) -> str:
    """Version used in .deb file names (control Version stays verbatim)."""
    return _PLUS_SUFFIX_RE.sub('', strip_epoch(version))


def rpm_version(version: str) -> str:
    """Legal RPM ``Version:`` value: no epoch, ``~`` and ``-`` become dots."""
    return strip_epoch(version).replace('~', '.').replace('-', '.')


def pacman_version(version: str) -> str:
    """Legal pacman pkgver (without the ``-pkgrel`` suffix)."""
    ver = _PLUS_SUFFIX_RE.sub('', strip_epoch(version))
    ver = ver.replace('-', '.').replace('~', '.')
    ver = _PACMAN_INVALID_RE.sub('.', ver).strip('.')
    return ver or '0'


def pacman_full_version(version: str, pkgrel: int = 1) -> str:
    """pkgver-pkgrel as written in .PKGINFO."""
    return f"{pacman_version(version)}-{pkgrel}"
