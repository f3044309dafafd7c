"""
Distribution registry: codename -> package format and container image.

Loaded from a YAML file when one is given:

    distros:
      noble:
        format: deb
        image: ubuntu:24.04
      fedora41:
        format: rpm
        image: fedora:41

Entries from the file extend (and override) the built-in table.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

from .errors import CrossPkgError
from .formats import ARCH_AARCH64, ARCH_ARMHF, ARCH_X86_64, PackageFormat, normalize_arch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Distro:
    """A distribution the resolver can query and fetch from."""
    codename: str
    format: PackageFormat
    image: str


BUILTIN_DISTROS: Dict[str, Distro] = {
    'noble': Distro('noble', PackageFormat.DEB, 'ubuntu:24.04'),
    'trixie': Distro('trixie', PackageFormat.DEB, 'debian:trixie'),
    'fedora41': Distro('fedora41', PackageFormat.RPM, 'fedora:41'),
    'arch': Distro('arch', PackageFormat.PACMAN, 'archlinux:latest'),
}

# Normalized arch -> container --platform value
PLATFORMS = {
    ARCH_AARCH64: 'linux/arm64',
    ARCH_X86_64: 'linux/amd64',
    ARCH_ARMHF: 'linux/arm/v7',
}


def platform_for(arch: str) -> str:
    """Container platform for an architecture (linux/arm64 when unknown)."""
    return PLATFORMS.get(normalize_arch(arch), 'linux/arm64')


class DistroRegistry:
    """Lookup table of known distributions."""

    def __init__(self, distros: Optional[Dict[str, Distro]] = None):
        self.distros = dict(BUILTIN_DISTROS)
        if distros:
            self.distros.update(distros)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> 'DistroRegistry':
        """Load a registry from YAML (built-in table only when path is None).

        Raises:
            CrossPkgError: If the file is unreadable or an entry is invalid
        """
        if not path:
            return cls()

        path = Path(path)
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CrossPkgError(f"Cannot load distros config {path}: {e}")

        if not isinstance(data, dict):
            raise CrossPkgError(f"{path}: expected a mapping of distributions")
        entries = data.get('distros', data)
        if not isinstance(entries, dict):
            raise CrossPkgError(f"{path}: 'distros' must be a mapping")

        distros = {}
        for codename, spec in entries.items():
            if not isinstance(spec, dict) or 'format' not in spec or 'image' not in spec:
                raise CrossPkgError(f"{path}: distro '{codename}' needs 'format' and 'image'")
            distros[str(codename)] = Distro(
                codename=str(codename),
                format=PackageFormat.parse(spec['format']),
                image=str(spec['image']),
            )
        logger.debug(f"Loaded {len(distros)} distros from {path}")
        return cls(distros)

    def get(self, codename: str) -> Distro:
        """Return a distro by codename.

        Raises:
            CrossPkgError: If the codename is unknown
        """
        try:
            return self.distros[codename]
        except KeyError:
            known = ', '.join(sorted(self.distros))
            raise CrossPkgError(f"Unknown distro '{codename}' (known: {known})")

    def __contains__(self, codename: str) -> bool:
        return codename in self.distros
