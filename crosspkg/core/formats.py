"""
Package formats and architecture naming.

Every distro family spells architectures differently. Internally we use
one normalized vocabulary (aarch64, x86_64, armhf, any) and map back to
the native token only when writing a package.
"""

from enum import Enum
from pathlib import Path
from typing import Union

from .errors import UnsupportedFormat


class PackageFormat(str, Enum):
    """Closed set of package formats understood by crosspkg."""
    DEB = 'deb'
    RPM = 'rpm'
    PACMAN = 'pacman'

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Union[str, 'PackageFormat']) -> 'PackageFormat':
        """Accept a format name ('deb', 'rpm', 'pacman') or an enum member."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedFormat(f"Unknown package format: {value}")


# Normalized architecture names
ARCH_AARCH64 = 'aarch64'
ARCH_X86_64 = 'x86_64'
ARCH_ARMHF = 'armhf'
ARCH_ANY = 'any'

_ARCH_ALIASES = {
    'arm64': ARCH_AARCH64,
    'aarch64': ARCH_AARCH64,
    'amd64': ARCH_X86_64,
    'x86_64': ARCH_X86_64,
    'armhf': ARCH_ARMHF,
    'armv7h': ARCH_ARMHF,
    'armv7l': ARCH_ARMHF,
    'armv7hl': ARCH_ARMHF,
    'all': ARCH_ANY,
    'noarch': ARCH_ANY,
    'any': ARCH_ANY,
}

# Normalized arch -> native token, per format
_NATIVE_ARCH = {
    PackageFormat.DEB: {
        ARCH_AARCH64: 'arm64',
        ARCH_X86_64: 'amd64',
        ARCH_ARMHF: 'armhf',
        ARCH_ANY: 'all',
    },
    PackageFormat.RPM: {
        ARCH_AARCH64: 'aarch64',
        ARCH_X86_64: 'x86_64',
        ARCH_ARMHF: 'armv7hl',
        ARCH_ANY: 'noarch',
    },
    PackageFormat.PACMAN: {
        ARCH_AARCH64: 'aarch64',
        ARCH_X86_64: 'x86_64',
        ARCH_ARMHF: 'armv7h',
        ARCH_ANY: 'any',
    },
}

_64BIT_ARCHES = {ARCH_AARCH64, ARCH_X86_64, 'ppc64le', 's390x', 'riscv64'}

PACMAN_SUFFIXES = ('.pkg.tar.zst', '.pkg.tar.xz', '.pkg.tar.gz')


def normalize_arch(arch: str) -> str:
    """Map a distro-specific architecture token to the normalized name.

    Unknown tokens are returned unchanged, so the function is idempotent:
    normalize_arch(normalize_arch(x)) == normalize_arch(x).

    Args:
        arch: Architecture as written in package metadata

    Returns:
        aarch64, x86_64, armhf, any, or the input for unknown tokens
    """
    if not arch:
        return arch
    return _ARCH_ALIASES.get(arch.strip(), arch.strip())


def native_arch(arch: str, fmt: PackageFormat) -> str:
    """Return the architecture token the given format writes for arch."""
    arch = normalize_arch(arch)
    return _NATIVE_ARCH[PackageFormat.parse(fmt)].get(arch, arch)


def detect_format(path: Union[str, Path]) -> PackageFormat:
    """Determine the package format from the file name.

    Raises:
        UnsupportedFormat: If the extension is not recognized
    """
    name = Path(path).name
    if name.endswith('.deb'):
        return PackageFormat.DEB
    if name.endswith('.rpm'):
        return PackageFormat.RPM
    if name.endswith(PACMAN_SUFFIXES):
        return PackageFormat.PACMAN
    raise UnsupportedFormat(f"Unsupported package format: {name}")


def target_libdir(fmt: PackageFormat, arch: str = ARCH_X86_64) -> str:
    """Library directory the target distro's loader searches by default.

    Debian and Arch keep everything in /usr/lib (Debian via ld.so.conf.d
    for multiarch subdirs). Fedora uses /usr/lib64 on 64-bit.
    """
    fmt = PackageFormat.parse(fmt)
    if fmt == PackageFormat.RPM and normalize_arch(arch) in _64BIT_ARCHES:
        return '/usr/lib64'
    return '/usr/lib'
