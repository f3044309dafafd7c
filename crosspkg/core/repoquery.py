"""
Repository queries and downloads against real distributions.

Each distribution is reached through a throwaway container of its image.
Version queries are batched: one container run answers for every pending
name, so a resolver round costs one query per distribution regardless of
how many dependencies it holds.
"""

import logging
import re
import shlex
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .container import Container
from .distros import Distro, platform_for
from .errors import ContainerError, FetchFailed
from .formats import PACMAN_SUFFIXES, PackageFormat

logger = logging.getLogger(__name__)

_SIZE_UNITS = {
    'B': 1, 'KiB': 1024, 'MiB': 1024 ** 2, 'GiB': 1024 ** 3,
    'kB': 1000, 'KB': 1024, 'MB': 1000 ** 2, 'GB': 1000 ** 3,
}

_EXTENSIONS = {
    PackageFormat.DEB: ('.deb',),
    PackageFormat.RPM: ('.rpm',),
    PackageFormat.PACMAN: PACMAN_SUFFIXES,
}


@dataclass
class AvailablePackage:
    """A package as offered by a distribution repository."""
    name: str
    version: str
    size: int = 0           # download size in bytes, 0 when unknown


def parse_size(text: str) -> int:
    """Parse '1.50 MiB', '512 B' or a plain byte count."""
    text = text.strip()
    if text.isdigit():
        return int(text)
    m = re.match(r'^([\d.,]+)\s*([A-Za-z]+)$', text)
    if not m:
        return 0
    try:
        value = float(m.group(1).replace(',', '.'))
    except ValueError:
        return 0
    return int(value * _SIZE_UNITS.get(m.group(2), 1))


def parse_apt_show(output: str) -> Dict[str, AvailablePackage]:
    """Parse concatenated ``apt-cache show`` stanzas."""
    packages = {}
    for stanza in re.split(r'\n\s*\n', output):
        fields = {}
        for line in stanza.splitlines():
            if ':' in line and not line[0].isspace():
                key, value = line.split(':', 1)
                fields[key.strip()] = value.strip()
        name = fields.get('Package')
        if name and 'Version' in fields and name not in packages:
            packages[name] = AvailablePackage(name, fields['Version'],
                                              parse_size(fields.get('Size', '0')))
    return packages


def parse_dnf_repoquery(output: str) -> Dict[str, AvailablePackage]:
    """Parse ``name|version-release|downloadsize`` lines."""
    packages = {}
    for line in output.splitlines():
        parts = line.strip().split('|')
        if len(parts) < 2 or not parts[0]:
            continue
        size = parse_size(parts[2]) if len(parts) > 2 else 0
        packages.setdefault(parts[0], AvailablePackage(parts[0], parts[1], size))
    return packages


def parse_pacman_si(output: str) -> Dict[str, AvailablePackage]:
    """Parse ``pacman -Si`` output blocks."""
    packages = {}
    for block in re.split(r'\n\s*\n', output):
        fields = {}
        for line in block.splitlines():
            m = re.match(r'^(\S[^:]*?)\s*:\s(.*)$', line)
            if m:
                fields[m.group(1)] = m.group(2).strip()
        name = fields.get('Name')
        if name and 'Version' in fields and name not in packages:
            packages[name] = AvailablePackage(name, fields['Version'],
                                              parse_size(fields.get('Download Size', '0')))
    return packages


def package_file_matches(filename: str, name: str, fmt: PackageFormat) -> bool:
    """Whether filename is a package file of exactly name.

    deb: name_version_arch.deb; rpm: name-version-release.arch.rpm;
    pacman: name-[epoch:]version-rel-arch.pkg.tar.*
    """
    if fmt == PackageFormat.DEB:
        return filename.startswith(name + '_')
    return re.match(re.escape(name) + r'-(\d+:)?\d', filename) is not None


class DistributionBackend(ABC):
    """Answers 'which version of X do you have' and 'give me X'."""

    def __init__(self, distro: Distro):
        self.distro = distro

    @property
    def format(self) -> PackageFormat:
        return self.distro.format

    @abstractmethod
    def query_versions(self, names: Iterable[str]) -> Dict[str, AvailablePackage]:
        """Look up every name at once.

        Returns:
            Dict of the names the distribution has; absent names are omitted

        Raises:
            FetchFailed: If the query itself failed
        """

    @abstractmethod
    def fetch(self, name: str, dest: Path) -> Path:
        """Download the package into dest and return its path.

        Raises:
            FetchFailed: If no package file was produced
        """


class ContainerBackend(DistributionBackend):
    """Backend running apt/dnf/pacman in a container of the distro image."""

    def __init__(self, distro: Distro, container: Container, arch: str,
                 query_timeout: Optional[int] = None, fetch_timeout: Optional[int] = None):
        super().__init__(distro)
        self.container = container
        self.arch = arch
        self.platform = platform_for(arch)
        self.query_timeout = query_timeout
        self.fetch_timeout = fetch_timeout

    def _query_script(self, names: List[str]) -> str:
        quoted = ' '.join(shlex.quote(n) for n in names)
        if self.format == PackageFormat.DEB:
            return (
                "apt-get update -qq >/dev/null 2>&1; "
                f"for p in {quoted}; do "
                "apt-cache show --no-all-versions \"$p\" 2>/dev/null; echo; done"
            )
        if self.format == PackageFormat.RPM:
            return (
                "dnf -q repoquery --latest-limit=1 "
                "--qf '%{name}|%{version}-%{release}|%{downloadsize}\\n' "
                f"{quoted} 2>/dev/null || true"
            )
        return (
            "pacman -Sy --noconfirm >/dev/null 2>&1; "
            f"pacman -Si {quoted} 2>/dev/null || true"
        )

    def query_versions(self, names: Iterable[str]) -> Dict[str, AvailablePackage]:
        names = sorted(set(names))
        if not names:
            return {}
        logger.debug(f"{self.distro.codename}: querying {len(names)} packages")
        try:
            output = self.container.run_script(
                self.distro.image, self._query_script(names),
                platform=self.platform, timeout=self.query_timeout)
        except ContainerError as e:
            raise FetchFailed(f"query on {self.distro.codename} failed: {e}",
                              timed_out=e.timed_out)

        if self.format == PackageFormat.DEB:
            found = parse_apt_show(output)
        elif self.format == PackageFormat.RPM:
            found = parse_dnf_repoquery(output)
        else:
            found = parse_pacman_si(output)
        wanted = set(names)
        return {name: pkg for name, pkg in found.items() if name in wanted}

    def _fetch_script(self, name: str) -> str:
        q = shlex.quote(name)
        if self.format == PackageFormat.DEB:
            script = (
                "apt-get update -qq >/dev/null 2>&1; "
                f"cd /tmp && apt-get download {q} && cp ./*.deb /out/"
            )
        elif self.format == PackageFormat.RPM:
            script = f"dnf -q download --destdir=/out {q}"
        else:
            script = (
                "pacman -Sy --noconfirm >/dev/null 2>&1; "
                f"pacman -Swdd --noconfirm --cachedir /out {q}"
            )
        # Let the host user clean up files created by root in the container
        return f"{script} && chmod -R a+rwX /out"

    def fetch(self, name: str, dest: Path) -> Path:
        dest = Path(dest)
        # Files left by an earlier run would be mistaken for this download
        if dest.exists():
            shutil.rmtree(dest)
        dest.mkdir(parents=True)
        logger.info(f"Fetching {name} from {self.distro.codename}")
        try:
            self.container.run_script(
                self.distro.image, self._fetch_script(name),
                volumes=[(str(dest.resolve()), '/out')],
                platform=self.platform, timeout=self.fetch_timeout)
        except ContainerError as e:
            raise FetchFailed(f"download from {self.distro.codename} failed: {e}",
                              timed_out=e.timed_out)

        files = sorted(p for p in dest.iterdir()
                       if p.is_file() and p.name.endswith(_EXTENSIONS[self.format]))
        if not files:
            raise FetchFailed(f"{self.distro.codename} produced no package file for {name}")
        # Prefer the file named after the package over pulled-in extras
        for path in files:
            if package_file_matches(path.name, name, self.format):
                return path
        return files[0]
