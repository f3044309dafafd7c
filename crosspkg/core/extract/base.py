"""Extractor interface and helpers shared by the per-format extractors."""

import logging
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..errors import MalformedPackage
from ..formats import PackageFormat, normalize_arch
from ..intermediate import IntermediatePackage

logger = logging.getLogger(__name__)

_VERSION_OP_RE = re.compile(r'\s*(\(.*?\)|[<>=].*)$')


@dataclass
class PackageInfo:
    """Metadata read from an archive without unpacking its payload."""
    name: str
    version: str
    arch: str
    source_format: PackageFormat
    depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.arch = normalize_arch(self.arch)


def strip_constraint(dep: str) -> str:
    """Drop a trailing version constraint: 'foo (>= 1)', 'foo>=1', 'foo = 2'."""
    return _VERSION_OP_RE.sub('', dep.strip()).strip()


def prepare_output(output_dir: Path) -> Path:
    """Create a fresh intermediate directory and return its root/ path."""
    output_dir = Path(output_dir)
    if output_dir.exists():
        shutil.rmtree(output_dir)
    root = output_dir / 'root'
    root.mkdir(parents=True)
    (output_dir / 'meta' / 'scripts').mkdir(parents=True)
    return root


class Extractor(ABC):
    """Turns one archive of a given format into an IntermediatePackage."""

    format: PackageFormat

    @abstractmethod
    def inspect(self, path: Path) -> PackageInfo:
        """Read metadata only.

        Raises:
            MalformedPackage: If metadata is missing or unreadable
        """

    @abstractmethod
    def extract(self, path: Path, output_dir: Path,
                source_distro: Optional[str] = None) -> IntermediatePackage:
        """Unpack metadata, scripts and payload into output_dir.

        output_dir is replaced if it exists. On failure nothing usable is
        left behind: the partially written directory is removed.

        Raises:
            MalformedPackage: If metadata is missing or unreadable
        """

    def _fail(self, output_dir: Path, message: str):
        shutil.rmtree(output_dir, ignore_errors=True)
        raise MalformedPackage(message)
