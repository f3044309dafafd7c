"""Per-format extractors producing the intermediate layout."""

import logging
import tarfile
from pathlib import Path
from typing import Optional, Union

from ..compression import CORRUPT_STREAM_ERRORS
from ..errors import CrossPkgError, MalformedPackage
from ..formats import PackageFormat, detect_format
from ..intermediate import IntermediatePackage
from .base import Extractor, PackageInfo, strip_constraint
from .deb import DebExtractor
from .pacman import PacmanExtractor
from .rpm import RpmExtractor

logger = logging.getLogger(__name__)

_EXTRACTORS = {
    PackageFormat.DEB: DebExtractor,
    PackageFormat.RPM: RpmExtractor,
    PackageFormat.PACMAN: PacmanExtractor,
}


def get_extractor(fmt: Union[str, PackageFormat]) -> Extractor:
    """Return the extractor for a format."""
    return _EXTRACTORS[PackageFormat.parse(fmt)]()


def extract(path: Union[str, Path], output_dir: Union[str, Path],
            source_distro: Optional[str] = None) -> IntermediatePackage:
    """Extract any supported package into an intermediate directory.

    Raises:
        UnsupportedFormat: If the file extension is not recognized
        MalformedPackage: If metadata is missing or corrupt
    """
    path = Path(path)
    fmt = detect_format(path)
    logger.debug(f"Extracting {path.name} as {fmt.value}")
    try:
        return get_extractor(fmt).extract(path, Path(output_dir), source_distro)
    except CrossPkgError:
        raise
    except (tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
        raise MalformedPackage(f"{path.name}: {e}")


def inspect(path: Union[str, Path]) -> PackageInfo:
    """Read name, version and dependencies of any supported package.

    Raises:
        UnsupportedFormat: If the file extension is not recognized
        MalformedPackage: If metadata is missing or corrupt
    """
    path = Path(path)
    try:
        return get_extractor(detect_format(path)).inspect(path)
    except CrossPkgError:
        raise
    except (tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
        raise MalformedPackage(f"{path.name}: {e}")


__all__ = [
    'Extractor',
    'PackageInfo',
    'DebExtractor',
    'RpmExtractor',
    'PacmanExtractor',
    'get_extractor',
    'extract',
    'inspect',
    'strip_constraint',
]
