"""
One-shot conversion: extract, optionally rename, relocate, emit.
"""

import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

from .depmap import DepNameMap
from .emit import get_emitter
from .extract import extract
from .formats import PackageFormat, target_libdir
from .intermediate import IntermediatePackage, dedupe
from .relocate import relocate_lib_paths

logger = logging.getLogger(__name__)


def prefixed_name(prefix: str, name: str) -> str:
    return f"{prefix}-{name}"


def rename_with_prefix(pkg: IntermediatePackage, prefix: str) -> IntermediatePackage:
    """Rename pkg to ``<prefix>-<name>`` and make it provide the old name.

    Renaming twice with the same prefix is a no-op.
    """
    if not prefix or pkg.name.startswith(f"{prefix}-"):
        return pkg
    original = pkg.name
    pkg.name = prefixed_name(prefix, original)
    pkg.provides = dedupe(pkg.provides + [original])
    logger.debug(f"Renamed {original} -> {pkg.name}")
    return pkg


def emit_package(pkg: IntermediatePackage, output_dir: Path, target: PackageFormat,
                 dep_map: Optional[DepNameMap] = None, timeout: Optional[int] = None) -> Path:
    """Relocate library paths when the format changes, then emit."""
    if pkg.source_format != target:
        relocate_lib_paths(pkg.root, target_libdir(target, pkg.arch))
    return get_emitter(target, timeout=timeout).build(pkg, output_dir, dep_map)


def convert(path: Union[str, Path], output_dir: Union[str, Path],
            target: Union[str, PackageFormat], prefix: Optional[str] = None,
            dep_map: Optional[DepNameMap] = None, work_dir: Optional[Path] = None,
            source_distro: Optional[str] = None, timeout: Optional[int] = None) -> Path:
    """Convert one package file to another format.

    Args:
        path: Input .deb, .rpm or .pkg.tar.*
        output_dir: Where the converted package is written
        target: Output format
        prefix: If set, rename the package to ``<prefix>-<name>``
        dep_map: Dependency name translation
        work_dir: Directory for the intermediate (a temporary one if None)
        source_distro: Codename recorded in the intermediate
        timeout: Seconds allowed for the native archiver

    Returns:
        Path of the converted package

    Raises:
        UnsupportedFormat, MalformedPackage, BuildFailed
    """
    target = PackageFormat.parse(target)
    path = Path(path)

    if work_dir is not None:
        return _convert(path, Path(output_dir), target, prefix, dep_map,
                        Path(work_dir), source_distro, timeout)
    with tempfile.TemporaryDirectory(prefix='crosspkg-') as tmp:
        return _convert(path, Path(output_dir), target, prefix, dep_map,
                        Path(tmp), source_distro, timeout)


def _convert(path, output_dir, target, prefix, dep_map, work_dir, source_distro, timeout):
    pkg = extract(path, work_dir / 'intermediate', source_distro)
    if prefix:
        rename_with_prefix(pkg, prefix)
    result = emit_package(pkg, output_dir, target, dep_map, timeout)
    logger.info(f"Converted {path.name} -> {result.name}")
    return result
