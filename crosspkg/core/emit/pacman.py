"""Arch Linux .pkg.tar.zst emitter, written in-process (no makepkg)."""

import logging
import tarfile
import time
from pathlib import Path
from typing import Dict, List

from ... import __version__
from ..compression import zstd_compress_stream
from ..depmap import DepNameMap
from ..errors import BuildFailed
from ..formats import PackageFormat, native_arch
from ..intermediate import (
    IntermediatePackage, LifecycleEvent, PACMAN_FUNCTION_SLOTS, events_for_pacman_function,
)
from ..versions import pacman_full_version, pacman_version
from .base import Emitter, event_bodies, join_chunks
from .mtree import MtreeBuilder

logger = logging.getLogger(__name__)

# .INSTALL function order
PACMAN_FUNCTIONS = ('pre_install', 'post_install', 'pre_upgrade', 'post_upgrade',
                    'pre_remove', 'post_remove')

# Archive order of the metadata members written by stage()
METADATA_ORDER = ('.PKGINFO', '.MTREE', '.INSTALL')

_OLD_PACKAGE_EVENTS = (
    LifecycleEvent.PRE_REMOVE_BEFORE_UPGRADE,
    LifecycleEvent.POST_UPGRADE_COMPLETE,
)


def _root_owned(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = 'root'
    return info


def function_events(function: str, source: PackageFormat) -> List[LifecycleEvent]:
    """Universal events folded into a pacman function, in execution order."""
    events = events_for_pacman_function(function)
    if source == PackageFormat.DEB:
        # dpkg runs the old package's prerm/postrm before the new preinst/postinst
        events.sort(key=lambda event: event not in _OLD_PACKAGE_EVENTS)
    return events


class PacmanEmitter(Emitter):
    """Emit zstd-compressed pacman packages."""

    format = PackageFormat.PACMAN

    def filename(self, pkg: IntermediatePackage) -> str:
        arch = native_arch(pkg.arch, self.format)
        return f"{pkg.name}-{pacman_version(pkg.version)}-1-{arch}.pkg.tar.zst"

    def pkginfo(self, pkg: IntermediatePackage, dep_map: DepNameMap, builddate: int) -> str:
        lines = [
            f"# Generated by crosspkg {__version__}",
            f"pkgname = {pkg.name}",
            f"pkgbase = {pkg.name}",
            f"pkgver = {pacman_full_version(pkg.version)}",
            f"pkgdesc = {pkg.summary or pkg.name}",
            f"builddate = {builddate}",
            f"packager = {pkg.maintainer or 'Unknown Packager'}",
            f"size = {pkg.installed_size()}",
            f"arch = {native_arch(pkg.arch, self.format)}",
            'license = custom',
        ]
        lists = [
            ('replaces', self.translate_names(pkg, pkg.replaces, dep_map)),
            ('conflict', self.translate_names(pkg, pkg.conflicts, dep_map)),
            ('provides', pkg.provides),
            ('backup', [c.lstrip('/') for c in pkg.existing_conffiles()]),
            ('depend', self.translate_names(pkg, pkg.depends, dep_map)),
        ]
        for key, values in lists:
            lines.extend(f"{key} = {value}" for value in values)
        return '\n'.join(lines) + '\n'

    def install_functions(self, pkg: IntermediatePackage) -> Dict[str, str]:
        """pacman function name -> body."""
        if not self.cross_format(pkg):
            return {fn: pkg.scripts[slot] for fn, slot in PACMAN_FUNCTION_SLOTS.items()
                    if pkg.script(slot)}
        bodies = event_bodies(pkg, self.format)
        functions = {}
        for fn in PACMAN_FUNCTIONS:
            chunks = []
            for event in function_events(fn, pkg.source_format):
                chunks.extend(bodies[event])
            text = join_chunks(chunks)
            if text:
                functions[fn] = text
        return functions

    def install_script(self, pkg: IntermediatePackage) -> str:
        """.INSTALL text, '' when the package has no lifecycle hooks."""
        functions = self.install_functions(pkg)
        text = ''
        for fn in PACMAN_FUNCTIONS:
            body = functions.get(fn)
            if body:
                if not body.endswith('\n'):
                    body += '\n'
                text += f"{fn}() {{\n{body}}}\n\n"
        return text

    def stage(self, pkg: IntermediatePackage, staging: Path, dep_map: DepNameMap) -> Path:
        """Write .PKGINFO, .INSTALL and .MTREE; the file tree is read in place."""
        builddate = int(time.time())
        meta = staging / 'meta'
        meta.mkdir(parents=True, exist_ok=True)

        pkginfo = self.pkginfo(pkg, dep_map, builddate).encode('utf-8')
        (meta / '.PKGINFO').write_bytes(pkginfo)
        install = self.install_script(pkg)
        if install:
            (meta / '.INSTALL').write_bytes(install.encode('utf-8', errors='surrogateescape'))

        mtree = MtreeBuilder()
        mtree.add_bytes('.PKGINFO', pkginfo, builddate)
        if install:
            mtree.add_bytes('.INSTALL', (meta / '.INSTALL').read_bytes(), builddate)
        if pkg.has_content():
            for entry in pkg.iter_files():
                mtree.add_entry(entry)
        (meta / '.MTREE').write_bytes(mtree.compressed())
        return meta

    def assemble(self, pkg: IntermediatePackage, staging: Path, output_dir: Path) -> Path:
        output = output_dir / self.filename(pkg)
        meta = staging / 'meta'
        try:
            with open(output, 'wb') as f:
                with zstd_compress_stream(f) as zf:
                    with tarfile.open(fileobj=zf, mode='w|') as tar:
                        for name in METADATA_ORDER:
                            if (meta / name).exists():
                                tar.add(meta / name, arcname=name, filter=_root_owned)
                        if pkg.has_content():
                            for entry in pkg.iter_files():
                                tar.add(entry.source, arcname=entry.path.lstrip('/'),
                                        recursive=False, filter=_root_owned)
        except (OSError, tarfile.TarError) as e:
            output.unlink(missing_ok=True)
            raise BuildFailed(f"cannot write {output.name}: {e}")
        return output
