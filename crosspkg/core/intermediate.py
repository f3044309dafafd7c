"""
Intermediate package model.

Every conversion goes through this representation: metadata, lifecycle
scripts in the source dialect, and a file tree under ``root/``. On disk:

    <dir>/meta/name, version, arch, description, maintainer,
               source_format, source_distro
    <dir>/meta/depends, provides, conflicts, replaces, conffiles  (optional,
               one entry per line)
    <dir>/meta/scripts/<slot>
    <dir>/root/...                                              (file tree)
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import MalformedPackage
from .formats import PackageFormat, normalize_arch

logger = logging.getLogger(__name__)

# Script slots stored in meta/scripts. The first four hold deb maintainer
# scripts, rpm %pre/%post/%preun/%postun, or pacman pre_install/post_install/
# pre_remove/post_remove; the upgrade slots exist only for pacman sources.
SCRIPT_SLOTS = ('preinst', 'postinst', 'prerm', 'postrm', 'pre_upgrade', 'post_upgrade')

# pacman .INSTALL function -> script slot
PACMAN_FUNCTION_SLOTS = {
    'pre_install': 'preinst',
    'post_install': 'postinst',
    'pre_remove': 'prerm',
    'post_remove': 'postrm',
    'pre_upgrade': 'pre_upgrade',
    'post_upgrade': 'post_upgrade',
}

LIST_FIELDS = ('depends', 'provides', 'conflicts', 'replaces', 'conffiles')

SYSTEMD_UNIT_SUFFIXES = ('.service', '.timer', '.socket', '.path')


class LifecycleEvent(str, Enum):
    """Universal lifecycle events, independent of any package format."""
    PRE_INSTALL = 'pre-install'
    PRE_UPGRADE = 'pre-upgrade'
    POST_INSTALL = 'post-install'
    POST_UPGRADE = 'post-upgrade'
    PRE_REMOVE = 'pre-remove'
    PRE_REMOVE_BEFORE_UPGRADE = 'pre-remove-before-upgrade'
    POST_REMOVE = 'post-remove'
    POST_UPGRADE_COMPLETE = 'post-upgrade-complete'


@dataclass(frozen=True)
class NativeHook:
    """How one universal event is spelled by each format.

    deb_slot/deb_actions: maintainer script and the ``$1`` values it receives
    rpm_slot/rpm_arg: scriptlet (as intermediate slot) and its numeric ``$1``
    pacman_function: .INSTALL function name
    """
    deb_slot: str
    deb_actions: Tuple[str, ...]
    rpm_slot: str
    rpm_arg: int
    pacman_function: str


LIFECYCLE_TABLE: Dict[LifecycleEvent, NativeHook] = {
    LifecycleEvent.PRE_INSTALL: NativeHook('preinst', ('install',), 'preinst', 1, 'pre_install'),
    LifecycleEvent.PRE_UPGRADE: NativeHook('preinst', ('upgrade',), 'preinst', 2, 'pre_upgrade'),
    LifecycleEvent.POST_INSTALL: NativeHook('postinst', ('configure',), 'postinst', 1, 'post_install'),
    LifecycleEvent.POST_UPGRADE: NativeHook('postinst', ('configure',), 'postinst', 2, 'post_upgrade'),
    LifecycleEvent.PRE_REMOVE: NativeHook('prerm', ('remove',), 'prerm', 0, 'pre_remove'),
    LifecycleEvent.PRE_REMOVE_BEFORE_UPGRADE: NativeHook('prerm', ('upgrade',), 'prerm', 1, 'pre_upgrade'),
    LifecycleEvent.POST_REMOVE: NativeHook('postrm', ('remove', 'purge'), 'postrm', 0, 'post_remove'),
    LifecycleEvent.POST_UPGRADE_COMPLETE: NativeHook('postrm', ('upgrade',), 'postrm', 1, 'post_upgrade'),
}


def events_for_pacman_function(function: str) -> List[LifecycleEvent]:
    """Universal events folded into one pacman .INSTALL function, in table order."""
    return [event for event, hook in LIFECYCLE_TABLE.items()
            if hook.pacman_function == function]


def dedupe(items: Iterable[str]) -> List[str]:
    """Drop empty and repeated entries, keeping first-seen order."""
    seen = set()
    result = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


@dataclass
class FileEntry:
    """One node of the file tree."""
    path: str               # install path, e.g. /usr/bin/foo
    source: Path            # location under root/
    kind: str               # 'file', 'dir' or 'link'
    size: int = 0
    mode: int = 0
    mtime: int = 0
    link_target: Optional[str] = None


@dataclass
class IntermediatePackage:
    """Format-agnostic package: metadata, scripts and a file tree."""
    name: str
    version: str
    arch: str
    source_format: PackageFormat
    root: Path
    description: str = ''
    maintainer: str = ''
    source_distro: str = 'unknown'
    depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    conffiles: List[str] = field(default_factory=list)
    scripts: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.arch = normalize_arch(self.arch)
        self.source_format = PackageFormat.parse(self.source_format)
        self.root = Path(self.root)
        for attr in LIST_FIELDS:
            setattr(self, attr, dedupe(getattr(self, attr)))

    @property
    def summary(self) -> str:
        """First line of the description."""
        return self.description.split('\n', 1)[0].strip() if self.description else ''

    def script(self, slot: str) -> Optional[str]:
        """Script body for a slot, or None when absent or blank."""
        body = self.scripts.get(slot)
        if body is None or not body.strip():
            return None
        return body

    # -------------------------------------------------------------------------
    # File tree
    # -------------------------------------------------------------------------

    def iter_files(self) -> Iterator[FileEntry]:
        """Walk the file tree in sorted order without following symlinks."""
        if not self.root.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            base = Path(dirpath)
            walk_dirs = []
            for name in dirnames:
                entry = self._entry(base / name)
                yield entry
                if entry.kind == 'dir':
                    walk_dirs.append(name)
            dirnames[:] = walk_dirs
            for name in sorted(filenames):
                yield self._entry(base / name)

    def _entry(self, path: Path) -> FileEntry:
        st = path.lstat()
        install_path = '/' + path.relative_to(self.root).as_posix()
        if path.is_symlink():
            return FileEntry(install_path, path, 'link', 0, 0o777, int(st.st_mtime),
                             os.readlink(path))
        if path.is_dir():
            return FileEntry(install_path, path, 'dir', 0, st.st_mode & 0o7777,
                             int(st.st_mtime))
        return FileEntry(install_path, path, 'file', st.st_size, st.st_mode & 0o7777,
                         int(st.st_mtime))

    def has_content(self) -> bool:
        """True if the file tree holds anything at all."""
        return self.root.is_dir() and any(self.root.iterdir())

    def installed_size(self) -> int:
        """Total bytes of regular files in the tree."""
        return sum(e.size for e in self.iter_files() if e.kind == 'file')

    def systemd_units(self) -> List[str]:
        """Names of systemd units shipped by the package (templates excluded)."""
        units = set()
        for entry in self.iter_files():
            if entry.kind == 'dir':
                continue
            unit = entry.path.rsplit('/', 1)[-1]
            if unit.endswith(SYSTEMD_UNIT_SUFFIXES) and '@.' not in unit:
                units.add(unit)
        return sorted(units)

    def existing_conffiles(self) -> List[str]:
        """Declared conffiles that are actually present in the tree."""
        present = []
        for path in self.conffiles:
            candidate = self.root / path.lstrip('/')
            if candidate.is_file() or candidate.is_symlink():
                present.append(path)
            else:
                logger.debug(f"{self.name}: conffile {path} not in file tree, dropped")
        return present

    # -------------------------------------------------------------------------
    # On-disk layout
    # -------------------------------------------------------------------------

    def save(self, directory: Path) -> Path:
        """Write metadata and scripts under directory/meta.

        The file tree is expected to already live at directory/root; if the
        package root is elsewhere it is left in place and recorded as-is.
        """
        directory = Path(directory)
        meta = directory / 'meta'
        scripts = meta / 'scripts'
        scripts.mkdir(parents=True, exist_ok=True)

        single = {
            'name': self.name,
            'version': self.version,
            'arch': self.arch,
            'description': self.description,
            'maintainer': self.maintainer,
            'source_format': self.source_format.value,
            'source_distro': self.source_distro,
        }
        for key, value in single.items():
            (meta / key).write_text(f"{value}\n")

        for key in LIST_FIELDS:
            values = getattr(self, key)
            path = meta / key
            if values:
                path.write_text(''.join(f"{v}\n" for v in values))
            elif path.exists():
                path.unlink()

        for slot in SCRIPT_SLOTS:
            path = scripts / slot
            body = self.scripts.get(slot)
            if body is not None:
                path.write_bytes(body.encode('utf-8', errors='surrogateescape'))
                path.chmod(0o755)
            elif path.exists():
                path.unlink()

        return directory

    @classmethod
    def load(cls, directory: Path) -> 'IntermediatePackage':
        """Read an intermediate directory written by save() or an extractor.

        Raises:
            MalformedPackage: If name, version, arch or source_format is missing
        """
        directory = Path(directory)
        meta = directory / 'meta'

        def read(key: str) -> Optional[str]:
            path = meta / key
            if not path.exists():
                return None
            text = path.read_text(errors='replace')
            return text[:-1] if text.endswith('\n') else text

        def read_list(key: str) -> List[str]:
            text = read(key)
            return text.splitlines() if text else []

        values = {key: read(key) for key in ('name', 'version', 'arch', 'source_format')}
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise MalformedPackage(
                f"{directory}: intermediate metadata missing: {', '.join(missing)}"
            )

        scripts = {}
        for slot in SCRIPT_SLOTS:
            path = meta / 'scripts' / slot
            if path.exists():
                scripts[slot] = path.read_bytes().decode('utf-8', errors='surrogateescape')

        return cls(
            name=values['name'],
            version=values['version'],
            arch=values['arch'],
            source_format=values['source_format'],
            root=directory / 'root',
            description=read('description') or '',
            maintainer=read('maintainer') or '',
            source_distro=read('source_distro') or 'unknown',
            depends=read_list('depends'),
            provides=read_list('provides'),
            conflicts=read_list('conflicts'),
            replaces=read_list('replaces'),
            conffiles=read_list('conffiles'),
            scripts=scripts,
        )
