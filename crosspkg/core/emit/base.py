"""Emitter interface and the lifecycle script plumbing shared by all targets."""

import logging
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .. import scripts
from ..depmap import DepNameMap
from ..errors import BuildFailed
from ..formats import PackageFormat
from ..intermediate import (
    IntermediatePackage, LIFECYCLE_TABLE, LifecycleEvent, PACMAN_FUNCTION_SLOTS, dedupe,
)

logger = logging.getLogger(__name__)

# pacman has no hook for the outgoing package during an upgrade
_PACMAN_UNMAPPED_EVENTS = (
    LifecycleEvent.PRE_REMOVE_BEFORE_UPGRADE,
    LifecycleEvent.POST_UPGRADE_COMPLETE,
)


_PACMAN_CALL_RE = re.compile(
    r'^\s*(' + '|'.join(PACMAN_FUNCTION_SLOTS) + r')(?:\s+"?\$\{?\d\}?"?)*\s*;?\s*$')


def inline_pacman_calls(body: str, pkg: IntermediatePackage) -> str:
    """Replace calls to sibling .INSTALL functions with their bodies.

    post_upgrade commonly just calls post_install; once the functions are
    spread over other formats' scripts that function no longer exists.
    Only one level is inlined.
    """
    lines = []
    for line in body.splitlines(keepends=True):
        m = _PACMAN_CALL_RE.match(line)
        if m:
            lines.append(pkg.script(PACMAN_FUNCTION_SLOTS[m.group(1)]) or '')
        else:
            lines.append(line)
    return ''.join(lines)


def systemd_hooks(units: List[str]) -> Dict[LifecycleEvent, str]:
    """Native systemd handling for the units a package ships."""
    if not units:
        return {}
    names = ' '.join(units)
    reload = "systemctl daemon-reload >/dev/null 2>&1 || :\n"
    return {
        LifecycleEvent.POST_INSTALL: reload + f"systemctl enable {names} >/dev/null 2>&1 || :\n",
        LifecycleEvent.POST_UPGRADE: reload + f"systemctl try-restart {names} >/dev/null 2>&1 || :\n",
        LifecycleEvent.PRE_REMOVE: f"systemctl disable --now {names} >/dev/null 2>&1 || :\n",
        LifecycleEvent.POST_REMOVE: reload,
    }


def translate_event(pkg: IntermediatePackage, event: LifecycleEvent,
                    target: PackageFormat) -> str:
    """Translate the part of pkg's scripts that runs for one universal event.

    deb scripts are narrowed to the event's ``$1`` actions, rpm scriptlets
    get the event's numeric argument substituted, pacman functions map one
    to one.

    Returns:
        Translated body, '' if the source has nothing for this event
    """
    hook = LIFECYCLE_TABLE[event]
    source = pkg.source_format

    if source == PackageFormat.DEB:
        body = pkg.script(hook.deb_slot)
        if body is None:
            return ''
        return scripts.translate(body, source, target, deb_actions=hook.deb_actions)

    if source == PackageFormat.RPM:
        body = pkg.script(hook.rpm_slot)
        if body is None:
            return ''
        return scripts.translate(body, source, target, rpm_arg=hook.rpm_arg)

    if event in _PACMAN_UNMAPPED_EVENTS:
        return ''
    body = pkg.script(PACMAN_FUNCTION_SLOTS[hook.pacman_function])
    if body is None:
        return ''
    return scripts.translate(inline_pacman_calls(body, pkg), source, target)


def event_bodies(pkg: IntermediatePackage, target: PackageFormat,
                 include_scripts: bool = True) -> Dict[LifecycleEvent, List[str]]:
    """Collect translated script chunks and systemd hooks per universal event.

    Only used when the package changes format; same-format emitters copy
    the source scripts verbatim.
    """
    bodies: Dict[LifecycleEvent, List[str]] = {event: [] for event in LIFECYCLE_TABLE}
    if include_scripts:
        for event in LIFECYCLE_TABLE:
            text = translate_event(pkg, event, target)
            if text:
                bodies[event].append(text)
    units = pkg.systemd_units()
    if units:
        logger.debug(f"{pkg.name}: adding systemd hooks for {', '.join(units)}")
    for event, text in systemd_hooks(units).items():
        bodies[event].append(text)
    return bodies


def join_chunks(chunks: List[str]) -> str:
    """Concatenate script chunks, each ending with a newline."""
    return ''.join(c if c.endswith('\n') else c + '\n' for c in chunks if c.strip())


class Emitter(ABC):
    """Writes an IntermediatePackage as a native package of one format.

    build() validates the package, stages everything in a private temporary
    directory and assembles the archive. The intermediate itself is never
    modified, so it can be emitted again for another target.
    """

    format: PackageFormat
    tool: Optional[str] = None

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout

    def build(self, pkg: IntermediatePackage, output_dir: Path,
              dep_map: Optional[DepNameMap] = None) -> Path:
        """Produce the package file in output_dir.

        Args:
            pkg: Package to emit
            output_dir: Directory receiving the archive
            dep_map: Dependency name translation (names pass through if None)

        Returns:
            Path of the written archive

        Raises:
            BuildFailed: If required fields are missing or the archiver fails
        """
        self.validate(pkg)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        dep_map = dep_map or DepNameMap()

        with tempfile.TemporaryDirectory(prefix=f'crosspkg-{self.format.value}-') as tmp:
            staging = Path(tmp)
            self.stage(pkg, staging, dep_map)
            path = self.assemble(pkg, staging, output_dir)

        logger.info(f"Built {path.name}")
        return path

    def validate(self, pkg: IntermediatePackage):
        missing = [attr for attr in ('name', 'version', 'arch') if not getattr(pkg, attr)]
        if missing:
            raise BuildFailed(f"cannot emit {self.format.value}: missing {', '.join(missing)}")

    @abstractmethod
    def stage(self, pkg: IntermediatePackage, staging: Path, dep_map: DepNameMap) -> Path:
        """Lay out metadata, scripts and the file tree under staging."""

    @abstractmethod
    def assemble(self, pkg: IntermediatePackage, staging: Path, output_dir: Path) -> Path:
        """Turn the staged tree into the final archive."""

    def translate_names(self, pkg: IntermediatePackage, names: List[str],
                        dep_map: DepNameMap) -> List[str]:
        """Map dependency names to target naming, dropping self references."""
        translated = (dep_map.translate(n, pkg.source_format, self.format) for n in names)
        return [n for n in dedupe(translated) if n != pkg.name]

    def cross_format(self, pkg: IntermediatePackage) -> bool:
        return pkg.source_format != self.format

    @staticmethod
    def copy_tree(pkg: IntermediatePackage, dest: Path):
        """Copy the file tree to dest, keeping symlinks and modes."""
        if pkg.has_content():
            shutil.copytree(pkg.root, dest, symlinks=True, dirs_exist_ok=True)
        else:
            dest.mkdir(parents=True, exist_ok=True)

    def run_tool(self, args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        """Run the native archiver, converting failures to BuildFailed."""
        logger.debug(f"Running: {' '.join(str(a) for a in args)}")
        try:
            result = subprocess.run(
                [str(a) for a in args],
                capture_output=True,
                text=True,
                cwd=cwd,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise BuildFailed(f"{args[0]} timed out after {self.timeout}s")
        except OSError as e:
            raise BuildFailed(f"cannot run {args[0]}: {e}")

        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            raise BuildFailed(
                f"{args[0]} failed (exit {result.returncode}): {output[-1000:]}",
                returncode=result.returncode,
            )
        return result
