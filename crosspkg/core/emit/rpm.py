"""RPM emitter (generates a spec file, archives with rpmbuild)."""

import logging
import shlex
import shutil
from pathlib import Path
from typing import Dict, List

from ..depmap import DepNameMap
from ..errors import BuildFailed
from ..formats import ARCH_ANY, PackageFormat, native_arch
from ..intermediate import IntermediatePackage, LIFECYCLE_TABLE, LifecycleEvent, NativeHook
from ..versions import rpm_version
from .base import Emitter, event_bodies, join_chunks

logger = logging.getLogger(__name__)

# intermediate slot -> spec file section
RPM_SCRIPTLETS = {
    'preinst': '%pre',
    'postinst': '%post',
    'prerm': '%preun',
    'postrm': '%postun',
}

# Directories owned by the distribution's base packages, never listed as %dir
SYSTEM_DIRS = frozenset({
    '/', '/bin', '/boot', '/etc', '/lib', '/lib64', '/opt', '/sbin', '/srv', '/var',
    '/etc/default', '/etc/ld.so.conf.d', '/etc/profile.d', '/etc/sysconfig',
    '/etc/systemd', '/etc/systemd/system', '/etc/udev', '/etc/udev/rules.d',
    '/usr', '/usr/bin', '/usr/sbin', '/usr/include', '/usr/lib', '/usr/lib64',
    '/usr/libexec', '/usr/local', '/usr/share',
    '/usr/lib/systemd', '/usr/lib/systemd/system', '/usr/lib/systemd/user',
    '/usr/lib/udev', '/usr/lib/udev/rules.d', '/usr/lib/sysusers.d', '/usr/lib/tmpfiles.d',
    '/usr/share/applications', '/usr/share/doc', '/usr/share/icons', '/usr/share/icons/hicolor',
    '/usr/share/licenses', '/usr/share/locale', '/usr/share/man', '/usr/share/man/man1',
    '/usr/share/metainfo', '/usr/share/mime', '/usr/share/pixmaps',
    '/var/lib', '/var/log', '/var/cache',
})


def rpm_escape(text: str) -> str:
    """Escape macro expansion in text placed into a spec file."""
    return text.replace('%', '%%')


def rpm_guard(hook: NativeHook) -> str:
    """Test on the scriptlet's ``$1`` selecting one universal event."""
    if hook.rpm_arg == 0:
        return '[ "$1" -eq 0 ]'
    if hook.rpm_slot in ('preinst', 'postinst') and hook.rpm_arg == 1:
        return '[ "$1" -eq 1 ]'
    return f'[ "$1" -ge {hook.rpm_arg} ]'


def rpm_scriptlet(slot: str, bodies: Dict[LifecycleEvent, List[str]]) -> str:
    """Merge the events sharing one scriptlet behind ``$1`` guards.

    When both events of a scriptlet carry the same text it runs unguarded.
    """
    parts = [(hook, join_chunks(bodies.get(event, [])))
             for event, hook in LIFECYCLE_TABLE.items() if hook.rpm_slot == slot]
    if not any(text for _, text in parts):
        return ''
    if len({text for _, text in parts}) == 1:
        return parts[0][1]
    out = ''
    for hook, text in parts:
        if text:
            out += f"if {rpm_guard(hook)}; then\n{text}fi\n"
    return out


class RpmEmitter(Emitter):
    """Emit .rpm packages through ``rpmbuild -bb``."""

    format = PackageFormat.RPM
    tool = 'rpmbuild'

    def scriptlets(self, pkg: IntermediatePackage) -> Dict[str, str]:
        """Script slot -> scriptlet body (unescaped)."""
        if not self.cross_format(pkg):
            return {slot: pkg.scripts[slot] for slot in RPM_SCRIPTLETS if pkg.script(slot)}
        bodies = event_bodies(pkg, self.format)
        result = {}
        for slot in RPM_SCRIPTLETS:
            text = rpm_scriptlet(slot, bodies)
            if text:
                result[slot] = text
        return result

    def file_list(self, pkg: IntermediatePackage) -> List[str]:
        """%files entries for the tree."""
        conffiles = set(pkg.existing_conffiles())
        entries = ['%defattr(-,root,root,-)']
        for entry in pkg.iter_files():
            quoted = f'"{rpm_escape(entry.path)}"'
            if entry.kind == 'dir':
                if entry.path not in SYSTEM_DIRS:
                    entries.append(f"%dir {quoted}")
            elif entry.path in conffiles:
                entries.append(f"%config(noreplace) {quoted}")
            else:
                entries.append(quoted)
        return entries

    def spec(self, pkg: IntermediatePackage, dep_map: DepNameMap, tree: Path) -> str:
        lines = [
            '%define debug_package %{nil}',
            '%define __os_install_post %{nil}',
            '%define _build_id_links none',
            '',
            f"Name: {pkg.name}",
            f"Version: {rpm_version(pkg.version)}",
            'Release: 1',
            f"Summary: {rpm_escape(pkg.summary or pkg.name)}",
            'License: Unknown',
        ]
        if pkg.maintainer:
            lines.append(f"Packager: {rpm_escape(pkg.maintainer)}")
        if pkg.arch == ARCH_ANY:
            lines.append('BuildArch: noarch')
        lines.append('AutoReqProv: no')

        relations = [
            ('Requires', self.translate_names(pkg, pkg.depends, dep_map)),
            ('Provides', pkg.provides),
            ('Conflicts', self.translate_names(pkg, pkg.conflicts, dep_map)),
            ('Obsoletes', self.translate_names(pkg, pkg.replaces, dep_map)),
        ]
        for key, names in relations:
            lines.extend(f"{key}: {rpm_escape(name)}" for name in names)

        lines += [
            '',
            '%description',
            rpm_escape(pkg.description or pkg.summary or pkg.name),
            '',
            '%install',
            'mkdir -p %{buildroot}',
            f"cp -a {rpm_escape(shlex.quote(str(tree)))}/. %{{buildroot}}/",
            '',
        ]

        for slot, body in self.scriptlets(pkg).items():
            lines.append(RPM_SCRIPTLETS[slot])
            lines.append(rpm_escape(body).rstrip('\n'))
            lines.append('')

        lines.append('%files')
        lines.extend(self.file_list(pkg))
        return '\n'.join(lines) + '\n'

    def stage(self, pkg: IntermediatePackage, staging: Path, dep_map: DepNameMap) -> Path:
        tree = staging / 'tree'
        self.copy_tree(pkg, tree)
        spec = staging / f"{pkg.name}.spec"
        spec.write_bytes(self.spec(pkg, dep_map, tree).encode('utf-8', errors='surrogateescape'))
        return spec

    def assemble(self, pkg: IntermediatePackage, staging: Path, output_dir: Path) -> Path:
        rpmdir = staging / 'out'
        self.run_tool([
            self.tool, '-bb',
            '--target', native_arch(pkg.arch, self.format),
            '--define', f"_topdir {staging / 'rpmbuild'}",
            '--define', f"_rpmdir {rpmdir}",
            staging / f"{pkg.name}.spec",
        ])
        # rpmbuild writes into an <arch>/ subdirectory of _rpmdir
        built = sorted(rpmdir.rglob('*.rpm'))
        if not built:
            raise BuildFailed(f"rpmbuild produced no package for {pkg.name}")
        output = output_dir / built[0].name
        shutil.move(str(built[0]), str(output))
        return output
