"""Debian .deb emitter (stages DEBIAN/, archives with dpkg-deb)."""

import logging
from pathlib import Path
from typing import Dict, List

from .. import scripts
from ..depmap import DepNameMap
from ..errors import BuildFailed
from ..formats import PackageFormat, native_arch
from ..intermediate import IntermediatePackage, LIFECYCLE_TABLE, LifecycleEvent
from ..versions import deb_file_version
from .base import Emitter, event_bodies, join_chunks

logger = logging.getLogger(__name__)

DEB_SCRIPTS = ('preinst', 'postinst', 'prerm', 'postrm')
DEFAULT_MAINTAINER = 'crosspkg <crosspkg@localhost>'

# Computes the rpm scriptlet argument from the dpkg action. Translated rpm
# bodies read it as ${_RPM_ARG} and only run when it was set.
RPM_ARG_PREAMBLE = {
    'preinst': (
        'case "$1" in\n'
        '    install) _RPM_ARG=1 ;;\n'
        '    upgrade) _RPM_ARG=2 ;;\n'
        'esac\n'
    ),
    'postinst': (
        'if [ "$1" = configure ]; then\n'
        '    if [ -z "$2" ]; then _RPM_ARG=1; else _RPM_ARG=2; fi\n'
        'fi\n'
    ),
    'prerm': (
        'case "$1" in\n'
        '    remove) _RPM_ARG=0 ;;\n'
        '    upgrade) _RPM_ARG=1 ;;\n'
        'esac\n'
    ),
    'postrm': (
        'case "$1" in\n'
        '    remove) _RPM_ARG=0 ;;\n'
        '    upgrade) _RPM_ARG=1 ;;\n'
        'esac\n'
    ),
}


def encode_description(summary: str, description: str) -> str:
    """Format a control Description: summary line, then indented extended lines."""
    lines = description.split('\n')[1:] if description else []
    while lines and not lines[-1].strip():
        lines.pop()
    text = summary
    for line in lines:
        text += '\n .' if not line.strip() else f"\n {line}"
    return text


def deb_dispatch(slot: str, bodies: Dict[LifecycleEvent, List[str]]) -> str:
    """Build a ``case "$1" in`` dispatcher for one maintainer script.

    postinst receives ``configure`` for both install and upgrade; the two
    are told apart by the previously configured version in ``$2``.
    Bodies are not re-indented: heredoc terminators must stay in column 0.
    """
    branches: Dict[str, Dict[LifecycleEvent, str]] = {}
    for event, hook in LIFECYCLE_TABLE.items():
        if hook.deb_slot != slot:
            continue
        text = join_chunks(bodies.get(event, []))
        if text:
            branches.setdefault('|'.join(hook.deb_actions), {})[event] = text
    if not branches:
        return ''

    out = 'case "$1" in\n'
    for label, events in branches.items():
        out += f"{label})\n"
        if slot == 'postinst':
            install = events.get(LifecycleEvent.POST_INSTALL, '')
            upgrade = events.get(LifecycleEvent.POST_UPGRADE, '')
            if install == upgrade:
                out += install
            else:
                out += 'if [ -z "$2" ]; then\n'
                out += install or ':\n'
                out += 'else\n'
                out += upgrade or ':\n'
                out += 'fi\n'
        else:
            out += ''.join(events.values())
        out += ';;\n'
    out += 'esac\n'
    return out


class DebEmitter(Emitter):
    """Emit .deb packages through ``dpkg-deb --build``."""

    format = PackageFormat.DEB
    tool = 'dpkg-deb'

    def filename(self, pkg: IntermediatePackage) -> str:
        arch = native_arch(pkg.arch, self.format)
        return f"{pkg.name}_{deb_file_version(pkg.version)}_{arch}.deb"

    def control(self, pkg: IntermediatePackage, dep_map: DepNameMap) -> str:
        fields = [
            ('Package', pkg.name),
            ('Version', pkg.version),
            ('Architecture', native_arch(pkg.arch, self.format)),
            ('Maintainer', pkg.maintainer or DEFAULT_MAINTAINER),
            ('Installed-Size', str(max(1, (pkg.installed_size() + 1023) // 1024))),
        ]
        relations = [
            ('Depends', self.translate_names(pkg, pkg.depends, dep_map)),
            ('Provides', pkg.provides),
            ('Conflicts', self.translate_names(pkg, pkg.conflicts, dep_map)),
            ('Replaces', self.translate_names(pkg, pkg.replaces, dep_map)),
        ]
        fields.extend((key, ', '.join(values)) for key, values in relations if values)
        fields.append(('Section', 'misc'))
        fields.append(('Priority', 'optional'))
        fields.append(('Description', encode_description(pkg.summary or pkg.name,
                                                         pkg.description)))
        return ''.join(f"{key}: {value}\n" for key, value in fields)

    def maintainer_scripts(self, pkg: IntermediatePackage) -> Dict[str, str]:
        """Script slot -> complete maintainer script text."""
        if not self.cross_format(pkg):
            return {slot: pkg.scripts[slot] for slot in DEB_SCRIPTS if pkg.script(slot)}

        from_rpm = pkg.source_format == PackageFormat.RPM
        bodies = event_bodies(pkg, self.format, include_scripts=not from_rpm)
        result = {}
        for slot in DEB_SCRIPTS:
            text = ''
            if from_rpm and pkg.script(slot):
                body = scripts.translate(pkg.scripts[slot], PackageFormat.RPM, self.format,
                                         rpm_arg=scripts.RPM_RUNTIME_ARG)
                if body:
                    text += '_RPM_ARG=\n' + RPM_ARG_PREAMBLE[slot]
                    text += 'if [ -n "$_RPM_ARG" ]; then\n' + body + 'fi\n'
            dispatch = deb_dispatch(slot, bodies)
            if dispatch:
                text += ('\n' if text else '') + dispatch
            if text:
                result[slot] = '#!/bin/sh\n\n' + text
        return result

    def stage(self, pkg: IntermediatePackage, staging: Path, dep_map: DepNameMap) -> Path:
        root = staging / 'pkg'
        self.copy_tree(pkg, root)
        root.chmod(0o755)
        debian = root / 'DEBIAN'
        debian.mkdir(exist_ok=True)
        debian.chmod(0o755)

        (debian / 'control').write_text(self.control(pkg, dep_map))

        conffiles = pkg.existing_conffiles()
        if conffiles:
            (debian / 'conffiles').write_text(''.join(f"{c}\n" for c in conffiles))

        for slot, text in self.maintainer_scripts(pkg).items():
            path = debian / slot
            path.write_bytes(text.encode('utf-8', errors='surrogateescape'))
            path.chmod(0o755)
        return root

    def assemble(self, pkg: IntermediatePackage, staging: Path, output_dir: Path) -> Path:
        output = output_dir / self.filename(pkg)
        try:
            self.run_tool([self.tool, '--build', '--root-owner-group', staging / 'pkg', output])
        except BuildFailed:
            output.unlink(missing_ok=True)
            raise
        return output
