"""Debian .deb extractor."""

import io
import logging
import tarfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..archive import extract_tar, read_ar_members
from ..compression import CORRUPT_STREAM_ERRORS, decompress_stream
from ..errors import MalformedPackage
from ..formats import PackageFormat
from ..intermediate import IntermediatePackage, dedupe
from .base import Extractor, PackageInfo, prepare_output, strip_constraint

logger = logging.getLogger(__name__)

DEB_SCRIPTS = ('preinst', 'postinst', 'prerm', 'postrm')


def parse_control(text: str) -> Dict[str, str]:
    """Parse a control paragraph into a dict keyed by lowercase field name.

    Continuation lines are kept on their own lines (leading space removed),
    so multi-line Description values survive; relationship fields are
    flattened by the callers.
    """
    fields: Dict[str, str] = {}
    current_key: Optional[str] = None

    for line in text.splitlines():
        if not line.strip():
            if current_key and fields:
                # End of the first paragraph
                break
            continue

        if line[0].isspace() and current_key:
            fields[current_key] += '\n' + line[1:]
            continue

        if ':' not in line:
            continue

        key, value = line.split(':', 1)
        current_key = key.strip().lower()
        fields[current_key] = value.strip()

    return fields


def parse_relationship(value: str) -> List[str]:
    """Parse a Depends-style field into plain package names.

    'libc6 (>= 2.34), libgtk-3-0 | libgtk-3-1, python3:any'
        -> ['libc6', 'libgtk-3-0', 'python3']
    """
    names = []
    for raw_item in value.replace('\n', ' ').split(','):
        item = raw_item.strip()
        if not item:
            continue
        preferred = item.split('|', 1)[0].strip()
        name = strip_constraint(preferred)
        # Drop [arch] and <profile> restrictions, then the :arch qualifier
        name = name.split('[', 1)[0].split('<', 1)[0].strip()
        name = name.split(':', 1)[0].strip()
        if name:
            names.append(name)
    return names


def decode_description(value: str) -> str:
    """Turn a control Description into plain text (' .' lines are blank)."""
    lines = value.split('\n')
    body = ['' if line.strip() == '.' else line for line in lines[1:]]
    return '\n'.join([lines[0].strip()] + body).rstrip()


def _member(members: Dict[str, bytes], prefix: str) -> Tuple[str, bytes]:
    for name, data in members.items():
        if name == prefix or name.startswith(prefix + '.'):
            return name, data
    raise MalformedPackage(f"missing {prefix} member")


def _open_tar(data: bytes) -> tarfile.TarFile:
    stream = decompress_stream(io.BytesIO(data))
    return tarfile.open(fileobj=stream, mode='r|')


def _read_control_files(data: bytes) -> Dict[str, bytes]:
    files = {}
    try:
        with _open_tar(data) as tar:
            for member in tar:
                name = member.name
                while name.startswith('./'):
                    name = name[2:]
                if not member.isfile() or '/' in name:
                    continue
                src = tar.extractfile(member)
                if src is not None:
                    files[name] = src.read()
    except (tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
        raise MalformedPackage(f"corrupt control archive: {e}")
    return files


class DebExtractor(Extractor):
    """Extract .deb archives (ar with control.tar.* and data.tar.*)."""

    format = PackageFormat.DEB

    def _load(self, path: Path) -> Tuple[Dict[str, bytes], Dict[str, str], Dict[str, bytes]]:
        members = read_ar_members(path)
        if 'debian-binary' not in members:
            raise MalformedPackage(f"{path.name}: missing debian-binary member")
        _, control_data = _member(members, 'control.tar')
        control_files = _read_control_files(control_data)
        if 'control' not in control_files:
            raise MalformedPackage(f"{path.name}: control file not found")
        fields = parse_control(control_files['control'].decode('utf-8', errors='replace'))
        for required in ('package', 'version'):
            if not fields.get(required):
                raise MalformedPackage(f"{path.name}: control lacks {required.title()}")
        return members, fields, control_files

    def inspect(self, path: Path) -> PackageInfo:
        _, fields, _ = self._load(path)
        return PackageInfo(
            name=fields['package'],
            version=fields['version'],
            arch=fields.get('architecture', 'all'),
            source_format=self.format,
            depends=self._depends(fields),
            provides=parse_relationship(fields.get('provides', '')),
        )

    @staticmethod
    def _depends(fields: Dict[str, str]) -> List[str]:
        return dedupe(parse_relationship(fields.get('pre-depends', ''))
                      + parse_relationship(fields.get('depends', '')))

    def extract(self, path: Path, output_dir: Path,
                source_distro: Optional[str] = None) -> IntermediatePackage:
        path = Path(path)
        output_dir = Path(output_dir)
        root = prepare_output(output_dir)

        try:
            members, fields, control_files = self._load(path)
            _, data = _member(members, 'data.tar')
            with _open_tar(data) as tar:
                extract_tar(tar, root)
        except (MalformedPackage, tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
            self._fail(output_dir, f"{path.name}: {e}")

        conffiles = []
        if 'conffiles' in control_files:
            for line in control_files['conffiles'].decode('utf-8', errors='replace').splitlines():
                # dpkg marks obsolete conffiles with a trailing 'remove-on-upgrade'
                entry = line.strip().split()[0] if line.strip() else ''
                if entry:
                    conffiles.append(entry)

        scripts = {
            slot: control_files[slot].decode('utf-8', errors='surrogateescape')
            for slot in DEB_SCRIPTS if slot in control_files
        }

        pkg = IntermediatePackage(
            name=fields['package'],
            version=fields['version'],
            arch=fields.get('architecture', 'all'),
            source_format=self.format,
            root=root,
            description=decode_description(fields.get('description', '')),
            maintainer=fields.get('maintainer', ''),
            source_distro=source_distro or 'unknown',
            depends=self._depends(fields),
            provides=parse_relationship(fields.get('provides', '')),
            conflicts=parse_relationship(fields.get('conflicts', '')),
            replaces=parse_relationship(fields.get('replaces', '')),
            conffiles=conffiles,
            scripts=scripts,
        )
        pkg.save(output_dir)
        logger.info(f"Extracted {pkg.name} {pkg.version} ({pkg.arch}) from {path.name}")
        return pkg
