"""Arch Linux .pkg.tar.{zst,xz,gz} extractor."""

import logging
import re
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..archive import extract_tar
from ..compression import CORRUPT_STREAM_ERRORS, decompress_stream
from ..errors import MalformedPackage
from ..formats import PackageFormat
from ..intermediate import IntermediatePackage, PACMAN_FUNCTION_SLOTS, dedupe
from .base import Extractor, PackageInfo, prepare_output, strip_constraint

logger = logging.getLogger(__name__)

METADATA_MEMBERS = ('.PKGINFO', '.MTREE', '.INSTALL', '.BUILDINFO', '.CHANGELOG')

_FUNCTION_RE = re.compile(
    r'^[ \t]*(?:function[ \t]+)?(' + '|'.join(PACMAN_FUNCTION_SLOTS) + r')[ \t]*\([ \t]*\)',
    re.MULTILINE,
)


def parse_pkginfo(text: str) -> Dict[str, List[str]]:
    """Parse .PKGINFO into key -> list of values (keys may repeat)."""
    fields: Dict[str, List[str]] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        fields.setdefault(key.strip(), []).append(value.strip())
    return fields


def _matching_brace(text: str, start: int) -> int:
    """Index of the '}' closing the '{' at text[start], skipping quotes and comments."""
    depth = 0
    i = start
    quote = None
    while i < len(text):
        c = text[i]
        if quote:
            if c == '\\' and quote == '"':
                i += 2
                continue
            if c == quote:
                quote = None
        elif c in ('"', "'"):
            quote = c
        elif c == '\\':
            i += 2
            continue
        elif c == '#' and (i == 0 or text[i - 1] in ' \t\n;'):
            newline = text.find('\n', i)
            i = len(text) if newline == -1 else newline
            continue
        elif c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def parse_install_functions(text: str) -> Dict[str, str]:
    """Extract pre_install/post_install/... bodies from an .INSTALL script.

    Returns:
        Dict mapping intermediate script slot to function body
    """
    scripts = {}
    for m in _FUNCTION_RE.finditer(text):
        brace = text.find('{', m.end())
        if brace == -1:
            continue
        end = _matching_brace(text, brace)
        if end == -1:
            logger.warning(f".INSTALL: unterminated function {m.group(1)}")
            continue
        body = text[brace + 1:end]
        if body.startswith('\n'):
            body = body[1:]
        body = body.rstrip(' \t')
        if body and not body.endswith('\n'):
            body += '\n'
        if body.strip():
            scripts[PACMAN_FUNCTION_SLOTS[m.group(1)]] = body
    return scripts


@contextmanager
def _open(path: Path) -> Iterator[tarfile.TarFile]:
    with open(path, 'rb') as f:
        try:
            tar = tarfile.open(fileobj=decompress_stream(f), mode='r|')
        except (tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
            raise MalformedPackage(f"{path.name}: not a readable tar archive: {e}")
        with tar:
            yield tar


def _read_metadata(path: Path) -> Dict[str, bytes]:
    wanted = {'.PKGINFO', '.INSTALL'}
    found = {}
    try:
        with _open(path) as tar:
            for member in tar:
                name = member.name[2:] if member.name.startswith('./') else member.name
                if name in wanted and member.isfile():
                    src = tar.extractfile(member)
                    if src is not None:
                        found[name] = src.read()
                    if wanted <= set(found):
                        break
    except (tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
        raise MalformedPackage(f"{path.name}: corrupt archive: {e}")
    if '.PKGINFO' not in found:
        raise MalformedPackage(f"{path.name}: .PKGINFO not found")
    return found


class PacmanExtractor(Extractor):
    """Extract pacman packages (.PKGINFO, optional .INSTALL, payload)."""

    format = PackageFormat.PACMAN

    @staticmethod
    def _fields(path: Path, raw: bytes) -> Dict[str, List[str]]:
        fields = parse_pkginfo(raw.decode('utf-8', errors='replace'))
        for required in ('pkgname', 'pkgver'):
            if not fields.get(required):
                raise MalformedPackage(f"{path.name}: .PKGINFO lacks {required}")
        return fields

    @staticmethod
    def _names(fields: Dict[str, List[str]], key: str) -> List[str]:
        return dedupe(strip_constraint(v) for v in fields.get(key, []))

    def inspect(self, path: Path) -> PackageInfo:
        fields = self._fields(path, _read_metadata(path)['.PKGINFO'])
        return PackageInfo(
            name=fields['pkgname'][0],
            version=fields['pkgver'][0],
            arch=fields.get('arch', ['any'])[0],
            source_format=self.format,
            depends=self._names(fields, 'depend'),
            provides=self._names(fields, 'provides'),
        )

    def extract(self, path: Path, output_dir: Path,
                source_distro: Optional[str] = None) -> IntermediatePackage:
        path = Path(path)
        output_dir = Path(output_dir)
        root = prepare_output(output_dir)

        try:
            metadata = _read_metadata(path)
            fields = self._fields(path, metadata['.PKGINFO'])
            with _open(path) as tar:
                extract_tar(tar, root, exclude=METADATA_MEMBERS)
        except (MalformedPackage, tarfile.TarError, *CORRUPT_STREAM_ERRORS) as e:
            self._fail(output_dir, str(e))

        scripts = {}
        if '.INSTALL' in metadata:
            scripts = parse_install_functions(
                metadata['.INSTALL'].decode('utf-8', errors='surrogateescape'))

        pkg = IntermediatePackage(
            name=fields['pkgname'][0],
            version=fields['pkgver'][0],
            arch=fields.get('arch', ['any'])[0],
            source_format=self.format,
            root=root,
            description=fields.get('pkgdesc', [''])[0],
            maintainer=fields.get('packager', [''])[0],
            source_distro=source_distro or 'unknown',
            depends=self._names(fields, 'depend'),
            provides=self._names(fields, 'provides'),
            conflicts=self._names(fields, 'conflict'),
            replaces=self._names(fields, 'replaces'),
            conffiles=['/' + b.lstrip('/') for b in fields.get('backup', [])],
            scripts=scripts,
        )
        pkg.save(output_dir)
        logger.info(f"Extracted {pkg.name} {pkg.version} ({pkg.arch}) from {path.name}")
        return pkg
