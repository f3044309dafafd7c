"""
.MTREE generation for pacman packages.

pacman verifies installed files against this manifest (``pacman -Qkk``).
It is a gzip-compressed mtree(5) listing of every other archive member.
"""

import gzip
import hashlib
from pathlib import Path
from typing import List, Optional

from ..intermediate import FileEntry

_CHUNK = 1024 * 1024


def mtree_escape(path: str) -> str:
    """Escape whitespace, non-ASCII and special bytes as ``\\ooo`` octal."""
    out = []
    for byte in path.encode('utf-8', errors='surrogateescape'):
        if byte <= 32 or byte >= 127 or byte in (ord('\\'), ord('#')):
            out.append(f"\\{byte:03o}")
        else:
            out.append(chr(byte))
    return ''.join(out)


def _digests(source: Optional[Path] = None, data: Optional[bytes] = None):
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    if data is not None:
        md5.update(data)
        sha256.update(data)
    else:
        with open(source, 'rb') as f:
            for chunk in iter(lambda: f.read(_CHUNK), b''):
                md5.update(chunk)
                sha256.update(chunk)
    return md5.hexdigest(), sha256.hexdigest()


class MtreeBuilder:
    """Accumulates mtree lines in archive order."""

    def __init__(self):
        self.lines: List[str] = ['#mtree', '/set type=file uid=0 gid=0 mode=644']

    def add_bytes(self, name: str, data: bytes, mtime: int, mode: int = 0o644):
        """Add an in-memory metadata member such as .PKGINFO."""
        md5, sha256 = _digests(data=data)
        self.lines.append(
            f"./{mtree_escape(name)} time={mtime}.0 mode={mode:o} size={len(data)} "
            f"md5digest={md5} sha256digest={sha256}"
        )

    def add_entry(self, entry: FileEntry):
        """Add a node of the package file tree."""
        name = '.' + mtree_escape(entry.path)
        if entry.kind == 'dir':
            self.lines.append(f"{name} time={entry.mtime}.0 mode={entry.mode:o} type=dir")
        elif entry.kind == 'link':
            self.lines.append(
                f"{name} time={entry.mtime}.0 mode=777 type=link "
                f"link={mtree_escape(entry.link_target or '')}"
            )
        else:
            md5, sha256 = _digests(source=entry.source)
            self.lines.append(
                f"{name} time={entry.mtime}.0 mode={entry.mode:o} size={entry.size} "
                f"md5digest={md5} sha256digest={sha256}"
            )

    def text(self) -> str:
        return '\n'.join(self.lines) + '\n'

    def compressed(self) -> bytes:
        return gzip.compress(self.text().encode('ascii'), mtime=0)
