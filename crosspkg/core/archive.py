"""
Low-level archive readers shared by the extractors.

- ar: the container format of .deb files
- cpio (SVR4 "newc"): the payload format of .rpm files
- tar: .deb data members and pacman packages

All writers into a package root go through ``safe_target`` so no member
can land outside the root, neither by ``..`` components nor by writing
through a symlink that points elsewhere.
"""

import logging
import os
import shutil
import stat
import tarfile
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Tuple

from .errors import MalformedPackage

logger = logging.getLogger(__name__)

AR_MAGIC = b'!<arch>\n'
AR_HEADER_SIZE = 60

CPIO_NEWC_MAGIC = (b'070701', b'070702')
CPIO_HEADER_SIZE = 110
CPIO_TRAILER = 'TRAILER!!!'


# =============================================================================
# ar
# =============================================================================

def iter_ar_members(f: BinaryIO) -> Iterator[Tuple[str, bytes]]:
    """Yield (name, data) for each member of an ar archive.

    Raises:
        MalformedPackage: If the magic or a member header is invalid
    """
    if f.read(len(AR_MAGIC)) != AR_MAGIC:
        raise MalformedPackage("not an ar archive")

    while True:
        header = f.read(AR_HEADER_SIZE)
        if not header:
            return
        if len(header) < AR_HEADER_SIZE or header[58:60] != b'`\n':
            raise MalformedPackage("truncated ar member header")

        name = header[0:16].decode('ascii', errors='replace').strip()
        # GNU ar terminates names with '/'
        if name.endswith('/') and name != '/':
            name = name[:-1]
        try:
            size = int(header[48:58].decode('ascii').strip())
        except ValueError:
            raise MalformedPackage(f"bad ar member size for {name}")

        data = f.read(size)
        if len(data) < size:
            raise MalformedPackage(f"truncated ar member {name}")
        if size % 2:
            f.read(1)
        yield name, data


def read_ar_members(path: Path) -> Dict[str, bytes]:
    """Read every member of an ar archive into a dict keyed by name."""
    with open(path, 'rb') as f:
        return dict(iter_ar_members(f))


# =============================================================================
# Path safety
# =============================================================================

def safe_target(root: Path, member_name: str) -> Path:
    """Resolve a member name to a path inside root.

    The parent directory is resolved (following symlinks already extracted)
    and must stay inside root; the final component is not followed so that
    the member itself may be a symlink.

    Raises:
        MalformedPackage: If the path escapes root
    """
    root_resolved = root.resolve()
    name = member_name.lstrip('/')
    while name.startswith('./'):
        name = name[2:]
    if name in ('', '.'):
        return root_resolved

    candidate = root_resolved / name
    parent = candidate.parent.resolve()
    if parent != root_resolved and root_resolved not in parent.parents:
        raise MalformedPackage(f"unsafe archive path: {member_name}")
    final = parent / candidate.name
    if candidate.name == '..':
        raise MalformedPackage(f"unsafe archive path: {member_name}")
    return final


def _prepare(target: Path):
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink() or target.is_file():
        target.unlink()


def _write_file(target: Path, src: BinaryIO, mode: int):
    _prepare(target)
    with open(target, 'wb') as out:
        shutil.copyfileobj(src, out)
    target.chmod(mode & 0o7777 or 0o644)


def _make_dir(target: Path, mode: int):
    if target.is_symlink():
        return
    target.mkdir(parents=True, exist_ok=True)
    # Keep directories writable so later members can be extracted into them
    target.chmod((mode & 0o7777 or 0o755) | 0o700)


def _make_symlink(target: Path, linkname: str):
    _prepare(target)
    if target.is_dir():
        shutil.rmtree(target)
    os.symlink(linkname, target)


# =============================================================================
# tar
# =============================================================================

def extract_tar(tar: tarfile.TarFile, root: Path, exclude: Tuple[str, ...] = ()) -> List[str]:
    """Extract a (possibly streaming) tar archive into root.

    Regular files, directories, symlinks and hardlinks are extracted.
    Device nodes and FIFOs are skipped with a warning.

    Args:
        tar: Open tar archive (``r:*`` or ``r|*`` mode)
        root: Destination root directory
        exclude: Top-level member names to skip (package metadata)

    Returns:
        Names of the extracted members, normalized without leading ``./``

    Raises:
        MalformedPackage: On unsafe member paths or read errors
    """
    root.mkdir(parents=True, exist_ok=True)
    extracted = []

    try:
        for member in tar:
            name = member.name
            while name.startswith('./'):
                name = name[2:]
            name = name.lstrip('/')
            if not name or name == '.' or name in exclude:
                continue

            target = safe_target(root, name)

            if member.isdir():
                _make_dir(target, member.mode)
            elif member.isfile():
                src = tar.extractfile(member)
                if src is None:
                    raise MalformedPackage(f"unable to read tar member: {member.name}")
                with src:
                    _write_file(target, src, member.mode)
            elif member.issym():
                _make_symlink(target, member.linkname)
            elif member.islnk():
                link_src = safe_target(root, member.linkname)
                if not link_src.exists():
                    raise MalformedPackage(
                        f"hardlink {member.name} points to missing {member.linkname}"
                    )
                _prepare(target)
                os.link(link_src, target)
            else:
                logger.warning(f"Skipping unsupported archive member: {member.name}")
                continue
            extracted.append(name)
    except (tarfile.TarError, EOFError) as e:
        raise MalformedPackage(f"corrupt tar archive: {e}")

    return extracted


# =============================================================================
# cpio (newc)
# =============================================================================

def _read_exact(f: BinaryIO, size: int) -> bytes:
    data = f.read(size)
    if len(data) < size:
        raise MalformedPackage("truncated cpio archive")
    return data


def _skip_padding(f: BinaryIO, consumed: int):
    pad = (4 - consumed % 4) % 4
    if pad:
        _read_exact(f, pad)


def extract_cpio(f: BinaryIO, root: Path) -> List[str]:
    """Extract an SVR4 newc cpio stream into root.

    Hardlinked files carry their data only on the last entry of the group;
    earlier entries are linked to it once the data arrives.

    Returns:
        Names of the extracted members, normalized without leading ``./``

    Raises:
        MalformedPackage: On bad magic, truncation or unsafe paths
    """
    root.mkdir(parents=True, exist_ok=True)
    extracted = []
    pending_links: Dict[Tuple[int, int], List[Path]] = {}

    while True:
        header = _read_exact(f, CPIO_HEADER_SIZE)
        if header[:6] not in CPIO_NEWC_MAGIC:
            raise MalformedPackage("unsupported cpio format (expected newc)")
        fields = [int(header[6 + i * 8:14 + i * 8], 16) for i in range(13)]
        ino, mode, _uid, _gid, nlink, _mtime, filesize = fields[:7]
        devmajor, devminor = fields[7], fields[8]
        namesize = fields[11]

        raw_name = _read_exact(f, namesize)
        _skip_padding(f, CPIO_HEADER_SIZE + namesize)
        name = raw_name.rstrip(b'\x00').decode('utf-8', errors='surrogateescape')
        if name == CPIO_TRAILER:
            break

        data = _read_exact(f, filesize)
        _skip_padding(f, filesize)

        while name.startswith('./'):
            name = name[2:]
        name = name.lstrip('/')
        if not name or name == '.':
            continue
        target = safe_target(root, name)

        if stat.S_ISDIR(mode):
            _make_dir(target, mode)
        elif stat.S_ISLNK(mode):
            _make_symlink(target, data.decode('utf-8', errors='surrogateescape'))
        elif stat.S_ISREG(mode):
            key = (devmajor << 32 | devminor, ino)
            if nlink > 1 and filesize == 0:
                pending_links.setdefault(key, []).append(target)
                extracted.append(name)
                continue
            _prepare(target)
            target.write_bytes(data)
            target.chmod(mode & 0o7777 or 0o644)
            for link in pending_links.pop(key, []):
                _prepare(link)
                os.link(target, link)
        else:
            logger.warning(f"Skipping unsupported cpio member: {name}")
            continue
        extracted.append(name)

    # Hardlink groups whose data never arrived are empty files
    for links in pending_links.values():
        for link in links:
            _prepare(link)
            link.touch()

    return extracted
