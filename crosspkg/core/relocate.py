"""
Library path relocation between distro filesystem conventions.

Debian installs shared libraries under multiarch triplet directories,
Fedora under /usr/lib64, older packages under /lib. Before emitting for
another distro the libraries are moved to the target's canonical libdir,
and the old location becomes a relative symlink so RPATHs and dlopen()
paths baked into binaries keep resolving.
"""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

MULTIARCH_TRIPLETS = (
    'aarch64-linux-gnu',
    'arm-linux-gnueabihf',
    'x86_64-linux-gnu',
    'i386-linux-gnu',
)

# /lib subtrees owned by the kernel, firmware and udev; never moved
LIB_KEEP = ('firmware', 'modules', 'udev')


def _merge_tree(src: Path, dest: Path):
    """Move everything under src into dest, merging existing directories."""
    dest.mkdir(parents=True, exist_ok=True)
    for item in sorted(src.iterdir()):
        target = dest / item.name
        if item.is_dir() and not item.is_symlink() and target.is_dir() and not target.is_symlink():
            _merge_tree(item, target)
            item.rmdir()
            continue
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            shutil.rmtree(target)
        shutil.move(str(item), str(target))


def _replace_with_symlink(path: Path, dest: Path):
    """Replace directory path with a relative symlink to dest."""
    rel = os.path.relpath(dest, path.parent)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    os.symlink(rel, path)


def relocate_lib_paths(root: Path, target_libdir: str) -> bool:
    """Move libraries into target_libdir, leaving compat symlinks.

    Handles:
      1. Debian multiarch triplets: lib/<triplet>/, usr/lib/<triplet>/
      2. RPM lib64: usr/lib64/ when the target libdir is not /usr/lib64
      3. /lib -> /usr merge (merged-usr targets): files to the libdir,
         directories to /usr/lib, except firmware, modules, udev and symlinks

    Every step is idempotent: a tree that was already relocated (or never
    used these layouts) is left untouched.

    Args:
        root: The package file tree
        target_libdir: Absolute libdir of the target distro, e.g. /usr/lib64

    Returns:
        True if anything was moved
    """
    root = Path(root)
    if not root.is_dir():
        return False

    dest = root / target_libdir.lstrip('/')
    relocated = False

    # 1. Debian multiarch triplets
    for triplet in MULTIARCH_TRIPLETS:
        for prefix in ('lib', 'usr/lib'):
            src = root / prefix / triplet
            if not src.is_dir() or src.is_symlink():
                continue
            _merge_tree(src, dest)
            _replace_with_symlink(src, dest)
            relocated = True

    # 2. RPM lib64
    lib64 = root / 'usr/lib64'
    if target_libdir.rstrip('/') != '/usr/lib64' and lib64.is_dir() and not lib64.is_symlink():
        _merge_tree(lib64, dest)
        _replace_with_symlink(lib64, dest)
        relocated = True

    # 3. /lib -> /usr/lib
    lib = root / 'lib'
    if target_libdir.startswith('/usr/lib') and lib.is_dir() and not lib.is_symlink():
        moved = False
        for item in sorted(lib.iterdir()):
            if item.is_symlink() or item.name in LIB_KEEP:
                continue
            if item.name in MULTIARCH_TRIPLETS:
                # Already merged in step 1, the compat symlink stays
                continue
            # Libraries go to the libdir, other trees (systemd, security, ...)
            # follow the merged-usr layout
            target = (root / 'usr/lib' if item.is_dir() else dest) / item.name
            if item.is_dir() and target.is_dir() and not target.is_symlink():
                _merge_tree(item, target)
                item.rmdir()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(item), str(target))
            moved = True
        if moved:
            relocated = True
            if not any(lib.iterdir()):
                lib.rmdir()

    if relocated:
        logger.info(f"Relocated library paths -> {target_libdir}")
    return relocated
