"""Fixtures building small but real .deb, .rpm and .pkg.tar.zst packages."""

import gzip
import io
import struct
import tarfile

import pytest
import zstandard

from crosspkg.core import rpmheader as rh

MTIME = 1700000000


# =============================================================================
# Archive writers
# =============================================================================

def ar_archive(members):
    """ar archive from [(name, data)]."""
    out = bytearray(b'!<arch>\n')
    for name, data in members:
        header = (f"{name:<16}{MTIME:<12}{0:<6}{0:<6}{'100644':<8}{len(data):<10}`\n")
        out += header.encode('ascii') + data
        if len(data) % 2:
            out += b'\n'
    return bytes(out)


def tar_archive(entries, mode='w:gz'):
    """tar from entries: ('file', name, data[, mode]), ('dir', name), ('symlink', name, target)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        for entry in entries:
            kind, name = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            info.mtime = MTIME
            if kind == 'dir':
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif kind == 'symlink':
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
                tar.addfile(info)
            else:
                data = entry[2]
                info.size = len(data)
                info.mode = entry[3] if len(entry) > 3 else 0o644
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def cpio_newc(entries):
    """newc cpio from entries: ('file', name, data, mode), ('dir', name), ('symlink', name, target)."""
    out = bytearray()

    def add(ino, name, mode, data=b''):
        namebytes = name.encode() + b'\x00'
        fields = [ino, mode, 0, 0, 1, MTIME, len(data), 0, 0, 0, 0, len(namebytes), 0]
        out.extend(b'070701' + b''.join(f"{v:08x}".encode() for v in fields) + namebytes)
        out.extend(b'\x00' * ((4 - len(out) % 4) % 4))
        out.extend(data)
        out.extend(b'\x00' * ((4 - len(out) % 4) % 4))

    for ino, entry in enumerate(entries, 1):
        kind, name = entry[0], entry[1]
        if kind == 'dir':
            add(ino, name, 0o040755)
        elif kind == 'symlink':
            add(ino, name, 0o120777, entry[2].encode())
        else:
            add(ino, name, 0o100000 | entry[3], entry[2])
    add(0, 'TRAILER!!!', 0)
    return bytes(out)


def rpm_header(tags):
    """Header structure from [(tag, type, value)]."""
    index = bytearray()
    store = bytearray()
    for tag, typ, value in tags:
        if typ in (rh.RPM_INT32, rh.RPM_INT16):
            width, fmt = (4, '>I') if typ == rh.RPM_INT32 else (2, '>H')
            store.extend(b'\x00' * ((width - len(store) % width) % width))
            offset = len(store)
            values = value if isinstance(value, list) else [value]
            for v in values:
                store.extend(struct.pack(fmt, v))
            count = len(values)
        elif typ == rh.RPM_STRING:
            offset = len(store)
            store.extend(value.encode() + b'\x00')
            count = 1
        else:
            offset = len(store)
            for v in value:
                store.extend(v.encode() + b'\x00')
            count = len(value)
        index.extend(struct.pack('>IIII', tag, typ, offset, count))
    return (rh.RPM_HEADER_MAGIC + b'\x01' + b'\x00' * 4
            + struct.pack('>II', len(tags), len(store)) + bytes(index) + bytes(store))


# =============================================================================
# Package factories
# =============================================================================

SAMPLE_CONTROL = """\
Package: libfoo1
Version: 1:1.2.3+dfsg-1ubuntu1
Architecture: arm64
Maintainer: Foo Maintainers <foo@example.org>
Installed-Size: 12
Pre-Depends: init-system-helpers (>= 1.54~)
Depends: libc6 (>= 2.34), libbar2 | libbar3, zlib1g:arm64 (>= 1:1.2.11)
Provides: libfoo
Conflicts: libfoo0
Description: foo shared library
 The foo library does foo things.
 .
 This package contains the runtime.
"""

SAMPLE_POSTINST = """\
#!/bin/sh
set -e

case "$1" in
    configure)
        adduser --system --group --home /var/lib/foo --no-create-home foo
        ldconfig
    ;;

    abort-upgrade|abort-remove|abort-deconfigure)
    ;;

    *)
        echo "postinst called with unknown argument \\`$1'" >&2
        exit 1
    ;;
esac

#DEBHELPER#

exit 0
"""

SAMPLE_PREINST = """\
#!/bin/sh
set -e
case "$1" in
    install)
        echo fresh-install
        ;;
    upgrade)
        echo upgrading-from "$2"
        ;;
esac
"""

SAMPLE_PRERM = """\
#!/bin/sh
set -e
if [ -d /run/systemd/system ] && [ "$1" = remove ]; then
    deb-systemd-invoke stop 'foo.service' >/dev/null || true
fi
"""


@pytest.fixture
def make_deb(tmp_path):
    """Factory writing a .deb; defaults describe libfoo1 with a systemd unit."""

    def factory(name='libfoo1_1.2.3-1_arm64.deb', control=SAMPLE_CONTROL, files=None,
                scripts=None, conffiles=('/etc/foo/foo.conf',)):
        if files is None:
            files = [
                ('dir', './usr/lib/aarch64-linux-gnu'),
                ('file', './usr/lib/aarch64-linux-gnu/libfoo.so.1.2.3', b'\x7fELF-foo', 0o644),
                ('symlink', './usr/lib/aarch64-linux-gnu/libfoo.so.1', 'libfoo.so.1.2.3'),
                ('file', './etc/foo/foo.conf', b'level=1\n', 0o644),
                ('file', './usr/lib/systemd/system/foo.service', b'[Service]\n', 0o644),
            ]
        if scripts is None:
            scripts = {'preinst': SAMPLE_PREINST, 'postinst': SAMPLE_POSTINST,
                       'prerm': SAMPLE_PRERM}
        control_entries = [('file', './control', control.encode())]
        if conffiles:
            control_entries.append(('file', './conffiles',
                                    ''.join(f"{c}\n" for c in conffiles).encode()))
        for slot, body in scripts.items():
            control_entries.append(('file', f'./{slot}', body.encode(), 0o755))

        path = tmp_path / name
        path.write_bytes(ar_archive([
            ('debian-binary', b'2.0\n'),
            ('control.tar.gz', tar_archive(control_entries)),
            ('data.tar.gz', tar_archive(files)),
        ]))
        return path

    return factory


SAMPLE_RPM_PREIN = """\
if [ $1 -eq 1 ]; then
    getent group foo >/dev/null || groupadd -r foo
fi
if [ "$1" -ge 2 ]; then
    echo upgrading
fi
"""


@pytest.fixture
def make_rpm(tmp_path):
    """Factory writing a binary .rpm with a gzip'd newc payload."""

    def factory(name='foo', version='2.0', release='3.fc41', arch='aarch64',
                requires=('rpmlib(CompressedFileNames)', '/bin/sh', 'bar', 'libbaz'),
                provides=None, config=('/etc/foo.conf',), prein=SAMPLE_RPM_PREIN,
                files=None, filename=None):
        if files is None:
            files = [
                ('dir', './usr/share/foo'),
                ('file', './usr/bin/foo', b'#!/bin/sh\necho foo\n', 0o755),
                ('file', './etc/foo.conf', b'x=1\n', 0o644),
                ('file', './usr/lib64/libfoo.so.2', b'\x7fELF-foo2', 0o755),
                ('symlink', './usr/lib64/libfoo.so', 'libfoo.so.2'),
            ]
        if provides is None:
            provides = [name, f"{name}(aarch-64)", 'foo-tools']

        paths = [f[1][1:] for f in files]
        dirnames = sorted({p.rsplit('/', 1)[0] + '/' for p in paths})
        tags = [
            (rh.RPMTAG_NAME, rh.RPM_STRING, name),
            (rh.RPMTAG_VERSION, rh.RPM_STRING, version),
            (rh.RPMTAG_RELEASE, rh.RPM_STRING, release),
            (rh.RPMTAG_SUMMARY, rh.RPM_I18NSTRING, ['Foo tools']),
            (rh.RPMTAG_DESCRIPTION, rh.RPM_I18NSTRING, ['Foo does things.']),
            (rh.RPMTAG_PACKAGER, rh.RPM_STRING, 'Fedora Project'),
            (rh.RPMTAG_ARCH, rh.RPM_STRING, arch),
            (rh.RPMTAG_FILEFLAGS, rh.RPM_INT32,
             [rh.RPMFILE_CONFIG if p in config else 0 for p in paths]),
            (rh.RPMTAG_PROVIDENAME, rh.RPM_STRING_ARRAY, list(provides)),
            (rh.RPMTAG_REQUIRENAME, rh.RPM_STRING_ARRAY, list(requires)),
            (rh.RPMTAG_DIRINDEXES, rh.RPM_INT32,
             [dirnames.index(p.rsplit('/', 1)[0] + '/') for p in paths]),
            (rh.RPMTAG_BASENAMES, rh.RPM_STRING_ARRAY, [p.rsplit('/', 1)[1] for p in paths]),
            (rh.RPMTAG_DIRNAMES, rh.RPM_STRING_ARRAY, dirnames),
            (rh.RPMTAG_PAYLOADCOMPRESSOR, rh.RPM_STRING, 'gzip'),
        ]
        if prein:
            tags.append((rh.RPMTAG_PREIN, rh.RPM_STRING, prein))
        tags.append((rh.RPMTAG_POSTUN, rh.RPM_STRING, 'rpm.execute("true")'))
        tags.append((rh.RPMTAG_POSTUNPROG, rh.RPM_STRING, '<lua>'))
        tags.sort(key=lambda t: t[0])

        lead = rh.RPM_LEAD_MAGIC + b'\x00' * (rh.RPM_LEAD_SIZE - 4)
        signature = rpm_header([])
        payload = gzip.compress(cpio_newc(files))
        path = tmp_path / (filename or f"{name}-{version}-{release}.{arch}.rpm")
        path.write_bytes(lead + signature + rpm_header(tags) + payload)
        return path

    return factory


SAMPLE_PKGINFO = """\
# Generated by makepkg
pkgname = bar
pkgbase = bar
pkgver = 3.1-2
pkgdesc = Bar utilities
packager = Arch Packager <arch@example.org>
arch = aarch64
size = 20
depend = glibc
depend = zlib>=1.2
provides = bar-bin=3.1
conflict = bar-git
backup = etc/bar.conf
"""

SAMPLE_INSTALL = """\
post_install() {
    echo "installed {braces} here"
    # } a comment brace
    systemctl daemon-reload
}

post_upgrade() {
  post_install
}

pre_remove() {
    echo bye
}
"""


@pytest.fixture
def make_pacman(tmp_path):
    """Factory writing a zstd-compressed pacman package."""

    def factory(pkginfo=SAMPLE_PKGINFO, install=SAMPLE_INSTALL, files=None,
                filename='bar-3.1-2-aarch64.pkg.tar.zst'):
        if files is None:
            files = [
                ('dir', 'usr/bin'),
                ('file', 'usr/bin/bar', b'#!/bin/sh\necho bar\n', 0o755),
                ('file', 'etc/bar.conf', b'y=2\n', 0o644),
            ]
        entries = [('file', '.PKGINFO', pkginfo.encode())]
        if install:
            entries.append(('file', '.INSTALL', install.encode()))
        entries.append(('file', '.MTREE', gzip.compress(b'#mtree\n')))
        entries.extend(files)
        raw = tar_archive(entries, mode='w')
        path = tmp_path / filename
        path.write_bytes(zstandard.ZstdCompressor().compress(raw))
        return path

    return factory
