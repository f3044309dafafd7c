"""
Compression utilities for crosspkg

Package payloads come in every compression the three formats allow:
- zstd (Arch, recent Debian/Ubuntu, Fedora)
- xz/lzma (older Debian, Fedora, Arch)
- gzip (legacy)
- bzip2 (legacy rpm)
"""

import bz2
import gzip
import lzma
import struct
import zlib
from typing import BinaryIO

import zstandard

# Magic bytes for format detection
MAGIC_ZSTD = b'\x28\xb5\x2f\xfd'
MAGIC_GZIP = b'\x1f\x8b'
MAGIC_XZ = b'\xfd7zXZ\x00'
MAGIC_LZMA = b'\x5d\x00\x00'
MAGIC_BZ2 = b'BZh'

# zstd level used for pacman packages (makepkg default is 19 with -T0)
ZSTD_LEVEL = 19


# Raised while reading a truncated or corrupt compressed stream
CORRUPT_STREAM_ERRORS = (
    OSError, EOFError, ValueError, struct.error,
    lzma.LZMAError, zlib.error, zstandard.ZstdError,
)


def detect_format(data: bytes) -> str:
    """Detect compression format from magic bytes.

    Args:
        data: First 8+ bytes of the stream

    Returns:
        Format name: 'zstd', 'gzip', 'xz', 'lzma', 'bzip2', or 'plain'
    """
    if data[:4] == MAGIC_ZSTD:
        return 'zstd'
    elif data[:2] == MAGIC_GZIP:
        return 'gzip'
    elif data[:6] == MAGIC_XZ:
        return 'xz'
    elif data[:3] == MAGIC_BZ2:
        return 'bzip2'
    elif data[:3] == MAGIC_LZMA:
        return 'lzma'
    else:
        return 'plain'


def decompress_stream(fileobj: BinaryIO) -> BinaryIO:
    """Wrap a binary stream so reads return decompressed data.

    The stream must support peeking its first bytes via seek().

    Args:
        fileobj: Seekable binary stream positioned at the compressed data

    Returns:
        File-like object for reading decompressed data
    """
    start = fileobj.tell()
    magic = fileobj.read(8)
    fileobj.seek(start)
    fmt = detect_format(magic)

    if fmt == 'zstd':
        dctx = zstandard.ZstdDecompressor()
        return dctx.stream_reader(fileobj, read_across_frames=True)
    elif fmt == 'gzip':
        return gzip.GzipFile(fileobj=fileobj, mode='rb')
    elif fmt in ('xz', 'lzma'):
        return lzma.LZMAFile(fileobj, mode='rb')
    elif fmt == 'bzip2':
        return bz2.BZ2File(fileobj, mode='rb')
    else:
        return fileobj


def zstd_compress_stream(fileobj: BinaryIO, level: int = ZSTD_LEVEL):
    """Open a zstd writer over fileobj; closing it flushes the frame."""
    cctx = zstandard.ZstdCompressor(level=level, threads=-1)
    return cctx.stream_writer(fileobj, closefd=False)
