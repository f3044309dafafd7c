"""
RPM package header parser

Reads the lead, signature header and main header of a binary .rpm without
the rpm python bindings. Layout:

    lead (96 bytes, magic ed ab ee db)
    signature header, padded to an 8-byte boundary
    main header
    compressed cpio payload
"""

import struct
from typing import BinaryIO, Dict, List, Optional, Any, Tuple

from .errors import MalformedPackage

RPM_LEAD_MAGIC = b'\xed\xab\xee\xdb'
RPM_LEAD_SIZE = 96

# RPM Header magic (3 bytes)
RPM_HEADER_MAGIC = b'\x8e\xad\xe8'

# RPM Tag IDs
RPMTAG_NAME = 1000
RPMTAG_VERSION = 1001
RPMTAG_RELEASE = 1002
RPMTAG_EPOCH = 1003
RPMTAG_SUMMARY = 1004
RPMTAG_DESCRIPTION = 1005
RPMTAG_SIZE = 1009
RPMTAG_LICENSE = 1014
RPMTAG_PACKAGER = 1015
RPMTAG_URL = 1020
RPMTAG_ARCH = 1022
RPMTAG_PREIN = 1023
RPMTAG_POSTIN = 1024
RPMTAG_PREUN = 1025
RPMTAG_POSTUN = 1026
RPMTAG_FILEFLAGS = 1037
RPMTAG_PROVIDENAME = 1047
RPMTAG_REQUIRENAME = 1049
RPMTAG_CONFLICTNAME = 1054
RPMTAG_PREINPROG = 1085
RPMTAG_POSTINPROG = 1086
RPMTAG_PREUNPROG = 1087
RPMTAG_POSTUNPROG = 1088
RPMTAG_OBSOLETENAME = 1090
RPMTAG_BASENAMES = 1117
RPMTAG_DIRNAMES = 1118
RPMTAG_DIRINDEXES = 1116
RPMTAG_PAYLOADFORMAT = 1124
RPMTAG_PAYLOADCOMPRESSOR = 1125
RPMTAG_LONGSIZE = 5009

# RPM Data types
RPM_NULL = 0
RPM_CHAR = 1
RPM_INT8 = 2
RPM_INT16 = 3
RPM_INT32 = 4
RPM_INT64 = 5
RPM_STRING = 6
RPM_BIN = 7
RPM_STRING_ARRAY = 8
RPM_I18NSTRING = 9

# File flag bits
RPMFILE_CONFIG = 1 << 0

# Scriptlet tag -> (interpreter tag, intermediate script slot)
SCRIPTLET_TAGS = {
    RPMTAG_PREIN: (RPMTAG_PREINPROG, 'preinst'),
    RPMTAG_POSTIN: (RPMTAG_POSTINPROG, 'postinst'),
    RPMTAG_PREUN: (RPMTAG_PREUNPROG, 'prerm'),
    RPMTAG_POSTUN: (RPMTAG_POSTUNPROG, 'postrm'),
}


class RPMHeader:
    """Represents a parsed RPM header."""

    def __init__(self, index: List[tuple], store: bytes):
        self.index = index  # List of (tag, type, offset, count)
        self.store = store  # Raw data store
        self._cache: Dict[int, Any] = {}

    def _entry(self, tag: int) -> Optional[tuple]:
        for entry in self.index:
            if entry[0] == tag:
                return entry
        return None

    def _strings_at(self, offset: int, count: int) -> List[str]:
        strings = []
        pos = offset
        for _ in range(count):
            end = self.store.find(b'\x00', pos)
            if end == -1:
                strings.append(self.store[pos:].decode('utf-8', errors='replace'))
                break
            strings.append(self.store[pos:end].decode('utf-8', errors='replace'))
            pos = end + 1
        return strings

    def get_string(self, tag: int) -> Optional[str]:
        """Get a string tag value (first element for arrays and i18n strings)."""
        if tag in self._cache:
            return self._cache[tag]

        entry = self._entry(tag)
        if entry is None:
            return None
        _, typ, offset, count = entry
        if typ not in (RPM_STRING, RPM_STRING_ARRAY, RPM_I18NSTRING):
            return None
        strings = self._strings_at(offset, 1 if typ == RPM_STRING else count)
        value = strings[0] if strings else ''
        self._cache[tag] = value
        return value

    def get_int(self, tag: int) -> Optional[int]:
        """Get the first value of an integer tag."""
        values = self.get_int_array(tag)
        return values[0] if values else None

    def get_string_array(self, tag: int) -> List[str]:
        """Get a string array tag value."""
        entry = self._entry(tag)
        if entry is None:
            return []
        _, typ, offset, count = entry
        if typ == RPM_STRING:
            count = 1
        elif typ not in (RPM_STRING_ARRAY, RPM_I18NSTRING):
            return []
        return self._strings_at(offset, count)

    def get_int_array(self, tag: int) -> List[int]:
        """Get an integer array tag value (int16, int32 or int64)."""
        entry = self._entry(tag)
        if entry is None:
            return []
        _, typ, offset, count = entry
        fmt = {RPM_INT16: '>H', RPM_INT32: '>I', RPM_INT64: '>Q'}.get(typ)
        if fmt is None:
            return []
        width = struct.calcsize(fmt)
        return [
            struct.unpack(fmt, self.store[offset + i * width:offset + (i + 1) * width])[0]
            for i in range(count)
        ]

    @property
    def name(self) -> str:
        return self.get_string(RPMTAG_NAME) or ''

    @property
    def version(self) -> str:
        return self.get_string(RPMTAG_VERSION) or ''

    @property
    def release(self) -> str:
        return self.get_string(RPMTAG_RELEASE) or ''

    @property
    def epoch(self) -> int:
        return self.get_int(RPMTAG_EPOCH) or 0

    @property
    def arch(self) -> str:
        return self.get_string(RPMTAG_ARCH) or 'noarch'

    @property
    def summary(self) -> str:
        return self.get_string(RPMTAG_SUMMARY) or ''

    @property
    def description(self) -> str:
        return self.get_string(RPMTAG_DESCRIPTION) or ''

    @property
    def packager(self) -> str:
        return self.get_string(RPMTAG_PACKAGER) or ''

    @property
    def size(self) -> int:
        return self.get_int(RPMTAG_LONGSIZE) or self.get_int(RPMTAG_SIZE) or 0

    @property
    def evr(self) -> str:
        """[epoch:]version-release, the intermediate version shape."""
        evr = f"{self.version}-{self.release}" if self.release else self.version
        if self.epoch:
            return f"{self.epoch}:{evr}"
        return evr

    @property
    def provides(self) -> List[str]:
        return self.get_string_array(RPMTAG_PROVIDENAME)

    @property
    def requires(self) -> List[str]:
        return self.get_string_array(RPMTAG_REQUIRENAME)

    @property
    def conflicts(self) -> List[str]:
        return self.get_string_array(RPMTAG_CONFLICTNAME)

    @property
    def obsoletes(self) -> List[str]:
        return self.get_string_array(RPMTAG_OBSOLETENAME)

    @property
    def payload_compressor(self) -> str:
        return self.get_string(RPMTAG_PAYLOADCOMPRESSOR) or 'gzip'

    @property
    def filenames(self) -> List[str]:
        """Absolute paths of every file, rebuilt from dirnames/basenames."""
        basenames = self.get_string_array(RPMTAG_BASENAMES)
        dirnames = self.get_string_array(RPMTAG_DIRNAMES)
        dirindexes = self.get_int_array(RPMTAG_DIRINDEXES)
        return [dirnames[i] + b for b, i in zip(basenames, dirindexes)]

    @property
    def config_files(self) -> List[str]:
        """Paths flagged %config in the file list."""
        flags = self.get_int_array(RPMTAG_FILEFLAGS)
        return [path for path, flag in zip(self.filenames, flags)
                if flag & RPMFILE_CONFIG]

    def scriptlet(self, tag: int) -> Tuple[Optional[str], str]:
        """Return (body, interpreter) for a scriptlet tag; body None if absent."""
        prog_tag, _ = SCRIPTLET_TAGS[tag]
        body = self.get_string(tag)
        prog = self.get_string(prog_tag) or '/bin/sh'
        return body, prog


def read_header(f: BinaryIO) -> Optional[RPMHeader]:
    """Read a single RPM header from a binary stream.

    Args:
        f: Binary file stream positioned at header start

    Returns:
        RPMHeader object or None if no header magic at this position
    """
    magic = f.read(3)

    if not magic or len(magic) < 3:
        return None

    if magic != RPM_HEADER_MAGIC:
        return None

    # Skip version (1 byte) and reserved (4 bytes)
    f.read(5)

    # Read index count and data store size
    try:
        nindex, hsize = struct.unpack('>II', f.read(8))
    except struct.error:
        return None

    # Read index entries
    raw_index = f.read(16 * nindex)
    if len(raw_index) < 16 * nindex:
        return None
    index = [struct.unpack('>IIII', raw_index[i * 16:(i + 1) * 16])
             for i in range(nindex)]

    # Read data store
    store = f.read(hsize)
    if len(store) < hsize:
        return None

    return RPMHeader(index, store)


def read_package_header(f: BinaryIO) -> RPMHeader:
    """Read the main header of an .rpm file, leaving f at the payload.

    Raises:
        MalformedPackage: If the lead or either header is missing or truncated
    """
    lead = f.read(RPM_LEAD_SIZE)
    if len(lead) < RPM_LEAD_SIZE or lead[:4] != RPM_LEAD_MAGIC:
        raise MalformedPackage("not an RPM package (bad lead)")

    sig = read_header(f)
    if sig is None:
        raise MalformedPackage("RPM signature header missing or truncated")
    # Signature store is padded to a multiple of 8 bytes
    f.read((8 - len(sig.store) % 8) % 8)

    header = read_header(f)
    if header is None:
        raise MalformedPackage("RPM main header missing or truncated")
    if not header.name or not header.version:
        raise MalformedPackage("RPM header lacks name or version")
    return header
