"""
Table header and field descriptor array of a .dbf file.

Layout:
- 32 byte header: version, last update (YY MM DD), record count,
  header size, record size, table flags (28), language driver (29)
- one 32 byte descriptor per field
- 0x0D terminator (followed by the 263 byte backlink in Visual FoxPro)
"""

import datetime
import logging
import struct
from dataclasses import dataclass, field as dataclass_field
from typing import BinaryIO, List, Optional, Sequence

from dbf_errors import DBFIOError, InvalidFieldDescriptor, InvalidHeader
from dbf_field import FieldFlags, FieldInfo, FieldName, FieldType
from dbf_memo import MemoVariant


logger = logging.getLogger(__name__)

# Constants
DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_HEADER_TERMINATOR = 0x0D
DBF_EOF_MARKER = 0x1A
DBF_VFP_BACKLINK_SIZE = 263
DBF_MAX_FIELDS = 255
DBF_MAX_RECORD_SIZE = 0xFFFF
DBF_LANG_US = 0x01
DBF_LANG_WESTERN_EUROPE = 0x02
DBF_LANG_JAPAN = 0x7B
DBF_TABLE_FLAG_HAS_MEMO = 0x02  # Visual FoxPro
DBF_MIN_YEAR = 1900  # last update year is stored as one byte, years since 1900
DBF_MAX_YEAR = 1900 + 0xFF

DBF_VERSION_DBASE3 = 0x03
DBF_VERSION_DBASE3_MEMO = 0x83
DBF_VERSION_DBASE4 = 0x04
DBF_VERSION_DBASE4_MEMO = 0x8B
DBF_VERSION_FOXPRO_MEMO = 0xF5
DBF_VERSION_VISUAL_FOXPRO = 0x30

# all dbase versions
DBF_FILE_TYPE = {
    0x02: 'FoxBASE',
    0x03: 'FoxBASE+/Dbase III plus, no memo',
    0x04: 'dBase IV, no memo',
    0x05: 'dBase V, no memo',
    0x30: 'Visual FoxPro',
    0x31: 'Visual FoxPro, autoincrement enabled',
    0x32: 'Visual FoxPro with field type Varchar or Varbinary',
    0x43: 'dBASE IV SQL table files, no memo',
    0x63: 'dBASE IV SQL system files, no memo',
    0x7B: 'dBASE IV with memo',
    0x83: 'FoxBASE+/dBASE III PLUS, with memo',
    0x8B: 'dBASE IV with memo',
    0x8E: 'dBASE IV with SQL table',
    0xCB: 'dBASE IV SQL table files, with memo',
    0xF5: 'FoxPro 2.x (or earlier) with memo',
    0xE5: 'HiPer-Six format with SMT memo file',
    0xFB: 'FoxBASE',
}

VISUAL_FOXPRO_VERSIONS = frozenset({0x30, 0x31, 0x32})
FOXPRO_MEMO_VERSIONS = VISUAL_FOXPRO_VERSIONS | {0xF5, 0xFB}
DBASE4_MEMO_VERSIONS = frozenset({0x7B, 0x8B, 0x8E, 0xCB})
MEMO_VERSIONS = DBASE4_MEMO_VERSIONS | {0x83, 0xE5, 0xF5, 0xFB}

# version without memo -> version with memo
_MEMO_VERSION_OF = {
    DBF_VERSION_DBASE3: DBF_VERSION_DBASE3_MEMO,
    DBF_VERSION_DBASE4: DBF_VERSION_DBASE4_MEMO,
}
_PLAIN_VERSION_OF = {memo: plain for plain, memo in _MEMO_VERSION_OF.items()}


@dataclass
class DBFHeader:
    """Table-level metadata of a .dbf file."""
    version: int = DBF_VERSION_DBASE3
    last_update: Optional[datetime.date] = None
    record_count: int = 0
    header_length: int = 0
    record_length: int = 0
    table_flags: int = 0  # dBase IV / Visual FoxPro table flags
    language_driver: int = 0
    fields: List[FieldInfo] = dataclass_field(default_factory=list)
    terminator: int = DBF_HEADER_TERMINATOR

    @property
    def field_count(self) -> int:
        return len(self.fields)

    @property
    def is_visual_foxpro(self) -> bool:
        return self.version in VISUAL_FOXPRO_VERSIONS

    @property
    def has_memo_fields(self) -> bool:
        return any(f.field_type is FieldType.MEMO for f in self.fields)

    @property
    def has_memo(self) -> bool:
        """True when the signature byte or the table flags announce a memo file."""
        if self.version in MEMO_VERSIONS:
            return True
        if self.is_visual_foxpro and self.table_flags & DBF_TABLE_FLAG_HAS_MEMO:
            return True
        return self.has_memo_fields

    @property
    def memo_variant(self) -> MemoVariant:
        if self.version in FOXPRO_MEMO_VERSIONS:
            return MemoVariant.FOXPRO
        if self.version in DBASE4_MEMO_VERSIONS:
            return MemoVariant.DBASE4
        return MemoVariant.DBASE3

    @property
    def description(self) -> str:
        return DBF_FILE_TYPE.get(self.version, f"Unknown (0x{self.version:02X})")

    def record_offset(self, index: int) -> int:
        """Absolute position of record index (zero-based)."""
        return self.header_length + index * self.record_length

    def encode(self) -> bytes:
        """The header, descriptor array and terminator as written on disk."""
        buf = bytearray(DBF_HEADER_SIZE)
        buf[0] = self.version
        if self.last_update is not None:
            check_last_update(self.last_update)
            buf[1] = self.last_update.year - 1900
            buf[2] = self.last_update.month
            buf[3] = self.last_update.day
        buf[4:8] = struct.pack("<L", self.record_count)
        buf[8:10] = struct.pack("<H", self.header_length)
        buf[10:12] = struct.pack("<H", self.record_length)
        buf[28] = self.table_flags
        buf[29] = self.language_driver

        parts = [bytes(buf)]
        for info in self.fields:
            parts.append(encode_field_descriptor(info, self.is_visual_foxpro))
        parts.append(bytes([self.terminator]))
        if self.is_visual_foxpro:
            parts.append(b"\x00" * DBF_VFP_BACKLINK_SIZE)
        return b"".join(parts)


def check_last_update(last_update: datetime.date) -> None:
    """
    Raises:
        InvalidHeader: if the year cannot be stored in the header
    """
    if not DBF_MIN_YEAR <= last_update.year <= DBF_MAX_YEAR:
        raise InvalidHeader(
            f"Last update year {last_update.year} is outside {DBF_MIN_YEAR}..{DBF_MAX_YEAR}"
        )


def encode_field_descriptor(info: FieldInfo, with_displacement: bool = False) -> bytes:
    buf = bytearray(DBF_FIELD_DESCRIPTOR_SIZE)
    buf[0:11] = info.name.to_bytes()
    buf[11] = ord(info.type_code)
    if with_displacement:
        buf[12:16] = struct.pack("<L", info.offset)
    buf[16] = info.length
    buf[17] = info.decimal_count
    buf[18] = int(info.flags) & 0xFF
    return bytes(buf)


def decode_field_descriptor(buf: bytes) -> FieldInfo:
    """
    Parse one 32 byte field descriptor.

    Raises:
        InvalidFieldType: if the type code is unknown
        FieldNameTooLong: if the name fills its whole slot
    """
    type_code = chr(buf[11])
    length = buf[16]
    return FieldInfo(
        name=FieldName.from_bytes(buf[0:11]),
        field_type=FieldType.from_code(type_code, length),
        length=length,
        decimal_count=buf[17],
        flags=FieldFlags(buf[18]),
        type_code=type_code,
    )


def layout_fields(fields: Sequence[FieldInfo]) -> List[FieldInfo]:
    """Assign record offsets; the first field starts after the delete flag."""
    offset = 1
    placed = []
    for info in fields:
        placed.append(info.with_offset(offset))
        offset += info.length
    return placed


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise DBFIOError(f"Unexpected end of file while reading {what}")
    return data


def _decode_last_update(year: int, month: int, day: int) -> Optional[datetime.date]:
    try:
        return datetime.date(1900 + year, month, day)
    except ValueError:
        return None


def read_dbf_header(stream: BinaryIO) -> DBFHeader:
    """
    Read a DBF header and its field descriptors from the current position.

    Descriptors are read until the 0x0D terminator.

    Raises:
        DBFIOError: if the stream ends before the terminator
        InvalidHeader: if the record size cannot hold the declared fields
    """
    buf = _read_exact(stream, DBF_HEADER_SIZE, "the table header")
    header = DBFHeader(
        version=buf[0],
        last_update=_decode_last_update(buf[1], buf[2], buf[3]),
        record_count=struct.unpack("<L", buf[4:8])[0],
        header_length=struct.unpack("<H", buf[8:10])[0],
        record_length=struct.unpack("<H", buf[10:12])[0],
        table_flags=buf[28],
        language_driver=buf[29],
    )

    fields = []
    while True:
        # Peek 1 byte
        first = _read_exact(stream, 1, "the field descriptors")
        if first[0] == DBF_HEADER_TERMINATOR:
            break
        rest = _read_exact(stream, DBF_FIELD_DESCRIPTOR_SIZE - 1, "a field descriptor")
        fields.append(decode_field_descriptor(first + rest))
    header.terminator = first[0]
    header.fields = layout_fields(fields)

    needed = 1 + sum(f.length for f in header.fields)
    if header.record_length < needed:
        raise InvalidHeader(
            f"Record size {header.record_length} cannot hold fields needing {needed} bytes"
        )
    minimum_header = DBF_HEADER_SIZE + DBF_FIELD_DESCRIPTOR_SIZE * len(fields) + 1
    if header.header_length < minimum_header:
        raise InvalidHeader(
            f"Header size {header.header_length} is smaller than its {len(fields)} descriptors"
        )

    logger.debug("read %s header: %d fields, %d records of %d bytes",
                 header.description, header.field_count, header.record_count,
                 header.record_length)
    return header


def write_dbf_header(stream: BinaryIO, header: DBFHeader) -> None:
    """Write the DBF header at the current position."""
    stream.write(header.encode())


def resolve_version(version: Optional[int], has_memo: bool) -> int:
    """
    Pick the signature byte for a new table.

    dBase III and IV signatures are moved to (or away from) their memo
    flavour according to has_memo; other known signatures are kept.
    """
    if version is None:
        version = DBF_VERSION_DBASE3
    if version not in DBF_FILE_TYPE:
        raise InvalidHeader(f"Unknown table version 0x{version:02X}")
    if has_memo:
        return _MEMO_VERSION_OF.get(version, version)
    return _PLAIN_VERSION_OF.get(version, version)


def build_dbf_header(fields: Sequence[FieldInfo], version: Optional[int] = None,
                     last_update: Optional[datetime.date] = None,
                     language_driver: int = 0) -> DBFHeader:
    """
    Initialize a DBF header for a new table holding fields.

    Record offsets, record size and header size are computed here; the
    record count starts at 0.

    Raises:
        InvalidFieldDescriptor: if the schema is empty, too wide or has duplicate names
        InvalidHeader: if last_update cannot be stored
    """
    if last_update is not None:
        check_last_update(last_update)
    if not fields:
        raise InvalidFieldDescriptor("A table needs at least one field")
    if len(fields) > DBF_MAX_FIELDS:
        raise InvalidFieldDescriptor(f"A table holds at most {DBF_MAX_FIELDS} fields")
    seen = set()
    for info in fields:
        key = info.name.upper()
        if key in seen:
            raise InvalidFieldDescriptor(f"Duplicate field name '{info.name}'")
        seen.add(key)

    has_memo = any(f.field_type is FieldType.MEMO for f in fields)
    header = DBFHeader(
        version=resolve_version(version, has_memo),
        last_update=last_update,
        language_driver=language_driver,
    )
    if header.is_visual_foxpro and has_memo:
        header.table_flags |= DBF_TABLE_FLAG_HAS_MEMO

    header.fields = layout_fields(fields)
    header.record_length = 1 + sum(f.length for f in header.fields)
    if header.record_length > DBF_MAX_RECORD_SIZE:
        raise InvalidFieldDescriptor(
            f"Record size {header.record_length} exceeds {DBF_MAX_RECORD_SIZE} bytes"
        )
    header.header_length = DBF_HEADER_SIZE + DBF_FIELD_DESCRIPTOR_SIZE * len(fields) + 1
    if header.is_visual_foxpro:
        header.header_length += DBF_VFP_BACKLINK_SIZE
    return header
