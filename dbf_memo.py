"""
Memo files holding the variable-length content of memo fields.

A memo field only stores a block number in its fixed-width slot; the
content lives in a companion file next to the table:

- dBase III (.dbt): 512 byte blocks, the content is terminated by 0x1A.
- dBase IV (.dbt): each entry starts with FF FF 08 00 and its length.
- FoxPro (.fpt): big-endian header with the block size, each entry starts
  with its type and length.
"""

import logging
import struct
from enum import Enum
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple, Union

from dbf_errors import DBFIOError, ErrorOpeningMemoFile, InvalidFieldValue, io_errors


logger = logging.getLogger(__name__)

# Constants
DBF_MEMO_BLOCK_SIZE = 512
DBF_MEMO_HEADER_SIZE = 512
FOXPRO_MEMO_BLOCK_SIZE = 64
MEMO_TYPE_PICTURE = 0
MEMO_TYPE_TEXT = 1
MEMO_TERMINATOR = b"\x1A"
DBASE4_BLOCK_MARKER = b"\xff\xff\x08\x00"


class MemoVariant(Enum):
    """On-disk memo layouts."""
    DBASE3 = "dbase3"
    DBASE4 = "dbase4"
    FOXPRO = "foxpro"

    @property
    def extension(self) -> str:
        return ".fpt" if self is MemoVariant.FOXPRO else ".dbt"


def _read_until_terminator(stream: BinaryIO, block_size: int, index: int) -> bytes:
    """Read whole blocks from the current position until a 0x1A byte."""
    chunks = []
    while True:
        chunk = stream.read(block_size)
        if not chunk:
            if not chunks:
                raise DBFIOError(f"Memo block {index} is past the end of the memo file")
            break
        end = chunk.find(MEMO_TERMINATOR)
        if end >= 0:
            chunks.append(chunk[:end])
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _read_exact(stream: BinaryIO, size: int, index: int) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise DBFIOError(f"Memo block {index} is truncated")
    return data


class MemoFile:
    """
    A memo file open for reading and, when the stream allows it, appending.

    Subclasses describe one on-disk variant by implementing the header and
    block codecs; block addressing and allocation live here.
    """
    variant: MemoVariant = None
    default_block_size = DBF_MEMO_BLOCK_SIZE
    next_free_format = "<L"
    # Only variants recording the entry type can give bytes back as bytes
    stores_binary = False

    def __init__(self, stream: BinaryIO, block_size: int, next_free_block: int):
        self.stream = stream
        self.block_size = block_size
        self.next_free_block = next_free_block

    @classmethod
    def open(cls, stream: BinaryIO) -> "MemoFile":
        """
        Parse the header of an existing memo file.

        Raises:
            ErrorOpeningMemoFile: if the header cannot be read or is not understood
        """
        try:
            stream.seek(0)
            header = stream.read(DBF_MEMO_HEADER_SIZE)
        except OSError as e:
            raise ErrorOpeningMemoFile(f"Cannot read memo header: {e}") from e
        if len(header) < DBF_MEMO_HEADER_SIZE:
            raise ErrorOpeningMemoFile(
                f"Memo header is {len(header)} bytes long, expected {DBF_MEMO_HEADER_SIZE}"
            )

        next_free_block, block_size = cls._parse_header(header)
        if block_size <= 0:
            raise ErrorOpeningMemoFile(f"Unsupported memo block size {block_size}")
        logger.debug("opened %s memo: block size %d, next free block %d",
                     cls.variant.value, block_size, next_free_block)
        return cls(stream, block_size, next_free_block)

    @classmethod
    def create(cls, stream: BinaryIO, block_size: Optional[int] = None) -> "MemoFile":
        """Write an empty memo file (header only) to stream."""
        block_size = block_size or cls.default_block_size
        first_free = -(-DBF_MEMO_HEADER_SIZE // block_size)
        memo = cls(stream, block_size, first_free)
        with io_errors("creating memo file"):
            stream.seek(0)
            header = memo._build_header()
            stream.write(header)
            stream.write(b"\x00" * (first_free * block_size - len(header)))
        return memo

    @classmethod
    def _parse_header(cls, header: bytes) -> Tuple[int, int]:
        raise NotImplementedError

    def _build_header(self) -> bytes:
        raise NotImplementedError

    def _encode_block(self, data: bytes, memo_type: int) -> bytes:
        raise NotImplementedError

    def _read_payload(self, index: int) -> Tuple[int, bytes]:
        raise NotImplementedError

    def read_typed_block(self, index: int) -> Tuple[int, bytes]:
        """
        Read the content stored at block index.

        Returns:
            Tuple of (memo_type, data); memo_type is MEMO_TYPE_TEXT unless the
            variant records another type
        """
        if index * self.block_size < DBF_MEMO_HEADER_SIZE:
            raise DBFIOError(f"Memo block {index} lies inside the memo header")
        with io_errors(f"reading memo block {index}"):
            self.stream.seek(index * self.block_size)
            return self._read_payload(index)

    def read_block(self, index: int) -> bytes:
        return self.read_typed_block(index)[1]

    def append_block(self, data: bytes, memo_type: int = MEMO_TYPE_TEXT) -> int:
        """
        Store data in the next free block(s).

        Args:
            data: The content to store
            memo_type: MEMO_TYPE_TEXT or MEMO_TYPE_PICTURE (FoxPro only)

        Returns:
            The index of the first block used
        """
        block = self._encode_block(data, memo_type)
        index = self.next_free_block
        used = -(-len(block) // self.block_size)

        with io_errors(f"writing memo block {index}"):
            self.stream.seek(index * self.block_size)
            self.stream.write(block)
            self.stream.write(b"\x00" * (used * self.block_size - len(block)))
            self.next_free_block = index + used
            self.stream.seek(0)
            self.stream.write(struct.pack(self.next_free_format, self.next_free_block))

        logger.debug("appended %d bytes at memo block %d (%d blocks)", len(data), index, used)
        return index

    def flush(self) -> None:
        self.stream.flush()

    def close(self) -> None:
        self.stream.close()


class DBase3MemoFile(MemoFile):
    """dBase III .dbt: fixed 512 byte blocks, content ends with 0x1A 0x1A."""
    variant = MemoVariant.DBASE3

    @classmethod
    def _parse_header(cls, header):
        return struct.unpack("<L", header[0:4])[0], DBF_MEMO_BLOCK_SIZE

    def _build_header(self):
        buf = bytearray(DBF_MEMO_HEADER_SIZE)
        buf[0:4] = struct.pack("<L", self.next_free_block)
        buf[16] = 0x03
        return bytes(buf)

    def _encode_block(self, data, memo_type):
        if MEMO_TERMINATOR in data:
            raise InvalidFieldValue("dBase III memo content cannot contain the 0x1A terminator")
        return bytes(data) + MEMO_TERMINATOR * 2

    def _read_payload(self, index):
        return MEMO_TYPE_TEXT, _read_until_terminator(self.stream, self.block_size, index)


class DBase4MemoFile(MemoFile):
    """dBase IV .dbt: block size in the header, length-prefixed entries."""
    variant = MemoVariant.DBASE4

    @classmethod
    def _parse_header(cls, header):
        next_free_block = struct.unpack("<L", header[0:4])[0]
        block_size = struct.unpack("<H", header[20:22])[0] or DBF_MEMO_BLOCK_SIZE
        return next_free_block, block_size

    def _build_header(self):
        buf = bytearray(DBF_MEMO_HEADER_SIZE)
        buf[0:4] = struct.pack("<L", self.next_free_block)
        buf[20:22] = struct.pack("<H", self.block_size)
        return bytes(buf)

    def _encode_block(self, data, memo_type):
        # The stored length counts the 8 byte entry header
        return DBASE4_BLOCK_MARKER + struct.pack("<L", len(data) + 8) + bytes(data)

    def _read_payload(self, index):
        head = _read_exact(self.stream, 8, index)
        if head[0:4] != DBASE4_BLOCK_MARKER:
            # Entries copied over from dBase III files have no entry header
            self.stream.seek(index * self.block_size)
            return MEMO_TYPE_TEXT, _read_until_terminator(self.stream, self.block_size, index)
        length = struct.unpack("<L", head[4:8])[0] - 8
        return MEMO_TYPE_TEXT, _read_exact(self.stream, max(length, 0), index)


class FoxProMemoFile(MemoFile):
    """FoxPro .fpt: big-endian header and entries tagged with their type."""
    variant = MemoVariant.FOXPRO
    default_block_size = FOXPRO_MEMO_BLOCK_SIZE
    next_free_format = ">L"
    stores_binary = True

    @classmethod
    def _parse_header(cls, header):
        next_free_block = struct.unpack(">L", header[0:4])[0]
        block_size = struct.unpack(">H", header[6:8])[0]
        return next_free_block, block_size

    def _build_header(self):
        buf = bytearray(DBF_MEMO_HEADER_SIZE)
        buf[0:4] = struct.pack(">L", self.next_free_block)
        buf[6:8] = struct.pack(">H", self.block_size)
        return bytes(buf)

    def _encode_block(self, data, memo_type):
        return struct.pack(">LL", memo_type, len(data)) + bytes(data)

    def _read_payload(self, index):
        memo_type, length = struct.unpack(">LL", _read_exact(self.stream, 8, index))
        return memo_type, _read_exact(self.stream, length, index)


_MEMO_CLASSES = {
    MemoVariant.DBASE3: DBase3MemoFile,
    MemoVariant.DBASE4: DBase4MemoFile,
    MemoVariant.FOXPRO: FoxProMemoFile,
}


def open_memo_file(stream: BinaryIO, variant: MemoVariant) -> MemoFile:
    return _MEMO_CLASSES[variant].open(stream)


def create_memo_file(stream: BinaryIO, variant: MemoVariant,
                     block_size: Optional[int] = None) -> MemoFile:
    return _MEMO_CLASSES[variant].create(stream, block_size)


def memo_path_for(table_path: Union[str, Path], variant: MemoVariant) -> Path:
    """The memo path to create next to table_path, matching the extension case."""
    table_path = Path(table_path)
    extension = variant.extension
    if table_path.suffix.isupper():
        extension = extension.upper()
    return table_path.with_suffix(extension)


def memo_path_candidates(table_path: Union[str, Path], variant: MemoVariant) -> List[Path]:
    table_path = Path(table_path)
    preferred = memo_path_for(table_path, variant)
    candidates = [preferred]
    for extension in (variant.extension, variant.extension.upper()):
        path = table_path.with_suffix(extension)
        if path not in candidates:
            candidates.append(path)
    return candidates


def find_memo_file(table_path: Union[str, Path], variant: MemoVariant) -> Optional[Path]:
    """Return the existing companion memo file of table_path, or None."""
    for path in memo_path_candidates(table_path, variant):
        if path.exists():
            return path
    return None


def open_memo_path(path: Union[str, Path], variant: MemoVariant, mode: str = "rb") -> MemoFile:
    """
    Open the memo file at path.

    Raises:
        ErrorOpeningMemoFile: if the file cannot be opened or its header is invalid
    """
    try:
        stream = open(path, mode)
    except OSError as e:
        raise ErrorOpeningMemoFile(f"Cannot open memo file {path}: {e}") from e
    try:
        return open_memo_file(stream, variant)
    except ErrorOpeningMemoFile:
        stream.close()
        raise
