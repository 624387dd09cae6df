"""
Reading records out of a .dbf table.

Records are decoded lazily, one at a time, in physical order. They can be
obtained as Record mappings (field name -> FieldValue) or as instances of a
user class that pulls its fields in schema order from a FieldIterator.
"""

import logging
import os
from typing import Any, BinaryIO, Iterator, List, NamedTuple, Optional, Protocol, Union

from dbf_errors import (
    DBFIOError,
    EndOfRecord,
    NotEnoughFields,
    io_errors,
)
from dbf_field import (
    DEFAULT_ENCODING,
    FieldInfo,
    convert_field_value,
    decode_field_value,
)
from dbf_header import DBF_EOF_MARKER, DBFHeader, read_dbf_header
from dbf_memo import MemoFile, find_memo_file, open_memo_file, open_memo_path


logger = logging.getLogger(__name__)

DBF_DELETED_FLAG = ord("*")


class Record(dict):
    """
    One row of a table: field name -> FieldValue, in schema order.

    deleted mirrors the record's deletion flag; deleted records are returned
    like any other and it is up to the caller to skip them.
    """

    def __init__(self, *args, deleted: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.deleted = deleted

    def as_dict(self) -> dict:
        """Field name -> plain Python value (None when not set)."""
        return {name: value.value for name, value in self.items()}

    def __repr__(self):
        flag = ", deleted=True" if self.deleted else ""
        return f"Record({dict.__repr__(self)}{flag})"


class NamedValue(NamedTuple):
    name: str
    value: Any


class FieldIterator:
    """
    Cursor over the fields of one raw record.

    Fields can only be read forward, in schema order.
    """

    def __init__(self, fields: List[FieldInfo], record_data: bytes,
                 memo_file: Optional[MemoFile] = None, encoding: str = DEFAULT_ENCODING):
        self.fields = fields
        self.record_data = record_data
        self.memo_file = memo_file
        self.encoding = encoding
        self.index = 0

    @property
    def deleted(self) -> bool:
        return self.record_data[0] == DBF_DELETED_FLAG

    @property
    def remaining(self) -> int:
        return len(self.fields) - self.index

    def _next_field(self) -> FieldInfo:
        if self.index >= len(self.fields):
            raise EndOfRecord(f"The record only has {len(self.fields)} fields")
        info = self.fields[self.index]
        self.index += 1
        return info

    def read_next_field(self) -> NamedValue:
        """
        Decode the next field.

        Raises:
            EndOfRecord: if every field was already read
        """
        info = self._next_field()
        raw = self.record_data[info.offset:info.offset + info.length]
        return NamedValue(info.name, decode_field_value(raw, info, self.encoding, self.memo_file))

    def read_next_field_as(self, target) -> NamedValue:
        """
        Decode the next field and convert its value to target.

        Args:
            target: A Python type such as str, float or Optional[datetime.date]

        Raises:
            EndOfRecord: if every field was already read
            FieldConversionError: if the value cannot be converted
        """
        name, value = self.read_next_field()
        return NamedValue(name, convert_field_value(value, target))

    def skip_next_field(self) -> None:
        self._next_field()

    def __iter__(self) -> Iterator[NamedValue]:
        return self

    def __next__(self) -> NamedValue:
        if self.index >= len(self.fields):
            raise StopIteration
        return self.read_next_field()


class ReadableRecord(Protocol):
    """A class that builds itself from the fields of a record."""

    @classmethod
    def read_using(cls, field_iterator: FieldIterator) -> Any:
        ...


class Reader:
    """Reads the records of a .dbf table from a binary stream."""

    def __init__(self, source: BinaryIO, memo_source: Optional[BinaryIO] = None,
                 encoding: str = DEFAULT_ENCODING):
        """
        Parse the table header of source.

        Args:
            source: Binary stream of the .dbf content, supporting seek
            memo_source: Binary stream of the companion memo file, if any
            encoding: Encoding of the text stored in the table
        """
        self.source = source
        self.encoding = encoding
        with io_errors("reading the table header"):
            source.seek(0)
            self.header: DBFHeader = read_dbf_header(source)
        self.memo_file: Optional[MemoFile] = None
        if memo_source is not None:
            self.memo_file = open_memo_file(memo_source, self.header.memo_variant)

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike],
                  encoding: str = DEFAULT_ENCODING) -> "Reader":
        """
        Open the table at path and its companion memo file when it has one.

        A missing memo file is only reported (MissingMemoFile) when a memo
        field has to be decoded.

        Raises:
            DBFIOError: if the table cannot be opened or read
            ErrorOpeningMemoFile: if the memo file exists but cannot be opened
        """
        with io_errors(f"opening DBF file {path}"):
            source = open(path, "rb")
        try:
            reader = cls(source, encoding=encoding)
            if reader.header.has_memo:
                variant = reader.header.memo_variant
                memo_path = find_memo_file(path, variant)
                if memo_path is not None:
                    reader.memo_file = open_memo_path(memo_path, variant)
                    logger.debug("using memo file %s", memo_path)
                elif reader.header.has_memo_fields:
                    logger.warning("no %s memo file found for %s", variant.extension, path)
        except BaseException:
            source.close()
            raise
        return reader

    @property
    def fields(self) -> List[FieldInfo]:
        return self.header.fields

    @property
    def record_count(self) -> int:
        return self.header.record_count

    def _read_raw_record(self, index: int) -> Optional[bytes]:
        """Raw bytes of record index, or None at an early end-of-file marker."""
        with io_errors(f"reading record {index}"):
            self.source.seek(self.header.record_offset(index))
            data = self.source.read(self.header.record_length)
        if data[:1] == bytes([DBF_EOF_MARKER]):
            return None
        if len(data) < self.header.record_length:
            raise DBFIOError(f"Record {index} is truncated")
        return data

    def _field_iterator(self, data: bytes) -> FieldIterator:
        return FieldIterator(self.fields, data, self.memo_file, self.encoding)

    def _decode_record(self, data: bytes) -> Record:
        iterator = self._field_iterator(data)
        record = Record(deleted=iterator.deleted)
        for name, value in iterator:
            record[name] = value
        return record

    def _iter_raw_records(self, start: int) -> Iterator[bytes]:
        for index in range(start, self.header.record_count):
            data = self._read_raw_record(index)
            if data is None:
                logger.debug("end-of-file marker before record %d of %d",
                             index, self.header.record_count)
                return
            yield data

    def iter_records(self, start: int = 0) -> Iterator[Record]:
        """
        Lazily decode the records, starting at record start.

        Each call starts over, deleted records included.
        """
        for data in self._iter_raw_records(start):
            yield self._decode_record(data)

    def read_record(self, index: int) -> Record:
        """
        Decode record index (zero-based).

        Raises:
            IndexError: if index is outside the table
        """
        if not 0 <= index < self.header.record_count:
            raise IndexError(f"Record {index} is outside the table")
        data = self._read_raw_record(index)
        if data is None:
            raise IndexError(f"Record {index} is past the end-of-file marker")
        return self._decode_record(data)

    def read(self, include_deleted: bool = True) -> List[Record]:
        """Decode every record of the table."""
        return [record for record in self.iter_records()
                if include_deleted or not record.deleted]

    def iter_records_as(self, record_type, start: int = 0) -> Iterator[Any]:
        """
        Lazily build record_type instances from the records.

        record_type.read_using() receives a FieldIterator positioned on the
        first field of each record.

        Raises:
            NotEnoughFields: if read_using() asks for more fields than the table has
        """
        for data in self._iter_raw_records(start):
            iterator = self._field_iterator(data)
            try:
                yield record_type.read_using(iterator)
            except NotEnoughFields:
                raise
            except EndOfRecord as e:
                raise NotEnoughFields(
                    f"{getattr(record_type, '__name__', record_type)} needs more fields "
                    f"than the {len(self.fields)} of the table"
                ) from e

    def read_as(self, record_type) -> List[Any]:
        return list(self.iter_records_as(record_type))

    def close(self) -> None:
        self.source.close()
        if self.memo_file is not None:
            self.memo_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def read(path: Union[str, os.PathLike], encoding: str = DEFAULT_ENCODING) -> List[Record]:
    """Read all the records of the table at path."""
    with Reader.from_path(path, encoding=encoding) as reader:
        return reader.read()
