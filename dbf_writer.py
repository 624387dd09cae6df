"""
Writing records to a new .dbf table.

A TableWriterBuilder collects the schema, then writes the header with a
record count of 0. Records are appended one at a time; finalizing appends
the 0x1A end-of-file marker and patches the record count, which is the only
backward seek in the table file. A table interrupted before finalize stays
readable up to its stale record count.
"""

import datetime
import io
import logging
import os
import struct
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, BinaryIO, Iterable, List, Optional, Protocol, Union

from dbf_errors import (
    EndOfRecord,
    ErrorOpeningMemoFile,
    InvalidFieldDescriptor,
    NotEnoughFields,
    TableWriterClosed,
    io_errors,
)
from dbf_field import (
    DEFAULT_ENCODING,
    FieldInfo,
    FieldName,
    FieldType,
    encode_field_value,
)
from dbf_header import (
    DBF_EOF_MARKER,
    VISUAL_FOXPRO_VERSIONS,
    DBFHeader,
    build_dbf_header,
    resolve_version,
    write_dbf_header,
)
from dbf_memo import MemoFile, create_memo_file, memo_path_for


logger = logging.getLogger(__name__)


class FieldWriter:
    """
    Encodes the fields of one record, in schema order.

    Each record needs exactly one write_next_field_value() call per field.
    """

    def __init__(self, fields: List[FieldInfo], memo_file: Optional[MemoFile] = None,
                 encoding: str = DEFAULT_ENCODING):
        self.fields = fields
        self.memo_file = memo_file
        self.encoding = encoding
        self.index = 0
        self._buffer = bytearray()

    @property
    def remaining(self) -> int:
        return len(self.fields) - self.index

    def begin_record(self, deleted: bool = False) -> None:
        self._buffer = bytearray(b"*" if deleted else b" ")
        self.index = 0

    def write_next_field_value(self, value: Any) -> None:
        """
        Encode value into the next field of the record.

        Args:
            value: A FieldValue, a plain Python value or None (not set)

        Raises:
            EndOfRecord: if every field of the record was already written
            BadFieldType: if value does not match the declared field type
        """
        if self.index >= len(self.fields):
            raise EndOfRecord(f"The record only has {len(self.fields)} fields")
        info = self.fields[self.index]
        self._buffer += encode_field_value(value, info, self.encoding, self.memo_file)
        self.index += 1

    def finish_record(self) -> bytes:
        if self.index < len(self.fields):
            missing = ", ".join(f.name for f in self.fields[self.index:])
            raise NotEnoughFields(f"No value was written for: {missing}")
        return bytes(self._buffer)


class WritableRecord(Protocol):
    """An object that writes its values, in schema order, through a FieldWriter."""

    def write_using(self, field_writer: FieldWriter) -> None:
        ...


class TableWriter:
    """Appends records to a table whose header was already written."""

    def __init__(self, dest: BinaryIO, header: DBFHeader, memo_file: Optional[MemoFile] = None,
                 encoding: str = DEFAULT_ENCODING, start: int = 0, owns_streams: bool = False):
        self.dest = dest
        self.header = header
        self.memo_file = memo_file
        self.encoding = encoding
        self._start = start
        self._owns_streams = owns_streams
        self._field_writer = FieldWriter(header.fields, memo_file, encoding)
        self._finalized = False

    @property
    def fields(self) -> List[FieldInfo]:
        return self.header.fields

    @property
    def record_count(self) -> int:
        return self.header.record_count

    @property
    def memo_dest(self) -> Optional[BinaryIO]:
        return self.memo_file.stream if self.memo_file is not None else None

    def write_record(self, record: Any) -> None:
        """
        Append one record.

        Args:
            record: A mapping of field name -> value (a Record keeps its
                deletion flag), or an object with a write_using() method

        Raises:
            NotEnoughFields: if a field has no value
            EndOfRecord: if write_using() writes too many values
            TableWriterClosed: if the writer was finalized
        """
        if self._finalized:
            raise TableWriterClosed("Cannot write to a finalized table")

        field_writer = self._field_writer
        if isinstance(record, Mapping):
            field_writer.begin_record(deleted=getattr(record, "deleted", False))
            for info in self.fields:
                if info.name not in record:
                    raise NotEnoughFields(f"The record has no value for field '{info.name}'")
                field_writer.write_next_field_value(record[info.name])
        else:
            field_writer.begin_record()
            record.write_using(field_writer)
        data = field_writer.finish_record()

        with io_errors(f"writing record {self.header.record_count}"):
            self.dest.write(data)
        self.header.record_count += 1

    def write(self, records: Iterable[Any]) -> None:
        """Write every record, then finalize the table."""
        for record in records:
            self.write_record(record)
        self.finalize()

    def finalize(self) -> None:
        """Append the end-of-file marker and patch the record count."""
        if self._finalized:
            return
        with io_errors("finalizing the table"):
            self.dest.write(bytes([DBF_EOF_MARKER]))
            self.dest.seek(self._start + 4)
            self.dest.write(struct.pack("<L", self.header.record_count))
            self.dest.flush()
            if self.memo_file is not None:
                self.memo_file.flush()
        self._finalized = True
        logger.debug("finalized table with %d records", self.header.record_count)
        if self._owns_streams:
            self.close()

    def close(self) -> None:
        """Close the streams opened by the builder."""
        if not self._owns_streams:
            return
        self.dest.close()
        if self.memo_file is not None:
            self.memo_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.finalize()
        else:
            self.close()


class TableWriterBuilder:
    """Collects the schema of a new table and creates its TableWriter."""

    def __init__(self, encoding: str = DEFAULT_ENCODING):
        self.fields: List[FieldInfo] = []
        self.version: Optional[int] = None
        self.language_driver = 0
        self.last_update: Optional[datetime.date] = None
        self.encoding = encoding

    @classmethod
    def from_reader(cls, reader) -> "TableWriterBuilder":
        """Start from the schema, version and language driver of an open Reader."""
        builder = cls(encoding=reader.encoding)
        for info in reader.fields:
            builder.add_field(info)
        builder.version = reader.header.version
        builder.language_driver = reader.header.language_driver
        return builder

    def add_field(self, info: FieldInfo) -> "TableWriterBuilder":
        """
        Append a field to the schema.

        Raises:
            InvalidFieldDescriptor: if a field with the same name exists
        """
        key = info.name.upper()
        if any(f.name.upper() == key for f in self.fields):
            raise InvalidFieldDescriptor(f"Duplicate field name '{info.name}'")
        self.fields.append(info)
        return self

    def _add(self, name, field_type: FieldType, length: int, decimals: int = 0):
        return self.add_field(FieldInfo(FieldName(name), field_type, length, decimals))

    def add_character_field(self, name: Union[str, FieldName], length: int) -> "TableWriterBuilder":
        return self._add(name, FieldType.CHARACTER, length)

    def add_numeric_field(self, name: Union[str, FieldName], length: int,
                          decimals: int) -> "TableWriterBuilder":
        return self._add(name, FieldType.NUMERIC, length, decimals)

    def add_float_field(self, name: Union[str, FieldName], length: int,
                        decimals: int) -> "TableWriterBuilder":
        return self._add(name, FieldType.FLOAT, length, decimals)

    def add_logical_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.LOGICAL, 1)

    def add_date_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.DATE, 8)

    def add_datetime_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.DATETIME, 8)

    def add_integer_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.INTEGER, 4)

    def add_double_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.DOUBLE, 8)

    def add_currency_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.CURRENCY, 8)

    def add_memo_field(self, name: Union[str, FieldName]) -> "TableWriterBuilder":
        return self._add(name, FieldType.MEMO, 10)

    def with_version(self, version: int) -> "TableWriterBuilder":
        self.version = version
        return self

    def with_language_driver(self, language_driver: int) -> "TableWriterBuilder":
        self.language_driver = language_driver
        return self

    def with_last_update(self, last_update: datetime.date) -> "TableWriterBuilder":
        self.last_update = last_update
        return self

    def _build_header(self) -> DBFHeader:
        fields = self.fields
        has_memo = any(f.field_type is FieldType.MEMO for f in fields)
        version = resolve_version(self.version, has_memo)
        if version in VISUAL_FOXPRO_VERSIONS:
            # Visual FoxPro stores memo block numbers as 4 byte integers
            fields = [replace(f, length=4) if f.field_type is FieldType.MEMO else f
                      for f in fields]
        return build_dbf_header(
            fields,
            version=version,
            last_update=self.last_update or datetime.date.today(),
            language_driver=self.language_driver,
        )

    def build_with_dest(self, dest: BinaryIO,
                        memo_dest: Optional[BinaryIO] = None) -> TableWriter:
        """
        Write the table header to dest and return its writer.

        Args:
            dest: Seekable binary stream receiving the table
            memo_dest: Stream receiving the memo file; an io.BytesIO is
                created when the schema has memo fields and none is given
        """
        header = self._build_header()
        memo_file = None
        if header.has_memo_fields:
            if memo_dest is None:
                memo_dest = io.BytesIO()
            memo_file = create_memo_file(memo_dest, header.memo_variant)
        with io_errors("writing the table header"):
            start = dest.tell()
            write_dbf_header(dest, header)
        return TableWriter(dest, header, memo_file, self.encoding, start=start)

    def build_with_file_dest(self, path: Union[str, os.PathLike]) -> TableWriter:
        """
        Create the table at path (and its memo file next to it when needed).

        The returned writer closes both files once finalized.
        """
        header = self._build_header()
        with io_errors(f"creating DBF file {path}"):
            dest = open(path, "wb+")

        memo_stream = None
        try:
            memo_file = None
            if header.has_memo_fields:
                memo_path = memo_path_for(path, header.memo_variant)
                try:
                    memo_stream = open(memo_path, "wb+")
                except OSError as e:
                    raise ErrorOpeningMemoFile(f"Cannot create memo file {memo_path}: {e}") from e
                memo_file = create_memo_file(memo_stream, header.memo_variant)
                logger.debug("created memo file %s", memo_path)
            with io_errors("writing the table header"):
                write_dbf_header(dest, header)
        except BaseException:
            dest.close()
            if memo_stream is not None:
                memo_stream.close()
            raise

        return TableWriter(dest, header, memo_file, self.encoding, owns_streams=True)
