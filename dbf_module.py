"""
Reading and writing dBase (.DBF) tables and their memo (.DBT / .FPT) files.

Reading:

    from dbf_module import Reader
    with Reader.from_path("stations.dbf") as reader:
        for record in reader.iter_records():
            print(record["name"].value)

Writing:

    from dbf_module import TableWriterBuilder
    writer = (TableWriterBuilder()
              .add_character_field("Nick Name", 50)
              .add_numeric_field("Age", 20, 10)
              .build_with_file_dest("users.dbf"))
    writer.write([{"Nick Name": "Yoshi", "Age": 32.0}])
"""

import logging
import os
from typing import Union

from dbf_errors import (
    BadConversion,
    BadFieldType,
    DBFError,
    DBFIOError,
    EndOfRecord,
    ErrorOpeningMemoFile,
    FieldConversionError,
    FieldNameTooLong,
    FieldParseError,
    InvalidDate,
    InvalidFieldDescriptor,
    InvalidFieldName,
    InvalidFieldType,
    InvalidFieldValue,
    InvalidHeader,
    MissingMemoFile,
    NotEnoughFields,
    TableWriterClosed,
    ValueTooLong,
)
from dbf_field import (
    DEFAULT_ENCODING,
    FieldFlags,
    FieldInfo,
    FieldName,
    FieldType,
    FieldValue,
    convert_field_value,
    register_conversion,
)
from dbf_header import (
    DBF_FILE_TYPE,
    DBF_LANG_JAPAN,
    DBF_LANG_US,
    DBF_LANG_WESTERN_EUROPE,
    DBFHeader,
    read_dbf_header,
)
from dbf_memo import (
    DBF_MEMO_BLOCK_SIZE,
    MEMO_TYPE_PICTURE,
    MEMO_TYPE_TEXT,
    MemoFile,
    MemoVariant,
)
from dbf_reader import FieldIterator, NamedValue, ReadableRecord, Reader, Record, read
from dbf_record import dbase_record
from dbf_writer import FieldWriter, TableWriter, TableWriterBuilder, WritableRecord


logger = logging.getLogger(__name__)

__all__ = [
    "BadConversion", "BadFieldType", "DBFError", "DBFIOError", "EndOfRecord",
    "ErrorOpeningMemoFile", "FieldConversionError", "FieldNameTooLong", "FieldParseError",
    "InvalidDate", "InvalidFieldDescriptor", "InvalidFieldName", "InvalidFieldType",
    "InvalidFieldValue", "InvalidHeader", "MissingMemoFile", "NotEnoughFields",
    "TableWriterClosed", "ValueTooLong",
    "DEFAULT_ENCODING", "FieldFlags", "FieldInfo", "FieldName", "FieldType", "FieldValue",
    "convert_field_value", "register_conversion",
    "DBF_FILE_TYPE", "DBF_LANG_JAPAN", "DBF_LANG_US", "DBF_LANG_WESTERN_EUROPE",
    "DBFHeader", "read_dbf_header",
    "DBF_MEMO_BLOCK_SIZE", "MEMO_TYPE_PICTURE", "MEMO_TYPE_TEXT", "MemoFile", "MemoVariant",
    "FieldIterator", "NamedValue", "ReadableRecord", "Reader", "Record", "read",
    "dbase_record",
    "FieldWriter", "TableWriter", "TableWriterBuilder", "WritableRecord",
    "compact_dbf",
]


def compact_dbf(in_path: Union[str, os.PathLike], out_path: Union[str, os.PathLike]) -> int:
    """
    Copy a table without its deleted records.

    The copy keeps the schema, version and language driver of the input;
    memo contents are copied into a fresh memo file, so they get new
    block numbers.

    Args:
        in_path: The table to compact
        out_path: Where to write the compacted table

    Returns:
        The number of records copied
    """
    with Reader.from_path(in_path) as reader:
        writer = TableWriterBuilder.from_reader(reader).build_with_file_dest(out_path)
        with writer:
            for record in reader.iter_records():
                if record.deleted:
                    continue
                writer.write_record(record)
        logger.debug("compacted %s: kept %d of %d records",
                     in_path, writer.record_count, reader.record_count)
        return writer.record_count
