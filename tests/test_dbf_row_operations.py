"""
Test file for writing and reading records: round trips, deletion flags,
record classes and the errors raised along the way.
"""

import io
import struct
import unittest

from dbf_errors import (
    BadFieldType,
    DBFIOError,
    EndOfRecord,
    FieldConversionError,
    FieldParseError,
    NotEnoughFields,
    TableWriterClosed,
    ValueTooLong,
)
from dbf_field import FieldType, FieldValue
from dbf_reader import FieldIterator, Reader, Record
from dbf_writer import TableWriterBuilder


HEADER_LENGTH = 32 + 2 * 32 + 1
RECORD_LENGTH = 1 + 50 + 20


def users_builder():
    return (TableWriterBuilder()
            .add_character_field("Nick Name", 50)
            .add_numeric_field("Age", 20, 10))


def stations_builder():
    return (TableWriterBuilder()
            .add_character_field("name", 30)
            .add_character_field("marker-col", 10)
            .add_character_field("marker-sym", 20)
            .add_character_field("line", 10))


class User:
    """Record class reading and writing its fields explicitly."""

    def __init__(self, nick_name, age):
        self.nick_name = nick_name
        self.age = age

    def __eq__(self, other):
        return (self.nick_name, self.age) == (other.nick_name, other.age)

    @classmethod
    def read_using(cls, field_iterator):
        nick_name = field_iterator.read_next_field_as(str).value
        age = field_iterator.read_next_field_as(float).value
        return cls(nick_name, age)

    def write_using(self, field_writer):
        field_writer.write_next_field_value(self.nick_name)
        field_writer.write_next_field_value(self.age)


class Station:
    """Record class asking for one field more than the table has."""

    @classmethod
    def read_using(cls, field_iterator):
        for _ in range(5):
            field_iterator.read_next_field()
        return cls()


class TestDBFRowOperations(unittest.TestCase):
    """Test cases for record level reading and writing."""

    def write_users(self, records):
        dest = io.BytesIO()
        users_builder().build_with_dest(dest).write(records)
        return dest

    def test_write_and_read_one_record(self):
        """Test the Nick Name / Age round trip."""
        dest = self.write_users([{"Nick Name": "Yoshi", "Age": 32.0}])
        reader = Reader(dest)

        self.assertEqual(reader.record_count, 1)
        records = reader.read()
        self.assertEqual(records[0]["Nick Name"], FieldValue(FieldType.CHARACTER, "Yoshi"))
        self.assertEqual(records[0]["Age"], FieldValue(FieldType.NUMERIC, 32.0))
        self.assertEqual(list(records[0]), ["Nick Name", "Age"])

    def test_record_bytes(self):
        """Test the raw layout of a written record."""
        data = self.write_users([{"Nick Name": "Yoshi", "Age": 32.0}]).getvalue()
        record = data[HEADER_LENGTH:HEADER_LENGTH + RECORD_LENGTH]

        self.assertEqual(record[0:1], b' ')
        self.assertEqual(record[1:51], b'Yoshi'.ljust(50))
        self.assertEqual(record[51:71], b'32.0000000000'.rjust(20))
        self.assertEqual(data[HEADER_LENGTH + RECORD_LENGTH:], b'\x1a')

    def test_read_is_repeatable(self):
        """Test that every read starts over from the first record."""
        records = [{"Nick Name": f"user {i}", "Age": float(i)} for i in range(5)]
        reader = Reader(self.write_users(records))

        first = [r.as_dict() for r in reader.iter_records()]
        second = [r.as_dict() for r in reader.iter_records()]
        self.assertEqual(first, records)
        self.assertEqual(second, records)
        self.assertEqual([r.as_dict() for r in reader.iter_records(start=3)], records[3:])

    def test_read_record_by_index(self):
        """Test random access to records."""
        records = [{"Nick Name": f"user {i}", "Age": float(i)} for i in range(3)]
        reader = Reader(self.write_users(records))

        self.assertEqual(reader.read_record(2).as_dict(), records[2])
        self.assertEqual(reader.read_record(0).as_dict(), records[0])
        with self.assertRaises(IndexError):
            reader.read_record(3)

    def test_deleted_records(self):
        """Test that deleted records are flagged and returned."""
        dest = self.write_users([
            {"Nick Name": "kept", "Age": 1.0},
            Record({"Nick Name": "gone", "Age": 2.0}, deleted=True),
        ])
        self.assertEqual(dest.getvalue()[HEADER_LENGTH + RECORD_LENGTH], ord('*'))

        reader = Reader(dest)
        records = reader.read()
        self.assertEqual([r.deleted for r in records], [False, True])
        self.assertEqual(records[1]["Nick Name"].value, "gone")
        self.assertEqual(len(reader.read(include_deleted=False)), 1)

    def test_not_set_values(self):
        """Test records with fields left unset."""
        reader = Reader(self.write_users([{"Nick Name": None, "Age": None}]))
        record = reader.read()[0]

        self.assertFalse(record["Nick Name"].is_set)
        self.assertFalse(record["Age"].is_set)

    def test_read_as_class(self):
        """Test reading and writing user record classes."""
        users = [User("Yoshi", 32.0), User("Mario", 40.5)]
        dest = io.BytesIO()
        users_builder().build_with_dest(dest).write(users)

        self.assertEqual(Reader(dest).read_as(User), users)

    def test_read_past_last_field(self):
        """Test reading a fifth field of a four field record."""
        dest = io.BytesIO()
        stations_builder().build_with_dest(dest).write([
            {"name": "Van Dorn Street", "marker-col": "#0000ff",
             "marker-sym": "rail-metro", "line": "blue"},
        ])
        reader = Reader(dest)

        data = dest.getvalue()[reader.header.header_length:][:reader.header.record_length]
        iterator = FieldIterator(reader.fields, data)
        for _ in range(4):
            iterator.read_next_field()
        with self.assertRaises(EndOfRecord):
            iterator.read_next_field()

        with self.assertRaises(NotEnoughFields):
            reader.read_as(Station)

    def test_field_iterator(self):
        """Test the field cursor on one record."""
        dest = self.write_users([{"Nick Name": "Yoshi", "Age": 32.0}])
        reader = Reader(dest)
        data = dest.getvalue()[HEADER_LENGTH:HEADER_LENGTH + RECORD_LENGTH]
        iterator = FieldIterator(reader.fields, data)

        self.assertFalse(iterator.deleted)
        self.assertEqual(iterator.remaining, 2)
        iterator.skip_next_field()
        name, age = iterator.read_next_field_as(float)
        self.assertEqual((name, age), ("Age", 32.0))
        self.assertEqual(iterator.remaining, 0)

        iterator = FieldIterator(reader.fields, data)
        with self.assertRaises(FieldConversionError):
            iterator.read_next_field_as(int)

    def test_wrong_value_type(self):
        """Test a value that does not match the declared field type."""
        writer = users_builder().build_with_dest(io.BytesIO())
        with self.assertRaises(BadFieldType):
            writer.write_record({"Nick Name": "Yoshi", "Age": "32"})

    def test_missing_field(self):
        """Test a mapping record without every field."""
        writer = users_builder().build_with_dest(io.BytesIO())
        with self.assertRaises(NotEnoughFields):
            writer.write_record({"Nick Name": "Yoshi"})

    def test_write_using_field_count(self):
        """Test record classes writing too many or too few values."""

        class TooMany:
            def write_using(self, field_writer):
                for value in ("a", 1.0, "b"):
                    field_writer.write_next_field_value(value)

        class TooFew:
            def write_using(self, field_writer):
                field_writer.write_next_field_value("a")

        writer = users_builder().build_with_dest(io.BytesIO())
        with self.assertRaises(EndOfRecord):
            writer.write_record(TooMany())
        with self.assertRaises(NotEnoughFields):
            writer.write_record(TooFew())
        self.assertEqual(writer.record_count, 0)

    def test_value_too_long_writes_nothing(self):
        """Test that a rejected record leaves the table untouched."""
        dest = io.BytesIO()
        writer = users_builder().build_with_dest(dest)
        writer.write_record({"Nick Name": "Yoshi", "Age": 32.0})
        position = dest.tell()

        with self.assertRaises(ValueTooLong):
            writer.write_record({"Nick Name": "Y" * 51, "Age": 1.0})
        self.assertEqual(dest.tell(), position)

        writer.finalize()
        self.assertEqual(Reader(dest).record_count, 1)

    def test_write_after_finalize(self):
        """Test that a finalized writer refuses records."""
        writer = users_builder().build_with_dest(io.BytesIO())
        writer.write([])
        with self.assertRaises(TableWriterClosed):
            writer.write_record({"Nick Name": "late", "Age": 1.0})

    def test_writer_context_manager(self):
        """Test that leaving the with block finalizes the table."""
        dest = io.BytesIO()
        with users_builder().build_with_dest(dest) as writer:
            writer.write_record({"Nick Name": "Yoshi", "Age": 32.0})

        self.assertEqual(struct.unpack("<L", dest.getvalue()[4:8])[0], 1)

    def test_unfinished_table(self):
        """Test that a table that was never finalized keeps its stale count."""
        dest = io.BytesIO()
        writer = users_builder().build_with_dest(dest)
        writer.write_record({"Nick Name": "a", "Age": 1.0})
        writer.write_record({"Nick Name": "b", "Age": 2.0})
        data = dest.getvalue()

        self.assertEqual(len(data), HEADER_LENGTH + 2 * RECORD_LENGTH)
        reader = Reader(io.BytesIO(data))
        self.assertEqual(reader.record_count, 0)
        self.assertEqual(reader.read(), [])

    def test_early_eof_marker(self):
        """Test that reading stops at an end-of-file marker."""
        records = [{"Nick Name": "a", "Age": 1.0}, {"Nick Name": "b", "Age": 2.0}]
        data = bytearray(self.write_users(records).getvalue())
        struct.pack_into("<L", data, 4, 5)

        reader = Reader(io.BytesIO(bytes(data)))
        self.assertEqual([r.as_dict() for r in reader.iter_records()], records)

    def test_truncated_record(self):
        """Test that a record cut short is an I/O error."""
        records = [{"Nick Name": "a", "Age": 1.0}, {"Nick Name": "b", "Age": 2.0}]
        data = self.write_users(records).getvalue()

        reader = Reader(io.BytesIO(data[:HEADER_LENGTH + RECORD_LENGTH + 10]))
        with self.assertRaises(DBFIOError):
            reader.read()

    def test_malformed_numeric(self):
        """Test that a corrupted numeric slot fails to parse."""
        data = bytearray(self.write_users([{"Nick Name": "Yoshi", "Age": 32.0}]).getvalue())
        start = HEADER_LENGTH + 1 + 50
        data[start:start + 20] = b'12a'.rjust(20)

        with self.assertRaises(FieldParseError) as ctx:
            Reader(io.BytesIO(bytes(data))).read()
        self.assertEqual(ctx.exception.field_name, "Age")


if __name__ == '__main__':
    unittest.main()
