"""
Test file for DBF dates: the last update date of the header and date fields.
"""

import datetime
import io
import unittest

from dbf_module import Reader, TableWriterBuilder


class TestDBFDate(unittest.TestCase):
    """Test cases for DBF dates."""

    def test_last_update_on_create(self):
        """Test that new tables are stamped with today's date."""
        dest = io.BytesIO()
        TableWriterBuilder().add_character_field("NAME", 10).build_with_dest(dest).write([])

        self.assertEqual(Reader(dest).header.last_update, datetime.date.today())

    def test_set_last_update(self):
        """Test an explicit last update date and its YY MM DD bytes."""
        dest = io.BytesIO()
        builder = (TableWriterBuilder()
                   .add_character_field("NAME", 10)
                   .with_last_update(datetime.date(1999, 12, 31)))
        builder.build_with_dest(dest).write([])
        data = dest.getvalue()

        self.assertEqual(list(data[1:4]), [99, 12, 31])
        self.assertEqual(Reader(dest).header.last_update, datetime.date(1999, 12, 31))

    def test_date_fields(self):
        """Test date and datetime fields across a range of years."""
        records = [
            {"DAY": datetime.date(1900, 1, 1), "STAMP": datetime.datetime(1900, 1, 1, 0, 0)},
            {"DAY": datetime.date(2000, 2, 29), "STAMP": datetime.datetime(2000, 2, 29, 23, 59, 59)},
            {"DAY": datetime.date(2026, 10, 18), "STAMP": datetime.datetime(2026, 10, 18, 8, 30)},
            {"DAY": None, "STAMP": None},
        ]
        dest = io.BytesIO()
        (TableWriterBuilder()
         .add_date_field("DAY")
         .add_datetime_field("STAMP")
         .build_with_dest(dest)
         .write(records))

        self.assertEqual([r.as_dict() for r in Reader(dest).read()], records)


if __name__ == '__main__':
    unittest.main()
