"""
Test file for DBF version byte validation.
This verifies that the version byte is set correctly based on memo field presence.
"""

import io
import unittest

from dbf_module import DBFHeader, InvalidHeader, MemoVariant, Reader, TableWriterBuilder


class TestDBFVersion(unittest.TestCase):
    """Test cases for DBF version byte validation."""

    def written_header(self, builder):
        dest = io.BytesIO()
        builder.build_with_dest(dest).write([])
        return Reader(dest).header

    def test_default_without_memo(self):
        """Test that a table without memo fields defaults to 0x03."""
        header = self.written_header(TableWriterBuilder().add_character_field("NAME", 10))
        self.assertEqual(header.version, 0x03)
        self.assertFalse(header.has_memo)

    def test_default_with_memo(self):
        """Test that memo fields switch the default to 0x83."""
        header = self.written_header(
            TableWriterBuilder().add_character_field("NAME", 10).add_memo_field("NOTES")
        )
        self.assertEqual(header.version, 0x83)
        self.assertTrue(header.has_memo)
        self.assertIs(header.memo_variant, MemoVariant.DBASE3)

    def test_dbase4_without_memo(self):
        """Test that dBase IV without memo fields has version 0x04."""
        builder = TableWriterBuilder().with_version(0x04).add_numeric_field("ID", 5, 0)
        self.assertEqual(self.written_header(builder).version, 0x04)

    def test_dbase4_with_memo(self):
        """Test that dBase IV with memo fields has version 0x8B."""
        builder = (TableWriterBuilder()
                   .with_version(0x04)
                   .add_numeric_field("ID", 5, 0)
                   .add_memo_field("NOTES"))
        header = self.written_header(builder)
        self.assertEqual(header.version, 0x8B)
        self.assertIs(header.memo_variant, MemoVariant.DBASE4)

    def test_memo_version_without_memo_fields(self):
        """Test that a memo signature is dropped when there is no memo field."""
        builder = TableWriterBuilder().with_version(0x83).add_character_field("NAME", 10)
        self.assertEqual(self.written_header(builder).version, 0x03)

    def test_foxpro_versions(self):
        """Test that FoxPro signatures are kept and use .fpt memos."""
        builder = TableWriterBuilder().with_version(0xF5).add_memo_field("NOTES")
        header = self.written_header(builder)
        self.assertEqual(header.version, 0xF5)
        self.assertIs(header.memo_variant, MemoVariant.FOXPRO)

        builder = TableWriterBuilder().with_version(0x30).add_memo_field("NOTES")
        header = self.written_header(builder)
        self.assertEqual(header.version, 0x30)
        self.assertTrue(header.is_visual_foxpro)
        self.assertIs(header.memo_variant, MemoVariant.FOXPRO)

    def test_unknown_version(self):
        """Test that an unknown signature cannot be written."""
        builder = TableWriterBuilder().with_version(0x99).add_character_field("NAME", 10)
        with self.assertRaises(InvalidHeader):
            builder.build_with_dest(io.BytesIO())

    def test_description(self):
        """Test the human readable version names."""
        self.assertEqual(DBFHeader(version=0x03).description, 'FoxBASE+/Dbase III plus, no memo')
        self.assertEqual(DBFHeader(version=0x8B).description, 'dBASE IV with memo')
        self.assertEqual(DBFHeader(version=0x99).description, 'Unknown (0x99)')

    def test_memo_signature_without_memo_fields(self):
        """Test that a memo signature alone announces a memo file."""
        header = DBFHeader(version=0x83)
        self.assertTrue(header.has_memo)
        self.assertFalse(header.has_memo_fields)


if __name__ == '__main__':
    unittest.main()
