"""
Error hierarchy shared by every dBase module.

Every failure surfaced by the reader, the writer or the memo layer is a
DBFError, so callers can catch one type or pick the specific kind.
"""

from contextlib import contextmanager


class DBFError(Exception):
    """Base class of all the errors raised while reading or writing a table."""


class DBFIOError(DBFError, OSError):
    """The underlying stream failed or ended before a complete structure was read."""


class InvalidHeader(DBFError):
    """The table header describes an impossible layout."""


class InvalidFieldType(DBFError):
    """A field descriptor carries a type code outside the known set."""

    def __init__(self, code):
        self.code = code
        super().__init__(f"Invalid field type code: {code!r}")


class InvalidFieldName(DBFError):
    """A field name is empty or contains characters that cannot be stored."""


class FieldNameTooLong(InvalidFieldName):
    """A field name does not fit in the 11 byte descriptor slot."""


class InvalidFieldDescriptor(DBFError):
    """The width/decimal combination is not valid for the field type."""


class InvalidFieldValue(DBFError, ValueError):
    """A value cannot be encoded to, or decoded from, its fixed-width slot."""


class FieldParseError(InvalidFieldValue):
    """The text stored in a slot could not be parsed."""

    def __init__(self, text, field_name=None):
        self.text = text
        self.field_name = field_name
        where = f" in field '{field_name}'" if field_name else ""
        super().__init__(f"Could not parse {text!r}{where}")


class ValueTooLong(InvalidFieldValue):
    """The encoded value is wider than the declared field length."""


class InvalidDate(InvalidFieldValue):
    """An 8 byte date slot is not a valid YYYYMMDD calendar date."""


class MissingMemoFile(DBFError):
    """A memo field had to be decoded but no companion memo file was found."""


class ErrorOpeningMemoFile(DBFError):
    """The companion memo file exists but could not be opened or understood."""


class FieldConversionError(DBFError):
    """A stored value cannot be converted to the requested Python type."""

    def __init__(self, expected, actual, value=None):
        self.expected = expected
        self.actual = actual
        self.value = value
        expected_name = getattr(expected, "__name__", repr(expected))
        super().__init__(f"Cannot convert {actual} value {value!r} to {expected_name}")


BadConversion = FieldConversionError


class BadFieldType(DBFError):
    """The value given for a field does not match the declared field type."""

    def __init__(self, expected, got, field_name):
        self.expected = expected
        self.got = got
        self.field_name = field_name
        super().__init__(
            f"Field '{field_name}' expects a {expected} value, got {got}"
        )


class EndOfRecord(DBFError):
    """Every field of the current record was already read or written."""


class NotEnoughFields(EndOfRecord):
    """Fewer fields were supplied (or are available) than the record needs."""


class TableWriterClosed(DBFError):
    """The table writer was already finalized."""


@contextmanager
def io_errors(action: str):
    """Re-raise stream failures happening inside the block as DBFIOError."""
    try:
        yield
    except DBFError:
        raise
    except OSError as e:
        raise DBFIOError(f"Error {action}: {e}") from e
