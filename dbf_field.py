"""
Field types, field descriptors and field values of a dBase table.

Every FieldType has exactly one decoder and one encoder, both selected from
the _DECODERS / _ENCODERS tables by decode_field_value() and
encode_field_value(). A FieldValue whose value is None is "not set": the
slot on disk is blank.
"""

import datetime
import math
import re
import struct
import types
import typing
from dataclasses import dataclass, field as dataclass_field, replace
from enum import Enum, IntFlag
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from dbf_errors import (
    BadFieldType,
    FieldConversionError,
    FieldNameTooLong,
    FieldParseError,
    InvalidDate,
    InvalidFieldDescriptor,
    InvalidFieldName,
    InvalidFieldType,
    InvalidFieldValue,
    MissingMemoFile,
    ValueTooLong,
)
from dbf_memo import MEMO_TYPE_PICTURE, MEMO_TYPE_TEXT


# Constants
DEFAULT_ENCODING = "cp1252"
FIELD_NAME_MAX_LENGTH = 10
FIELD_NAME_SLOT_SIZE = 11
FIELD_MAX_LENGTH = 255
MEMO_SLOT_LENGTHS = (10, 4)  # ASCII block number / binary block number
JULIAN_DAY_OFFSET = 1721425  # date.toordinal() + offset = Julian day number
CURRENCY_SCALE = 10000


class FieldType(Enum):
    """Column types, valued by their canonical one character code."""
    CHARACTER = "C"
    NUMERIC = "N"
    FLOAT = "F"
    LOGICAL = "L"
    DATE = "D"
    DATETIME = "T"
    INTEGER = "I"
    DOUBLE = "B"
    CURRENCY = "Y"
    MEMO = "M"

    def __str__(self):
        return self.name.capitalize()

    @classmethod
    def from_code(cls, code: str, length: Optional[int] = None) -> "FieldType":
        """
        Map a descriptor type code to a FieldType.

        'B' is a Double in FoxPro tables (8 bytes) and a binary memo in
        dBase IV ones (10 bytes), so the field length picks between the two.

        Raises:
            InvalidFieldType: if the code is not a known type
        """
        if code == "B" and length is not None and length != 8:
            return cls.MEMO
        alias = _FIELD_TYPE_ALIASES.get(code)
        if alias is not None:
            return alias
        try:
            return cls(code)
        except ValueError:
            raise InvalidFieldType(code) from None


# General (OLE), picture and blob columns are all memo-backed
_FIELD_TYPE_ALIASES = {
    "G": FieldType.MEMO,
    "P": FieldType.MEMO,
    "W": FieldType.MEMO,
}

_FIXED_LENGTHS = {
    FieldType.LOGICAL: 1,
    FieldType.DATE: 8,
    FieldType.DATETIME: 8,
    FieldType.INTEGER: 4,
    FieldType.DOUBLE: 8,
    FieldType.CURRENCY: 8,
}


class FieldFlags(IntFlag):
    """Visual FoxPro field flags (descriptor byte 18)."""
    SYSTEM = 0x01
    NULLABLE = 0x02
    BINARY = 0x04
    AUTOINCREMENT = 0x08


class FieldName(str):
    """A field name that fits in the 11 byte, NUL padded descriptor slot."""

    def __new__(cls, value):
        if isinstance(value, FieldName):
            return value
        if not isinstance(value, str):
            raise InvalidFieldName(f"Field name must be a str, got {type(value).__name__}")
        if not value:
            raise InvalidFieldName("Field name cannot be empty")
        if len(value) > FIELD_NAME_MAX_LENGTH:
            raise FieldNameTooLong(
                f"Field name '{value}' is longer than {FIELD_NAME_MAX_LENGTH} characters"
            )
        for char in value:
            if char == "\x00" or ord(char) > 0xFF or not char.isprintable():
                raise InvalidFieldName(f"Field name {value!r} contains {char!r}")
        return super().__new__(cls, value)

    def to_bytes(self) -> bytes:
        return self.encode("latin-1").ljust(FIELD_NAME_SLOT_SIZE, b"\x00")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "FieldName":
        """Parse the name slot of a descriptor; everything after the first NUL is padding."""
        name = raw.split(b"\x00", 1)[0]
        if len(name) > FIELD_NAME_MAX_LENGTH:
            raise FieldNameTooLong(f"Field name {name!r} fills its whole slot")
        return cls(name.decode("latin-1"))


def validate_field_descriptor(field_type: FieldType, length: int, decimal_count: int,
                              name: str = "") -> None:
    """
    Check that length and decimal_count are consistent with field_type.

    Raises:
        InvalidFieldDescriptor: if the combination cannot be stored
    """
    if not 1 <= length <= FIELD_MAX_LENGTH:
        raise InvalidFieldDescriptor(
            f"Field '{name}': length {length} is outside 1..{FIELD_MAX_LENGTH}"
        )
    if not 0 <= decimal_count <= 0xFF:
        raise InvalidFieldDescriptor(f"Field '{name}': invalid decimal count {decimal_count}")

    fixed = _FIXED_LENGTHS.get(field_type)
    if fixed is not None and length != fixed:
        raise InvalidFieldDescriptor(
            f"Field '{name}': {field_type} fields are {fixed} bytes long, not {length}"
        )
    if field_type is FieldType.MEMO and length not in MEMO_SLOT_LENGTHS:
        raise InvalidFieldDescriptor(
            f"Field '{name}': memo fields are 10 or 4 bytes long, not {length}"
        )

    if field_type in (FieldType.NUMERIC, FieldType.FLOAT):
        # Room for at least one digit and the decimal point
        if decimal_count and decimal_count > length - 2:
            raise InvalidFieldDescriptor(
                f"Field '{name}': {decimal_count} decimals do not fit in {length} bytes"
            )
    elif decimal_count:
        raise InvalidFieldDescriptor(
            f"Field '{name}': {field_type} fields cannot have decimals"
        )


@dataclass(frozen=True)
class FieldInfo:
    """Schema metadata of one column."""
    name: FieldName
    field_type: FieldType
    length: int
    decimal_count: int = 0
    flags: FieldFlags = FieldFlags(0)
    type_code: Optional[str] = None  # raw descriptor code, kept so aliases round-trip
    offset: int = dataclass_field(default=0, compare=False)  # first field starts at 1

    def __post_init__(self):
        object.__setattr__(self, "name", FieldName(self.name))
        object.__setattr__(self, "flags", FieldFlags(self.flags))
        if self.type_code is None:
            object.__setattr__(self, "type_code", self.field_type.value)
        elif FieldType.from_code(self.type_code, self.length) is not self.field_type:
            raise InvalidFieldDescriptor(
                f"Field '{self.name}': code {self.type_code!r} is not a {self.field_type} code"
            )
        validate_field_descriptor(self.field_type, self.length, self.decimal_count, self.name)

    @property
    def spec(self) -> str:
        """Short description such as 'C(30)' or 'N(10,2)'."""
        spec = f"{self.type_code}({self.length}"
        if self.decimal_count > 0:
            spec += f",{self.decimal_count}"
        return spec + ")"

    def with_offset(self, offset: int) -> "FieldInfo":
        return replace(self, offset=offset)


_PAYLOAD_TYPES = {
    FieldType.CHARACTER: (str,),
    FieldType.NUMERIC: (int, float),
    FieldType.FLOAT: (int, float),
    FieldType.LOGICAL: (bool,),
    FieldType.DATE: (datetime.date,),
    FieldType.DATETIME: (datetime.datetime,),
    FieldType.INTEGER: (int,),
    FieldType.DOUBLE: (int, float),
    FieldType.CURRENCY: (int, float),
    FieldType.MEMO: (str, bytes),
}


def _payload_matches(field_type: FieldType, value: Any) -> bool:
    if not isinstance(value, _PAYLOAD_TYPES[field_type]):
        return False
    if isinstance(value, bool):
        return field_type is FieldType.LOGICAL
    if field_type is FieldType.DATE:
        return not isinstance(value, datetime.datetime)
    return True


@dataclass(frozen=True)
class FieldValue:
    """
    The value of one field: a type tag and an optional payload.

    value is None when the field is not set. Integer, Double and Currency
    slots have no blank form: a not set value is written as 0 and reads
    back as a set 0.
    """
    field_type: FieldType
    value: Any = None

    def __post_init__(self):
        if self.value is not None and not _payload_matches(self.field_type, self.value):
            raise InvalidFieldValue(
                f"{type(self.value).__name__} is not a valid {self.field_type} value"
            )

    @property
    def is_set(self) -> bool:
        return self.value is not None

    def to(self, target):
        """Convert to target, see convert_field_value()."""
        return convert_field_value(self, target)


def field_types_for(value: Any) -> Tuple[FieldType, ...]:
    """The field types a plain Python value can be written to, preferred first."""
    if isinstance(value, bool):
        return (FieldType.LOGICAL,)
    if isinstance(value, datetime.datetime):
        return (FieldType.DATETIME,)
    if isinstance(value, datetime.date):
        return (FieldType.DATE,)
    if isinstance(value, int):
        return (FieldType.INTEGER, FieldType.NUMERIC, FieldType.FLOAT,
                FieldType.DOUBLE, FieldType.CURRENCY)
    if isinstance(value, float):
        return (FieldType.NUMERIC, FieldType.FLOAT, FieldType.DOUBLE, FieldType.CURRENCY)
    if isinstance(value, str):
        return (FieldType.CHARACTER, FieldType.MEMO)
    if isinstance(value, (bytes, bytearray)):
        return (FieldType.MEMO,)
    return ()


def coerce_field_value(value: Any, field: FieldInfo) -> FieldValue:
    """
    Turn value into a FieldValue for field.

    Accepts a FieldValue of the declared type, None (not set) or a plain
    Python value compatible with the declared type.

    Raises:
        BadFieldType: if the value does not match the declared field type
    """
    if isinstance(value, FieldValue):
        if value.field_type is not field.field_type:
            raise BadFieldType(field.field_type, value.field_type, field.name)
        return value
    if value is None:
        return FieldValue(field.field_type)

    candidates = field_types_for(value)
    if field.field_type not in candidates:
        got = candidates[0] if candidates else type(value).__name__
        raise BadFieldType(field.field_type, got, field.name)
    if isinstance(value, bytearray):
        value = bytes(value)
    return FieldValue(field.field_type, value)


# Codecs
# decoder(raw, field, encoding, memo_file) -> FieldValue
# encoder(value, field, encoding, memo_file) -> bytes of exactly field.length

_NUMBER_RE = re.compile(r"^[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?$")
_TRUE_CODES = b"TtYy"
_FALSE_CODES = b"FfNn"
_UNSET_CODES = b"? \x00"


def _is_blank(raw: bytes) -> bool:
    return not raw.strip(b" \x00")


def _blank_slot(field: FieldInfo) -> bytes:
    return b" " * field.length


def _encode_text(text: str, field: FieldInfo, encoding: str) -> bytes:
    try:
        data = text.encode(encoding)
    except UnicodeEncodeError as e:
        raise InvalidFieldValue(f"Field '{field.name}': {e}") from e
    if len(data) > field.length:
        raise ValueTooLong(
            f"Value {text!r} needs {len(data)} bytes, field '{field.name}' holds {field.length}"
        )
    return data


def _decode_character(raw, field, encoding, memo_file):
    text = raw.rstrip(b" \x00")
    if not text:
        return FieldValue(FieldType.CHARACTER)
    return FieldValue(FieldType.CHARACTER, text.decode(encoding, errors="replace"))


def _encode_character(value, field, encoding, memo_file):
    if value.value is None:
        return _blank_slot(field)
    return _encode_text(value.value, field, encoding).ljust(field.length, b" ")


def _decode_numeric(raw, field, encoding, memo_file):
    text = raw.strip(b" \x00").decode("ascii", errors="replace")
    if not text:
        return FieldValue(field.field_type)
    if not _NUMBER_RE.match(text):
        raise FieldParseError(text, field.name)
    return FieldValue(field.field_type, float(text))


def _encode_numeric(value, field, encoding, memo_file):
    number = value.value
    if number is None:
        return _blank_slot(field)
    if isinstance(number, float) and not math.isfinite(number):
        raise InvalidFieldValue(f"Field '{field.name}' cannot store {number}")
    if isinstance(number, int):
        # Formatting with "f" would go through float and lose digits
        text = str(number)
        if field.decimal_count:
            text += "." + "0" * field.decimal_count
    else:
        text = f"{number:.{field.decimal_count}f}"
    if len(text) > field.length:
        raise ValueTooLong(
            f"Value {number} needs {len(text)} characters, field '{field.name}' holds {field.length}"
        )
    return text.rjust(field.length).encode("ascii")


def _decode_logical(raw, field, encoding, memo_file):
    code = raw[0]
    if code in _TRUE_CODES:
        return FieldValue(FieldType.LOGICAL, True)
    if code in _FALSE_CODES:
        return FieldValue(FieldType.LOGICAL, False)
    if code in _UNSET_CODES:
        return FieldValue(FieldType.LOGICAL)
    raise FieldParseError(raw.decode("latin-1"), field.name)


def _encode_logical(value, field, encoding, memo_file):
    if value.value is None:
        return b"?"
    return b"T" if value.value else b"F"


def _decode_date(raw, field, encoding, memo_file):
    if _is_blank(raw) or raw == b"00000000":
        return FieldValue(FieldType.DATE)
    text = raw.decode("ascii", errors="replace")
    if not text.isdigit():
        raise InvalidDate(f"Invalid date {text!r} in field '{field.name}'")
    try:
        day = datetime.date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        raise InvalidDate(f"Invalid date {text!r} in field '{field.name}'") from None
    return FieldValue(FieldType.DATE, day)


def _encode_date(value, field, encoding, memo_file):
    day = value.value
    if day is None:
        return _blank_slot(field)
    return f"{day.year:04d}{day.month:02d}{day.day:02d}".encode("ascii")


def _decode_datetime(raw, field, encoding, memo_file):
    if _is_blank(raw):
        return FieldValue(FieldType.DATETIME)
    day_number, millis = struct.unpack("<LL", raw)
    if day_number == 0:
        return FieldValue(FieldType.DATETIME)
    try:
        day = datetime.date.fromordinal(day_number - JULIAN_DAY_OFFSET)
    except (ValueError, OverflowError):
        raise InvalidDate(f"Invalid julian day {day_number} in field '{field.name}'") from None
    if millis >= 86400000:
        raise InvalidDate(f"Invalid time of day {millis}ms in field '{field.name}'")
    stamp = datetime.datetime.combine(day, datetime.time()) + datetime.timedelta(milliseconds=millis)
    return FieldValue(FieldType.DATETIME, stamp)


def _encode_datetime(value, field, encoding, memo_file):
    """Julian day and milliseconds since midnight; microseconds are truncated."""
    stamp = value.value
    if stamp is None:
        return b"\x00" * field.length
    day_number = stamp.date().toordinal() + JULIAN_DAY_OFFSET
    millis = ((stamp.hour * 60 + stamp.minute) * 60 + stamp.second) * 1000 + stamp.microsecond // 1000
    return struct.pack("<LL", day_number, millis)


def _decode_integer(raw, field, encoding, memo_file):
    return FieldValue(FieldType.INTEGER, struct.unpack("<i", raw)[0])


def _encode_integer(value, field, encoding, memo_file):
    try:
        return struct.pack("<i", value.value or 0)
    except struct.error:
        raise ValueTooLong(f"{value.value} does not fit in integer field '{field.name}'") from None


def _decode_double(raw, field, encoding, memo_file):
    return FieldValue(FieldType.DOUBLE, struct.unpack("<d", raw)[0])


def _encode_double(value, field, encoding, memo_file):
    return struct.pack("<d", float(value.value or 0))


def _decode_currency(raw, field, encoding, memo_file):
    return FieldValue(FieldType.CURRENCY, struct.unpack("<q", raw)[0] / CURRENCY_SCALE)


def _encode_currency(value, field, encoding, memo_file):
    amount = value.value or 0
    if isinstance(amount, float) and not math.isfinite(amount):
        raise InvalidFieldValue(f"Field '{field.name}' cannot store {amount}")
    try:
        return struct.pack("<q", int(round(amount * CURRENCY_SCALE)))
    except struct.error:
        raise ValueTooLong(f"{amount} does not fit in currency field '{field.name}'") from None


def _memo_block_index(raw: bytes, field: FieldInfo) -> int:
    if field.length == 4:
        return struct.unpack("<L", raw)[0]
    digits = raw.strip(b" \x00")
    if not digits:
        return 0
    if not digits.isdigit():
        raise FieldParseError(digits.decode("latin-1"), field.name)
    return int(digits)


def _memo_slot(index: int, field: FieldInfo) -> bytes:
    if field.length == 4:
        return struct.pack("<L", index)
    if not index:
        return _blank_slot(field)
    return str(index).rjust(field.length).encode("ascii")


def _decode_memo(raw, field, encoding, memo_file):
    index = _memo_block_index(raw, field)
    if not index:
        return FieldValue(FieldType.MEMO)
    if memo_file is None:
        raise MissingMemoFile(
            f"Field '{field.name}' references memo block {index} but there is no memo file"
        )
    memo_type, data = memo_file.read_typed_block(index)
    if memo_type == MEMO_TYPE_TEXT:
        return FieldValue(FieldType.MEMO, data.decode(encoding, errors="replace"))
    return FieldValue(FieldType.MEMO, data)


def _encode_memo(value, field, encoding, memo_file):
    payload = value.value
    # Empty content is stored as "not set", without allocating a block
    if not payload:
        return _memo_slot(0, field)
    if memo_file is None:
        raise MissingMemoFile(f"Field '{field.name}' needs a memo file to be written")

    if isinstance(payload, str):
        try:
            data = payload.encode(encoding)
        except UnicodeEncodeError as e:
            raise InvalidFieldValue(f"Field '{field.name}': {e}") from e
        index = memo_file.append_block(data, MEMO_TYPE_TEXT)
    else:
        # dBase III / IV entries carry no type and always read back as text
        if not memo_file.stores_binary:
            raise BadFieldType(FieldType.MEMO, "bytes", field.name)
        index = memo_file.append_block(payload, MEMO_TYPE_PICTURE)
    return _memo_slot(index, field)


_DECODERS = {
    FieldType.CHARACTER: _decode_character,
    FieldType.NUMERIC: _decode_numeric,
    FieldType.FLOAT: _decode_numeric,
    FieldType.LOGICAL: _decode_logical,
    FieldType.DATE: _decode_date,
    FieldType.DATETIME: _decode_datetime,
    FieldType.INTEGER: _decode_integer,
    FieldType.DOUBLE: _decode_double,
    FieldType.CURRENCY: _decode_currency,
    FieldType.MEMO: _decode_memo,
}

_ENCODERS = {
    FieldType.CHARACTER: _encode_character,
    FieldType.NUMERIC: _encode_numeric,
    FieldType.FLOAT: _encode_numeric,
    FieldType.LOGICAL: _encode_logical,
    FieldType.DATE: _encode_date,
    FieldType.DATETIME: _encode_datetime,
    FieldType.INTEGER: _encode_integer,
    FieldType.DOUBLE: _encode_double,
    FieldType.CURRENCY: _encode_currency,
    FieldType.MEMO: _encode_memo,
}


def decode_field_value(raw: bytes, field: FieldInfo, encoding: str = DEFAULT_ENCODING,
                       memo_file=None) -> FieldValue:
    """
    Decode the fixed-width slot of field.

    Args:
        raw: The field.length bytes of the slot
        field: The field descriptor
        encoding: Text encoding of the table
        memo_file: The open MemoFile, or None if the table has none

    Returns:
        The decoded FieldValue
    """
    return _DECODERS[field.field_type](raw, field, encoding, memo_file)


def encode_field_value(value: Any, field: FieldInfo, encoding: str = DEFAULT_ENCODING,
                       memo_file=None) -> bytes:
    """
    Encode value into the fixed-width slot of field.

    Memo values are appended to memo_file and only their block number is
    returned in the slot.

    Returns:
        Exactly field.length bytes
    """
    field_value = coerce_field_value(value, field)
    return _ENCODERS[field.field_type](field_value, field, encoding, memo_file)


# Conversions from FieldValue to Python types

_UNION_ORIGINS = (typing.Union,) + ((types.UnionType,) if hasattr(types, "UnionType") else ())

# target -> (accepted field types or None for any, converter)
_CONVERSIONS: Dict[Any, Tuple[Optional[FrozenSet[FieldType]], Callable[[FieldValue], Any]]] = {}


def register_conversion(target, func: Callable[[FieldValue], Any], field_types=None) -> None:
    """
    Make target usable with convert_field_value() / read_next_field_as().

    Args:
        target: The Python type to convert to
        func: Called with a set FieldValue, returns the converted value
        field_types: Field types func accepts, None to accept any
    """
    accepted = frozenset(field_types) if field_types is not None else None
    _CONVERSIONS[target] = (accepted, func)


def _optional_inner(target):
    if typing.get_origin(target) in _UNION_ORIGINS:
        args = typing.get_args(target)
        inner = [arg for arg in args if arg is not type(None)]
        if len(args) == 2 and len(inner) == 1:
            return inner[0]
    return None


def convert_field_value(field_value: FieldValue, target):
    """
    Convert field_value to the Python type target.

    Optional[T] targets turn a not set value into None; plain targets
    require the value to be set.

    Raises:
        FieldConversionError: if the stored variant cannot become target
    """
    if target is FieldValue:
        return field_value
    optional = False
    inner = _optional_inner(target)
    if inner is not None:
        target, optional = inner, True
        if target is FieldValue:
            return field_value

    try:
        accepted, func = _CONVERSIONS[target]
    except (KeyError, TypeError):
        raise FieldConversionError(target, field_value.field_type, field_value.value) from None

    if accepted is not None and field_value.field_type not in accepted:
        raise FieldConversionError(target, field_value.field_type, field_value.value)
    if field_value.value is None:
        if optional:
            return None
        raise FieldConversionError(target, field_value.field_type, None)
    return func(field_value)


def _payload_of(target):
    def convert(field_value):
        if not isinstance(field_value.value, target):
            raise FieldConversionError(target, field_value.field_type, field_value.value)
        return field_value.value
    return convert


register_conversion(str, _payload_of(str), (FieldType.CHARACTER, FieldType.MEMO))
register_conversion(bytes, _payload_of(bytes), (FieldType.MEMO,))
register_conversion(bool, _payload_of(bool), (FieldType.LOGICAL,))
register_conversion(int, _payload_of(int), (FieldType.INTEGER,))
register_conversion(
    float,
    lambda field_value: float(field_value.value),
    (FieldType.NUMERIC, FieldType.FLOAT, FieldType.DOUBLE, FieldType.CURRENCY, FieldType.INTEGER),
)
register_conversion(datetime.date, _payload_of(datetime.date), (FieldType.DATE,))
register_conversion(datetime.datetime, _payload_of(datetime.datetime), (FieldType.DATETIME,))
