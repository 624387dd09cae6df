"""
Class decorator mapping the attributes of a class onto the fields of a table.

    @dbase_record
    class Station:
        name: str
        marker_col: str
        marker_sym: str
        line: str

    stations = reader.read_as(Station)
    writer.write(stations)

Attributes are matched with the table fields by position, in declaration
order, and converted with their annotation (see convert_field_value()).
"""

import dataclasses
import typing


def dbase_record(cls):
    """
    Give cls a read_using() classmethod and a write_using() method.

    cls is turned into a dataclass first if it is not one already.
    """
    if not dataclasses.is_dataclass(cls):
        cls = dataclasses.dataclass(cls)

    hints = typing.get_type_hints(cls)
    names = [f.name for f in dataclasses.fields(cls) if f.init]

    def read_using(klass, field_iterator):
        values = {}
        for name in names:
            values[name] = field_iterator.read_next_field_as(hints[name]).value
        return klass(**values)

    def write_using(self, field_writer):
        for name in names:
            field_writer.write_next_field_value(getattr(self, name))

    cls.read_using = classmethod(read_using)
    cls.write_using = write_using
    return cls
