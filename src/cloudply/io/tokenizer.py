"""
Header & Body Tokenizer
=======================
Adapter around the PLY grammar. It splits the header into declaration events
and walks the body (ASCII tokens or binary bytes) element by element,
emitting one event per decoded value.

Note: This module only lexes. Deciding what a property means, where its
value is stored, or whether it is kept at all is the dispatcher's job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional

from cloudply.config import END_HEADER, PLY_FORMAT_VERSION, PLY_MAGIC
from cloudply.errors import HeaderSyntaxError, SchemaError, ValueFormatError
from cloudply.io.events import (
    Comment, Diagnostic, ElementDefinition, EndHeader, EndOfInput, Event, FormatDeclaration,
    ListBegin, ListEnd, ListPropertyDefinition, ListValue, ObjInfo, RowBegin, RowEnd,
    ScalarPropertyDefinition, ScalarValue,
)
from cloudply.model.datatypes import ByteOrder, FormatTag, Number, PlyType, decode_scalar, parse_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropertyLayout:
    name: str
    datatype: PlyType
    size_type: Optional[PlyType] = None

    @property
    def is_list(self) -> bool:
        return self.size_type is not None


@dataclass
class ElementLayout:
    name: str
    count: int
    properties: list[PropertyLayout] = field(default_factory=list)


@dataclass
class HeaderScan:
    """Everything the lexer learned from the header."""
    events: list[Event]
    elements: list[ElementLayout]
    format: FormatTag
    version: str
    body_offset: int
    end_line: int

    @property
    def byte_order(self) -> Optional[ByteOrder]:
        return self.format.byte_order


def _parse_count(token: str, filename: Optional[str], line: int) -> int:
    try:
        count = int(token, 10)
    except ValueError:
        raise HeaderSyntaxError(f"Element count '{token}' is not an integer.", filename, line) from None
    if count < 0:
        raise HeaderSyntaxError(f"Element count {count} is negative.", filename, line)
    return count


def scan_header(stream: BinaryIO, filename: Optional[str] = None) -> HeaderScan:
    """
    Read header lines up to and including `end_header`.

    The stream is left positioned at the first body byte.
    """
    line_number = 1
    magic = stream.readline()
    if magic.strip() != PLY_MAGIC.encode("ascii"):
        raise HeaderSyntaxError(f"Missing '{PLY_MAGIC}' magic line (got {magic[:16]!r}).", filename, line_number)

    events: list[Event] = []
    elements: list[ElementLayout] = []
    fmt: Optional[FormatTag] = None
    version = ""

    while True:
        raw = stream.readline()
        line_number += 1
        if not raw:
            raise HeaderSyntaxError(f"End of file reached before '{END_HEADER}'.", filename, line_number)
        try:
            text = raw.decode("ascii").strip()
        except UnicodeDecodeError:
            raise HeaderSyntaxError("Header line is not ASCII text.", filename, line_number) from None
        if not text:
            continue

        tokens = text.split()
        keyword = tokens[0]

        if keyword == "comment":
            events.append(Comment(text[len(keyword):].strip(), line_number))

        elif keyword == "obj_info":
            events.append(ObjInfo(text[len(keyword):].strip(), line_number))

        elif keyword == "format":
            if len(tokens) != 3:
                raise HeaderSyntaxError(f"Malformed format line '{text}'.", filename, line_number)
            if fmt is not None:
                raise HeaderSyntaxError("Format declared twice.", filename, line_number)
            try:
                fmt = FormatTag(tokens[1])
            except ValueError:
                raise HeaderSyntaxError(
                    f"Unknown format '{tokens[1]}' (expected one of {[tag.value for tag in FormatTag]}).",
                    filename, line_number,
                ) from None
            version = tokens[2]
            if version != PLY_FORMAT_VERSION:
                events.append(Diagnostic.warning(f"Unexpected format version '{version}'.", line_number))
            events.append(FormatDeclaration(fmt, version, line_number))

        elif keyword == "element":
            if len(tokens) != 3:
                raise HeaderSyntaxError(f"Malformed element line '{text}'.", filename, line_number)
            name = tokens[1]
            if any(element.name == name for element in elements):
                raise HeaderSyntaxError(f"Element '{name}' declared twice.", filename, line_number)
            count = _parse_count(tokens[2], filename, line_number)
            elements.append(ElementLayout(name, count))
            events.append(ElementDefinition(name, count, line_number))

        elif keyword == "property":
            if not elements:
                raise HeaderSyntaxError("Property declared before any element.", filename, line_number)
            element = elements[-1]
            try:
                if len(tokens) >= 2 and tokens[1] == "list":
                    if len(tokens) != 5:
                        raise HeaderSyntaxError(f"Malformed list property line '{text}'.", filename, line_number)
                    size_type, value_type, name = parse_type(tokens[2]), parse_type(tokens[3]), tokens[4]
                    if size_type.is_float:
                        raise SchemaError(f"List size type '{tokens[2]}' of '{name}' is not an integer type.")
                    element.properties.append(PropertyLayout(name, value_type, size_type))
                    events.append(ListPropertyDefinition(element.name, name, size_type, value_type, line_number))
                elif len(tokens) == 3:
                    datatype, name = parse_type(tokens[1]), tokens[2]
                    element.properties.append(PropertyLayout(name, datatype))
                    events.append(ScalarPropertyDefinition(element.name, name, datatype, line_number))
                else:
                    raise HeaderSyntaxError(f"Malformed property line '{text}'.", filename, line_number)
            except SchemaError as e:
                raise e.located(filename, line_number)

        elif keyword == END_HEADER:
            if fmt is None:
                raise HeaderSyntaxError("Header has no format line.", filename, line_number)
            events.append(EndHeader(line_number))
            break

        else:
            events.append(Diagnostic.warning(f"Ignoring unknown header keyword '{keyword}'.", line_number))

    return HeaderScan(
        events=events,
        elements=elements,
        format=fmt,
        version=version,
        body_offset=stream.tell(),
        end_line=line_number,
    )


def minimum_body_size(scan: HeaderScan) -> int:
    """Fewest bytes a binary body can hold for the declared elements, with every list empty."""
    total = 0
    for element in scan.elements:
        row = sum((prop.size_type or prop.datatype).size for prop in element.properties)
        total += row * element.count
    return total


def iter_body_events(body: bytes, scan: HeaderScan, filename: Optional[str] = None) -> Iterator[Event]:
    """Yield value events for every declared element instance, then `EndOfInput`."""
    if scan.byte_order is None:
        yield from _ascii_body_events(body, scan, filename)
    else:
        yield from _binary_body_events(body, scan, filename)


def _ascii_tokens(body: bytes, first_line: int) -> Iterator[tuple[str, int]]:
    text = body.decode("ascii", errors="replace")
    for line_number, line in enumerate(text.splitlines(), start=first_line):
        for token in line.split():
            yield token, line_number


def _parse_ascii(datatype: PlyType, token: str, filename: Optional[str], line: int) -> Number:
    try:
        return decode_scalar(datatype, None, token)
    except ValueFormatError as e:
        raise e.located(filename, line)


def _ascii_body_events(body: bytes, scan: HeaderScan, filename: Optional[str]) -> Iterator[Event]:
    tokens = _ascii_tokens(body, scan.end_line + 1)
    line = scan.end_line

    for element in scan.elements:
        for row in range(element.count):
            yield RowBegin(element.name, row, line)
            for index, prop in enumerate(element.properties):
                item = next(tokens, None)
                if item is None:
                    yield EndOfInput(line)
                    return
                token, line = item

                if not prop.is_list:
                    value = _parse_ascii(prop.datatype, token, filename, line)
                    yield ScalarValue(element.name, index, prop.name, value, line)
                    continue

                size = _parse_ascii(prop.size_type, token, filename, line)
                if size < 0:
                    raise ValueFormatError(f"List size {size} of '{prop.name}' is negative.", filename, line)
                yield ListBegin(element.name, index, prop.name, size, line)
                for _ in range(size):
                    item = next(tokens, None)
                    if item is None:
                        yield EndOfInput(line)
                        return
                    token, line = item
                    value = _parse_ascii(prop.datatype, token, filename, line)
                    yield ListValue(element.name, index, prop.name, value, line)
                yield ListEnd(element.name, index, prop.name, line)
            yield RowEnd(element.name, row, line)

    leftover = next(tokens, None)
    if leftover is not None:
        yield Diagnostic.warning(f"Ignoring data after the last element, starting with '{leftover[0]}'.", leftover[1])
    yield EndOfInput(line)


def _binary_body_events(body: bytes, scan: HeaderScan, filename: Optional[str]) -> Iterator[Event]:
    order = scan.byte_order
    view = memoryview(body)
    size = len(view)
    offset = 0
    # Binary bodies have no lines; events are tagged with the end_header line
    line = scan.end_line

    for element in scan.elements:
        for row in range(element.count):
            yield RowBegin(element.name, row, line)
            for index, prop in enumerate(element.properties):
                if not prop.is_list:
                    if offset + prop.datatype.size > size:
                        yield EndOfInput(line, offset)
                        return
                    value = decode_scalar(prop.datatype, order, view, offset)
                    offset += prop.datatype.size
                    yield ScalarValue(element.name, index, prop.name, value, line)
                    continue

                if offset + prop.size_type.size > size:
                    yield EndOfInput(line, offset)
                    return
                count = decode_scalar(prop.size_type, order, view, offset)
                if count < 0:
                    raise ValueFormatError(
                        f"List size {count} of '{prop.name}' at byte offset {offset} is negative.", filename, line
                    )
                offset += prop.size_type.size
                yield ListBegin(element.name, index, prop.name, count, line)
                for _ in range(count):
                    if offset + prop.datatype.size > size:
                        yield EndOfInput(line, offset)
                        return
                    value = decode_scalar(prop.datatype, order, view, offset)
                    offset += prop.datatype.size
                    yield ListValue(element.name, index, prop.name, value, line)
                yield ListEnd(element.name, index, prop.name, line)
            yield RowEnd(element.name, row, line)

    if offset < size:
        yield Diagnostic.info(f"Ignoring {size - offset} bytes after the last element.", line)
    yield EndOfInput(line, offset)
