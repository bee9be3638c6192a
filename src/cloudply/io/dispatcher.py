"""
Parse State Machine
===================
Routes tokenizer events to their semantic destination.

Why is this file needed?
------------------------
1. Ordering: `transition` is a pure function over an immutable `ParseState`.
   It alone decides whether an event is legal at this point of the file and
   when rows, elements and the whole body are complete.
2. Mapping: `Dispatcher` applies each accepted event to a `ParseSession`:
   vertex values go into the row buffer, camera values into the pose, list
   values into auxiliary index lists. Elements it does not know are still
   walked through so the cursor stays in sync, but their values are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Callable, Iterable, Optional

from cloudply.config import DEFAULT_ALPHA
from cloudply.errors import PlyError, TruncatedBodyError
from cloudply.io.events import (
    Comment, Diagnostic, ElementDefinition, EndHeader, EndOfInput, Event, FormatDeclaration,
    ListBegin, ListEnd, ListPropertyDefinition, ListValue, ObjInfo, RowBegin, RowEnd,
    ScalarPropertyDefinition, ScalarValue,
)
from cloudply.model.cloud import AuxiliaryIndexList, RowBuffer, RowCursor
from cloudply.model.datatypes import NATIVE_BYTE_ORDER, FormatTag, pack_into
from cloudply.model.fields import Schema, SchemaBuilder, channel_byte
from cloudply.model.pose import CAMERA_PROPERTY_MAP, Pose

logger = logging.getLogger(__name__)


class Phase(StrEnum):
    IDLE = "idle"
    HEADER_PARSED = "header_parsed"
    IN_ELEMENT = "in_element"
    IN_PROPERTY = "in_property"
    ROW_COMPLETE = "row_complete"
    ELEMENT_COMPLETE = "element_complete"
    DONE = "done"


class ElementKind(StrEnum):
    VERTEX = "vertex"
    CAMERA = "camera"
    RANGE_GRID = "range_grid"
    FACE = "face"
    UNKNOWN = "unknown"


ELEMENT_KINDS: dict[str, ElementKind] = {
    "vertex": ElementKind.VERTEX,
    "camera": ElementKind.CAMERA,
    "range_grid": ElementKind.RANGE_GRID,
    "face": ElementKind.FACE,
}

# Elements whose list properties are kept as auxiliary index lists
LIST_ELEMENT_KINDS = frozenset({ElementKind.VERTEX, ElementKind.RANGE_GRID, ElementKind.FACE})

HEADER_EVENTS = (
    FormatDeclaration, ElementDefinition, ScalarPropertyDefinition,
    ListPropertyDefinition, Comment, ObjInfo,
)
VALUE_EVENTS = (ScalarValue, ListBegin, ListValue, ListEnd)


@dataclass(frozen=True)
class ElementSpec:
    name: str
    count: int


@dataclass(frozen=True)
class ParseState:
    phase: Phase = Phase.IDLE
    elements: tuple[ElementSpec, ...] = ()
    element: int = -1
    row: int = -1

    @property
    def current(self) -> Optional[ElementSpec]:
        if 0 <= self.element < len(self.elements):
            return self.elements[self.element]
        return None


def _next_pending(elements: tuple[ElementSpec, ...], start: int) -> Optional[int]:
    """Index of the next element with at least one row."""
    for index in range(start, len(elements)):
        if elements[index].count > 0:
            return index
    return None


def transition(state: ParseState, event: Event) -> ParseState:
    """Return the state after `event`, or raise if the event is illegal here."""
    phase = state.phase

    if isinstance(event, Diagnostic):
        return state

    if phase is Phase.IDLE:
        if isinstance(event, ElementDefinition):
            return replace(state, elements=state.elements + (ElementSpec(event.name, event.count),))
        if isinstance(event, HEADER_EVENTS):
            return state
        if isinstance(event, EndHeader):
            return replace(state, phase=Phase.HEADER_PARSED)
        raise PlyError(f"{type(event).__name__} received before the end of the header.")

    if phase is Phase.DONE:
        raise PlyError(f"{type(event).__name__} received after the body was complete.")

    if isinstance(event, EndOfInput):
        if phase in (Phase.HEADER_PARSED, Phase.ELEMENT_COMPLETE):
            if _next_pending(state.elements, state.element + 1) is None:
                return replace(state, phase=Phase.DONE)
            pending = state.elements[_next_pending(state.elements, state.element + 1)]
            where = f"before element '{pending.name}'"
        else:
            where = f"in element '{state.current.name}' at row {state.row} of {state.current.count}"
        position = f" (byte offset {event.offset})" if event.offset is not None else ""
        raise TruncatedBodyError(f"Input ended {where}{position}.")

    if isinstance(event, RowBegin):
        if phase is Phase.ROW_COMPLETE:
            element, row = state.element, state.row + 1
        elif phase in (Phase.HEADER_PARSED, Phase.ELEMENT_COMPLETE):
            element, row = _next_pending(state.elements, state.element + 1), 0
            if element is None:
                raise PlyError(f"Row of '{event.element}' received but every element is complete.")
        else:
            raise PlyError(f"Row of '{event.element}' started before the previous row ended.")
        expected = state.elements[element].name
        if event.element != expected or event.row != row:
            raise PlyError(f"Expected row {row} of '{expected}', got row {event.row} of '{event.element}'.")
        return replace(state, phase=Phase.IN_ELEMENT, element=element, row=row)

    if isinstance(event, VALUE_EVENTS):
        if phase in (Phase.IN_ELEMENT, Phase.IN_PROPERTY):
            return replace(state, phase=Phase.IN_PROPERTY)
        raise PlyError(f"{type(event).__name__} received outside of a row.")

    if isinstance(event, RowEnd):
        if phase not in (Phase.IN_ELEMENT, Phase.IN_PROPERTY):
            raise PlyError(f"Row of '{event.element}' ended without being started.")
        if state.row + 1 >= state.current.count:
            return replace(state, phase=Phase.ELEMENT_COMPLETE)
        return replace(state, phase=Phase.ROW_COMPLETE)

    raise PlyError(f"{type(event).__name__} is not valid in phase '{phase}'.")


@dataclass
class ParseSession:
    """Everything produced by one read call."""
    filename: Optional[str] = None
    format: Optional[FormatTag] = None
    version: str = ""
    kinds: dict[str, ElementKind] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    builder: Optional[SchemaBuilder] = None
    schema: Optional[Schema] = None
    cloud: Optional[RowBuffer] = None
    cursor: Optional[RowCursor] = None
    pose: Pose = field(default_factory=Pose)
    width: Optional[int] = None
    height: Optional[int] = None
    lists: dict[tuple[str, str], AuxiliaryIndexList] = field(default_factory=dict)
    comments: list[str] = field(default_factory=list)
    obj_info: list[str] = field(default_factory=list)

    @property
    def has_camera(self) -> bool:
        return ElementKind.CAMERA in self.kinds.values()

    def list_for(self, kind: ElementKind, *names: str) -> Optional[AuxiliaryIndexList]:
        """First auxiliary list of an element kind whose property has one of `names`."""
        for (element, name), aux in self.lists.items():
            if self.kinds.get(element) is kind and name in names:
                return aux
        return None


class Dispatcher:
    """
    With `allocate=False` no row buffer is created: vertex rows are walked
    through without being stored, while camera values still reach the pose.
    """

    def __init__(self, filename: Optional[str] = None, allocate: bool = True) -> None:
        self.filename = filename
        self.allocate = allocate
        self.state = ParseState()
        self.session = ParseSession(filename=filename)
        self._handlers: dict[type, Callable] = {
            FormatDeclaration: self._on_format,
            ElementDefinition: self._on_element_definition,
            ScalarPropertyDefinition: self._on_scalar_definition,
            ListPropertyDefinition: self._on_list_definition,
            Comment: self._on_comment,
            ObjInfo: self._on_obj_info,
            EndHeader: self._on_end_header,
            RowBegin: self._on_row_begin,
            ScalarValue: self._on_scalar_value,
            ListBegin: self._on_list_begin,
            ListValue: self._on_list_value,
            ListEnd: self._on_list_end,
            RowEnd: self._on_row_end,
            EndOfInput: self._on_end_of_input,
            Diagnostic: self._on_diagnostic,
        }

    @property
    def done(self) -> bool:
        return self.state.phase is Phase.DONE

    def feed(self, event: Event) -> None:
        try:
            self.state = transition(self.state, event)
            self._handlers[type(event)](event)
        except PlyError as e:
            raise e.located(self.filename, getattr(event, "line", None))

    def run(self, events: Iterable[Event]) -> ParseSession:
        for event in events:
            self.feed(event)
        return self.session

    def _kind(self, element: str) -> ElementKind:
        return self.session.kinds.get(element, ElementKind.UNKNOWN)

    # --- Header handlers ---

    def _on_format(self, event: FormatDeclaration) -> None:
        self.session.format = FormatTag(event.format)
        self.session.version = event.version

    def _on_element_definition(self, event: ElementDefinition) -> None:
        kind = ELEMENT_KINDS.get(event.name, ElementKind.UNKNOWN)
        self.session.kinds[event.name] = kind
        self.session.counts[event.name] = event.count

        if kind is ElementKind.VERTEX:
            self.session.builder = SchemaBuilder(event.name)
        elif kind is ElementKind.CAMERA and event.count != 1:
            logger.warning(f"Camera element declares {event.count} rows; the last row wins.")
        elif kind is ElementKind.UNKNOWN:
            logger.debug(f"Element '{event.name}' is not interpreted; its {event.count} rows will be skipped.")

    def _on_scalar_definition(self, event: ScalarPropertyDefinition) -> None:
        kind = self._kind(event.element)
        if kind is ElementKind.VERTEX:
            self.session.builder.add_scalar(event.name, event.datatype)
        elif kind is ElementKind.CAMERA and event.name not in CAMERA_PROPERTY_MAP:
            logger.debug(f"Camera property '{event.name}' is not interpreted.")
        elif kind in (ElementKind.RANGE_GRID, ElementKind.FACE):
            logger.debug(f"Scalar property '{event.name}' of '{event.element}' is not interpreted.")

    def _on_list_definition(self, event: ListPropertyDefinition) -> None:
        kind = self._kind(event.element)
        if kind is ElementKind.VERTEX:
            self.session.builder.add_list(event.name, event.size_type, event.value_type)
        if kind in LIST_ELEMENT_KINDS:
            if not self.allocate:
                return
            self.session.lists[(event.element, event.name)] = AuxiliaryIndexList(
                event.element, event.name, self.session.counts[event.element]
            )
        else:
            logger.debug(f"List property '{event.name}' of '{event.element}' is not interpreted.")

    def _on_comment(self, event: Comment) -> None:
        self.session.comments.append(event.text)

    def _on_obj_info(self, event: ObjInfo) -> None:
        self.session.obj_info.append(event.text)

    def _on_end_header(self, event: EndHeader) -> None:
        session = self.session
        if session.builder is None:
            session.cloud = RowBuffer.allocate(0, 0)
            return

        schema = session.builder.build()
        session.schema = schema
        if not self.allocate:
            return
        session.cloud = RowBuffer.allocate(session.counts[schema.element], schema.point_step, schema.fields)
        session.cursor = RowCursor(schema.point_step)

        color = schema.color_field
        if color is not None and not schema.has_alpha and session.cloud.row_count:
            alpha = color.offset + channel_byte("alpha")
            session.cloud.data[alpha::schema.point_step] = bytes([DEFAULT_ALPHA]) * session.cloud.row_count

        logger.debug(
            f"Layout of '{schema.element}': {[f.name for f in schema.fields]}, "
            f"{schema.point_step} bytes per row, {session.cloud.row_count} rows."
        )

    # --- Body handlers ---

    def _on_row_begin(self, event: RowBegin) -> None:
        if self._kind(event.element) is ElementKind.VERTEX and self.session.cursor is not None:
            self.session.cursor.begin_row(self.state.row)

    def _on_scalar_value(self, event: ScalarValue) -> None:
        kind = self._kind(event.element)
        if kind is ElementKind.VERTEX and self.session.cloud is not None:
            session = self.session
            slot = session.schema.slots[event.index]
            value = float(event.value) if slot.datatype.is_float else event.value
            pack_into(slot.datatype, NATIVE_BYTE_ORDER, session.cloud.data, session.cursor.base + slot.offset, value)
            session.cursor.advance(slot.advance)
        elif kind is ElementKind.CAMERA:
            self._set_camera_value(event.name, event.value)

    def _set_camera_value(self, name: str, value: int | float) -> None:
        prop = CAMERA_PROPERTY_MAP.get(name)
        if prop is None or prop.target is None:
            return
        target = prop.target
        if target[0] == "origin":
            self.session.pose.origin[target[1]] = value
        elif target[0] == "orientation":
            self.session.pose.orientation[target[1], target[2]] = value
        elif target[0] == "width":
            self.session.width = int(value)
        else:
            self.session.height = int(value)

    def _on_list_begin(self, event: ListBegin) -> None:
        aux = self.session.lists.get((event.element, event.name))
        if aux is not None:
            aux.begin_entry(event.size)

    def _on_list_value(self, event: ListValue) -> None:
        aux = self.session.lists.get((event.element, event.name))
        if aux is not None:
            aux.add_value(event.value)

    def _on_list_end(self, event: ListEnd) -> None:
        aux = self.session.lists.get((event.element, event.name))
        if aux is not None:
            aux.end_entry()

    def _on_row_end(self, event: RowEnd) -> None:
        if self._kind(event.element) is ElementKind.VERTEX and self.session.cursor is not None:
            self.session.cursor.end_row()
        if self.state.phase is Phase.ELEMENT_COMPLETE:
            self._complete_element(event.element)

    def _complete_element(self, element: str) -> None:
        for (owner, _), aux in self.session.lists.items():
            if owner == element:
                aux.finalize()
        logger.debug(f"Element '{element}' complete ({self.session.counts[element]} rows).")

    def _on_end_of_input(self, event: EndOfInput) -> None:
        session = self.session
        # Elements declared with zero rows never complete on their own
        for aux in session.lists.values():
            if not aux.finalized:
                aux.finalize()

        cloud = session.cloud
        if cloud is None or (session.width is None and session.height is None):
            return
        width = session.width if session.width is not None else cloud.row_count
        height = session.height if session.height is not None else 1
        if width * height == cloud.row_count:
            cloud.width, cloud.height = width, height
        else:
            logger.warning(
                f"Camera viewport {width}x{height} does not match {cloud.row_count} vertices; "
                "treating the cloud as unorganized."
            )

    def _on_diagnostic(self, event: Diagnostic) -> None:
        logger.log(event.level, f"{self.filename}:{event.line}: {event.message}")
