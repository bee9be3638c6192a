import numpy as np
import pytest

from cloudply.errors import PlyError, SchemaError, TruncatedBodyError
from cloudply.io.dispatcher import Dispatcher, ElementKind, ParseState, Phase, transition
from cloudply.io.events import (
    Diagnostic, ElementDefinition, EndHeader, EndOfInput, FormatDeclaration, ListBegin, ListEnd,
    ListPropertyDefinition, ListValue, RowBegin, RowEnd, ScalarPropertyDefinition, ScalarValue,
)
from cloudply.model.datatypes import PlyType


def run(events, state=None):
    state = state or ParseState()
    for event in events:
        state = transition(state, event)
    return state


def header(*elements):
    events = [FormatDeclaration("ascii", "1.0")]
    events.extend(ElementDefinition(name, count) for name, count in elements)
    events.append(EndHeader())
    return events


class TestTransition:
    def test_header_collects_elements(self):
        state = run(header(("vertex", 2), ("camera", 1)))
        assert state.phase is Phase.HEADER_PARSED
        assert [(e.name, e.count) for e in state.elements] == [("vertex", 2), ("camera", 1)]

    def test_full_walk(self):
        state = run(header(("vertex", 2)))
        state = transition(state, RowBegin("vertex", 0))
        assert state.phase is Phase.IN_ELEMENT
        state = transition(state, ScalarValue("vertex", 0, "x", 1.0))
        assert state.phase is Phase.IN_PROPERTY
        state = transition(state, RowEnd("vertex", 0))
        assert state.phase is Phase.ROW_COMPLETE
        state = run([RowBegin("vertex", 1), ScalarValue("vertex", 0, "x", 2.0), RowEnd("vertex", 1)], state)
        assert state.phase is Phase.ELEMENT_COMPLETE
        assert transition(state, EndOfInput()).phase is Phase.DONE

    def test_transition_does_not_mutate(self):
        state = run(header(("vertex", 1)))
        transition(state, RowBegin("vertex", 0))
        assert state.phase is Phase.HEADER_PARSED

    def test_zero_count_elements_are_skipped(self):
        state = run(header(("vertex", 0), ("range_grid", 1)))
        state = transition(state, RowBegin("range_grid", 0))
        assert state.current.name == "range_grid"

    def test_empty_body_is_done(self):
        state = run(header(("vertex", 0)))
        assert transition(state, EndOfInput()).phase is Phase.DONE

    def test_early_end_of_input(self):
        state = run(header(("vertex", 2)) + [RowBegin("vertex", 0), ScalarValue("vertex", 0, "x", 1.0)])
        with pytest.raises(TruncatedBodyError, match="row 0 of 2"):
            transition(state, EndOfInput())

    def test_missing_element_at_end_of_input(self):
        state = run(header(("vertex", 1), ("camera", 1)) + [RowBegin("vertex", 0), RowEnd("vertex", 0)])
        with pytest.raises(TruncatedBodyError, match="camera"):
            transition(state, EndOfInput(offset=12))

    def test_value_before_header_end(self):
        with pytest.raises(PlyError):
            transition(ParseState(), ScalarValue("vertex", 0, "x", 1.0))

    def test_rows_out_of_order(self):
        state = run(header(("vertex", 2)))
        with pytest.raises(PlyError):
            transition(state, RowBegin("vertex", 1))

    def test_event_after_done(self):
        state = run(header(("vertex", 0)) + [EndOfInput()])
        with pytest.raises(PlyError):
            transition(state, RowBegin("vertex", 0))

    def test_diagnostics_never_change_state(self):
        state = run(header(("vertex", 1)))
        assert transition(state, Diagnostic.warning("advisory")) == state


class TestDispatcher:
    def test_vertex_values_land_at_field_offsets(self):
        dispatcher = Dispatcher("memory.ply")
        dispatcher.run([
            FormatDeclaration("ascii", "1.0"),
            ElementDefinition("vertex", 2),
            ScalarPropertyDefinition("vertex", "x", PlyType.FLOAT32),
            ScalarPropertyDefinition("vertex", "label", PlyType.INT16),
            EndHeader(),
            RowBegin("vertex", 0), ScalarValue("vertex", 0, "x", 1.5), ScalarValue("vertex", 1, "label", -3),
            RowEnd("vertex", 0),
            RowBegin("vertex", 1), ScalarValue("vertex", 0, "x", 2.5), ScalarValue("vertex", 1, "label", 9),
            RowEnd("vertex", 1),
            EndOfInput(),
        ])
        assert dispatcher.done
        rows = dispatcher.session.cloud.as_array()
        assert rows["x"].tolist() == [1.5, 2.5]
        assert rows["label"].tolist() == [-3, 9]
        assert dispatcher.session.kinds == {"vertex": ElementKind.VERTEX}

    def test_without_allocation_only_the_pose_is_filled(self):
        dispatcher = Dispatcher("memory.ply", allocate=False)
        dispatcher.run([
            FormatDeclaration("ascii", "1.0"),
            ElementDefinition("vertex", 1),
            ScalarPropertyDefinition("vertex", "x", PlyType.FLOAT32),
            ElementDefinition("camera", 1),
            ScalarPropertyDefinition("camera", "view_pz", PlyType.FLOAT32),
            EndHeader(),
            RowBegin("vertex", 0), ScalarValue("vertex", 0, "x", 1.5), RowEnd("vertex", 0),
            RowBegin("camera", 0), ScalarValue("camera", 0, "view_pz", 7.0), RowEnd("camera", 0),
            EndOfInput(),
        ])
        session = dispatcher.session
        assert dispatcher.done
        assert session.cloud is None
        assert session.schema.point_step == 4
        assert session.pose.origin.tolist() == [0.0, 0.0, 7.0]

    def test_list_protocol(self):
        dispatcher = Dispatcher()
        dispatcher.run([
            FormatDeclaration("ascii", "1.0"),
            ElementDefinition("range_grid", 2),
            ListPropertyDefinition("range_grid", "vertex_indices", PlyType.UINT8, PlyType.INT32),
            EndHeader(),
            RowBegin("range_grid", 0),
            ListBegin("range_grid", 0, "vertex_indices", 1), ListValue("range_grid", 0, "vertex_indices", 0),
            ListEnd("range_grid", 0, "vertex_indices"),
            RowEnd("range_grid", 0),
            RowBegin("range_grid", 1),
            ListBegin("range_grid", 0, "vertex_indices", 0), ListEnd("range_grid", 0, "vertex_indices"),
            RowEnd("range_grid", 1),
            EndOfInput(),
        ])
        aux = dispatcher.session.list_for(ElementKind.RANGE_GRID, "vertex_indices")
        assert aux.finalized
        assert aux.to_lists() == [[0], []]
        assert dispatcher.session.cloud.row_count == 0

    def test_errors_are_located(self):
        dispatcher = Dispatcher("broken.ply")
        with pytest.raises(PlyError) as excinfo:
            dispatcher.feed(ScalarValue("vertex", 0, "x", 1.0, line=17))
        assert (excinfo.value.filename, excinfo.value.line) == ("broken.ply", 17)

    def test_row_stride_mismatch(self):
        dispatcher = Dispatcher()
        dispatcher.run([
            FormatDeclaration("ascii", "1.0"),
            ElementDefinition("vertex", 1),
            ScalarPropertyDefinition("vertex", "x", PlyType.FLOAT32),
            ScalarPropertyDefinition("vertex", "x", PlyType.FLOAT32),
            EndHeader(),
            RowBegin("vertex", 0), ScalarValue("vertex", 0, "x", 1.0), ScalarValue("vertex", 1, "x", 2.0),
        ])
        with pytest.raises(SchemaError):
            dispatcher.feed(RowEnd("vertex", 0, line=6))

    def test_missing_alpha_defaults_to_opaque(self):
        dispatcher = Dispatcher()
        dispatcher.run([
            FormatDeclaration("ascii", "1.0"),
            ElementDefinition("vertex", 1),
            ScalarPropertyDefinition("vertex", "red", PlyType.UINT8),
            ScalarPropertyDefinition("vertex", "green", PlyType.UINT8),
            ScalarPropertyDefinition("vertex", "blue", PlyType.UINT8),
            EndHeader(),
            RowBegin("vertex", 0),
            ScalarValue("vertex", 0, "red", 0x10),
            ScalarValue("vertex", 1, "green", 0x20),
            ScalarValue("vertex", 2, "blue", 0x30),
            RowEnd("vertex", 0),
            EndOfInput(),
        ])
        rows = dispatcher.session.cloud.as_array()
        assert rows["rgb"][0] == np.uint32(0xFF102030)
