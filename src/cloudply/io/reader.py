"""
PLY Reader
==========
Reads PLY files into a `RowBuffer` plus pose, range grid and polygons.

The reader only wires the pieces together: the tokenizer turns bytes into
events, the dispatcher turns events into a `ParseSession`, and this module
packages the session into a result object.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Iterable, Optional, Union

from cloudply.errors import PlyError, PlyIOError, TruncatedBodyError
from cloudply.io.dispatcher import Dispatcher, ElementKind, ParseSession, Phase
from cloudply.io.events import Event, RowEnd
from cloudply.io.tokenizer import ElementLayout, HeaderScan, iter_body_events, minimum_body_size, scan_header
from cloudply.model.cloud import AuxiliaryIndexList, IndexEntry, PolygonMesh, RowBuffer
from cloudply.model.datatypes import FormatTag
from cloudply.model.fields import Schema
from cloudply.model.pose import Pose

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

INDEX_LIST_NAMES = ("vertex_indices", "vertex_index")


class PlyVersion(IntEnum):
    V0 = 0  # no camera element
    V1 = 1  # camera element present


@dataclass
class PlyHeader:
    schema: Optional[Schema]
    row_count: int
    pose: Pose
    format: FormatTag
    body_offset: int
    version: PlyVersion = PlyVersion.V0
    elements: list[ElementLayout] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    obj_info: list[str] = field(default_factory=list)


@dataclass
class PlyData:
    cloud: RowBuffer
    pose: Pose
    format: FormatTag
    version: PlyVersion = PlyVersion.V0
    range_grid: list[IndexEntry] = field(default_factory=list)
    polygons: list[list[int]] = field(default_factory=list)
    lists: dict[tuple[str, str], AuxiliaryIndexList] = field(default_factory=dict)
    elements: dict[str, int] = field(default_factory=dict)
    comments: list[str] = field(default_factory=list)
    obj_info: list[str] = field(default_factory=list)


class PlyReader:
    """
    Point Cloud Data (PLY) file format reader.

    Supports `ascii`, `binary_little_endian` and `binary_big_endian` bodies.
    Elements other than `vertex`, `camera`, `range_grid` and `face` are read
    through and discarded.
    """

    def read_header(self, path: PathLike) -> PlyHeader:
        """
        Parse the header without storing any rows.

        Camera values live in the body: when a camera element is declared the
        body is walked up to its last row (vertex rows are skipped, not
        stored) so the returned pose carries them.
        """
        filename = str(path)
        logger.debug(f"Reading PLY header: {filename}")

        def parse(stream: BinaryIO) -> PlyHeader:
            scan = scan_header(stream, filename)
            dispatcher = Dispatcher(filename, allocate=False)
            dispatcher.run(scan.events)
            session = dispatcher.session
            if session.has_camera:
                self._read_camera(dispatcher, iter_body_events(stream.read(), scan, filename))
            schema = session.schema
            return PlyHeader(
                schema=schema,
                row_count=session.counts.get(schema.element, 0) if schema is not None else 0,
                pose=session.pose,
                format=scan.format,
                body_offset=scan.body_offset,
                version=PlyVersion.V1 if session.has_camera else PlyVersion.V0,
                elements=scan.elements,
                comments=session.comments,
                obj_info=session.obj_info,
            )

        return self._load(path, parse)

    def read(self, path: PathLike) -> PlyData:
        """Read the whole file."""
        filename = str(path)
        logger.info(f"Loading PLY from: {filename}")

        def parse(stream: BinaryIO) -> ParseSession:
            scan = scan_header(stream, filename)
            body = stream.read()
            self._check_body_size(scan, body, filename)
            dispatcher = Dispatcher(filename)
            dispatcher.run(scan.events)
            dispatcher.run(iter_body_events(body, scan, filename))
            if not dispatcher.done:
                raise PlyError("Body events ended before the end of input.", filename)
            return dispatcher.session

        session = self._load(path, parse)
        data = self._to_data(session)
        logger.info(
            f"PLY loaded ({data.cloud.row_count} rows, {data.cloud.width}x{data.cloud.height}, "
            f"{data.format}): {filename}"
        )
        return data

    def read_mesh(self, path: PathLike) -> PolygonMesh:
        """Read a file with a face element as a polygon mesh."""
        data = self.read(path)
        if "face" not in data.elements:
            logger.warning(f"'{path}' has no face element; the mesh has no polygons.")
        return PolygonMesh(cloud=data.cloud, polygons=data.polygons)

    # --- Internals ---

    @staticmethod
    def _check_body_size(scan: HeaderScan, body: bytes, filename: str) -> None:
        if scan.byte_order is None:
            return
        needed = minimum_body_size(scan)
        if needed > len(body):
            raise TruncatedBodyError(
                f"Binary body holds {len(body)} bytes but the declared elements need at least {needed}.",
                filename, scan.end_line,
            )

    @staticmethod
    def _read_camera(dispatcher: Dispatcher, events: Iterable[Event]) -> None:
        """Feed body events until the last camera row has been applied."""
        for event in events:
            dispatcher.feed(event)
            if (
                isinstance(event, RowEnd)
                and dispatcher.session.kinds.get(event.element) is ElementKind.CAMERA
                and dispatcher.state.phase is Phase.ELEMENT_COMPLETE
            ):
                return

    @staticmethod
    def _load(path: PathLike, parse):
        filename = str(path)
        try:
            with open(path, "rb") as stream:
                return parse(stream)
        except OSError as e:
            logger.error(f"Failed to open '{filename}': {e}")
            raise PlyIOError(f"Cannot read file: {e.strerror or e}", filename) from e
        except PlyError as e:
            logger.error(f"Failed to parse PLY: {e}")
            raise e.located(filename, None)

    @staticmethod
    def _to_data(session: ParseSession) -> PlyData:
        range_grid = session.list_for(ElementKind.RANGE_GRID, *INDEX_LIST_NAMES)
        faces = session.list_for(ElementKind.FACE, *INDEX_LIST_NAMES)
        return PlyData(
            cloud=session.cloud,
            pose=session.pose,
            format=session.format,
            version=PlyVersion.V1 if session.has_camera else PlyVersion.V0,
            range_grid=list(range_grid) if range_grid is not None else [],
            polygons=[[int(v) for v in values] for values in faces.to_lists()] if faces is not None else [],
            lists=session.lists,
            elements=dict(session.counts),
            comments=session.comments,
            obj_info=session.obj_info,
        )


def load_ply(path: PathLike) -> tuple[RowBuffer, Pose]:
    """Load point cloud data and sensor pose from a PLY file."""
    data = PlyReader().read(path)
    return data.cloud, data.pose


def load_ply_mesh(path: PathLike) -> PolygonMesh:
    """Load a polygon mesh from a PLY file."""
    return PlyReader().read_mesh(path)
