"""
PLY Writer
==========
Serializes a row buffer (and optionally its pose, range grid or polygons)
into ASCII or native-endian binary PLY.
"""
from __future__ import annotations

import logging
import os
from dataclasses import replace
from typing import Optional, Sequence, Union

import numpy as np

from cloudply.config import DEFAULT_ALPHA, DEFAULT_ASCII_PRECISION, GENERATOR_COMMENT, MESH_ASCII_PRECISION
from cloudply.errors import PlyError, PlyIOError, ValueFormatError
from cloudply.io.header import camera_required, emitted_fields, generate_header
from cloudply.model.cloud import PolygonMesh, RowBuffer
from cloudply.model.datatypes import NATIVE_BYTE_ORDER, PlyType, encode_scalar, format_value
from cloudply.model.fields import COLOR_CHANNEL_SHIFTS, COLOR_OUTPUT_CHANNELS, FieldDescriptor, FieldGroup
from cloudply.model.pose import CAMERA_PROPERTIES, Pose, camera_values

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def _color_channels(rows: np.ndarray, f: FieldDescriptor) -> dict[str, np.ndarray]:
    """Split a packed colour column into uint8 channel columns."""
    packed = rows[f.name].view(np.uint32)
    return {
        channel: ((packed >> COLOR_CHANNEL_SHIFTS[channel]) & 0xFF).astype(np.uint8)
        for channel in COLOR_OUTPUT_CHANNELS[f.name]
    }


def keep_alpha(cloud: RowBuffer, mask: Optional[FieldGroup] = None) -> tuple[RowBuffer, Optional[FieldGroup]]:
    """
    Expose a packed `rgb` field as `rgba` when any row is not fully opaque, so
    the alpha byte is written instead of being restored as the default on read.
    """
    f = cloud.field("rgb")
    if f is None or f.count != 1 or f.size != 4 or cloud.field("rgba") is not None or cloud.row_count == 0:
        return cloud, mask
    alpha = cloud.as_array()["rgb"].view(np.uint32) >> COLOR_CHANNEL_SHIFTS["alpha"]
    if np.all(alpha == DEFAULT_ALPHA):
        return cloud, mask

    fields = [replace(field, name="rgba") if field is f else field for field in cloud.fields]
    if mask is not None and mask & FieldGroup.RGB:
        mask |= FieldGroup.RGBA
    return replace(cloud, fields=fields), mask


def finite_rows(rows: np.ndarray, fields: Sequence[FieldDescriptor]) -> np.ndarray:
    """Boolean mask of rows whose floating fields are all finite."""
    valid = np.ones(len(rows), dtype=bool)
    for f in fields:
        if f.datatype.is_float:
            valid &= np.isfinite(rows[f.name])
    return valid


class PlyWriter:
    """
    Point Cloud Data (PLY) file format writer.

    Every call is independent; the writer holds no state between calls.
    """

    # ---- ENCODERS ----

    def encode_ascii(
        self,
        cloud: RowBuffer,
        pose: Optional[Pose] = None,
        precision: int = DEFAULT_ASCII_PRECISION,
        use_camera: bool = True,
        mask: Optional[FieldGroup] = None,
        comments: Sequence[str] = (GENERATOR_COMMENT,),
        obj_info: Sequence[str] = (),
    ) -> bytes:
        """
        Encode `cloud` as an ASCII PLY document.

        With `use_camera` the pose goes into a camera element and every row is
        written. Without it only rows whose floating fields are all finite are
        written, followed by a range_grid element mapping each input row to its
        written index (or to nothing).
        """
        cloud, mask = keep_alpha(cloud, mask)
        pose = pose or Pose()
        fields = emitted_fields(cloud.fields, mask)
        rows = cloud.as_array()
        lines = self._ascii_rows(rows, fields, precision)

        write_camera = use_camera and camera_required(pose, cloud.height)
        if use_camera:
            valid = np.ones(len(rows), dtype=bool)
        else:
            # First pass: the header must announce the number of rows kept
            valid = finite_rows(rows, fields)
        valid_count = int(valid.sum())

        header = generate_header(
            cloud.fields, pose, valid_count, binary=False, include_camera=use_camera,
            height=cloud.height, mask=mask, range_grid_count=None if use_camera else len(rows),
            comments=comments, obj_info=obj_info,
        )

        body = [line for line, keep in zip(lines, valid) if keep]
        if write_camera:
            values = camera_values(pose, cloud.width, cloud.height)
            body.append(" ".join(
                format_value(prop.datatype, value, precision) for prop, value in zip(CAMERA_PROPERTIES, values)
            ))
        elif not use_camera:
            written = 0
            for keep in valid:
                if keep:
                    body.append(f"1 {written}")
                    written += 1
                else:
                    body.append("0")

        if valid_count < len(rows):
            logger.debug(f"Skipped {len(rows) - valid_count} rows with non-finite values.")
        return (header + "".join(line + "\n" for line in body)).encode("ascii")

    def encode_binary(
        self,
        cloud: RowBuffer,
        pose: Optional[Pose] = None,
        use_camera: bool = True,
        mask: Optional[FieldGroup] = None,
        comments: Sequence[str] = (GENERATOR_COMMENT,),
        obj_info: Sequence[str] = (),
    ) -> bytes:
        """Encode `cloud` as native-endian binary PLY; rows are never filtered."""
        cloud, mask = keep_alpha(cloud, mask)
        pose = pose or Pose()
        fields = emitted_fields(cloud.fields, mask)
        rows = cloud.as_array()

        header = generate_header(
            cloud.fields, pose, len(rows), binary=True, include_camera=use_camera,
            height=cloud.height, mask=mask, comments=comments, obj_info=obj_info,
        )

        # Output columns are named positionally; declared names may repeat
        columns: list[np.ndarray] = []
        for f in fields:
            if f.name in COLOR_OUTPUT_CHANNELS:
                columns.extend(_color_channels(rows, f).values())
            else:
                columns.append(rows[f.name])
        out = np.empty(len(rows), dtype=[(f"f{i}", column.dtype) for i, column in enumerate(columns)])
        for i, column in enumerate(columns):
            out[f"f{i}"] = column

        payload = header.encode("ascii") + out.tobytes()
        if use_camera and camera_required(pose, cloud.height):
            values = camera_values(pose, cloud.width, cloud.height)
            payload += b"".join(
                encode_scalar(prop.datatype, NATIVE_BYTE_ORDER, value) for prop, value in zip(CAMERA_PROPERTIES, values)
            )
        return payload

    def encode_mesh(self, mesh: PolygonMesh, precision: int = MESH_ASCII_PRECISION) -> bytes:
        """Encode a polygon mesh as ASCII PLY with a face element."""
        cloud, _ = keep_alpha(mesh.cloud)
        fields = emitted_fields(cloud.fields)
        header = generate_header(
            cloud.fields, None, cloud.row_count, binary=False, include_camera=False,
            face_count=len(mesh.polygons),
        )
        lines = self._ascii_rows(cloud.as_array(), fields, precision)
        size_limit = PlyType.UINT8.limits[1]
        for i, polygon in enumerate(mesh.polygons):
            if len(polygon) > size_limit:
                raise ValueFormatError(f"Polygon {i} has {len(polygon)} vertices; at most {size_limit} fit the face list.")
            lines.append(" ".join([str(len(polygon)), *(str(int(index)) for index in polygon)]))
        return (header + "".join(line + "\n" for line in lines)).encode("ascii")

    @staticmethod
    def _ascii_rows(rows: np.ndarray, fields: Sequence[FieldDescriptor], precision: int) -> list[str]:
        columns: list[list[str]] = []
        for f in fields:
            if f.name in COLOR_OUTPUT_CHANNELS:
                for channel in _color_channels(rows, f).values():
                    columns.append([str(value) for value in channel.tolist()])
            else:
                columns.append([format_value(f.datatype, value, precision) for value in rows[f.name].tolist()])
        if not columns:
            return [""] * len(rows)
        return [" ".join(parts) for parts in zip(*columns)]

    # ---- FILE OUTPUT ----

    def write_ascii(
        self,
        path: PathLike,
        cloud: RowBuffer,
        pose: Optional[Pose] = None,
        precision: int = DEFAULT_ASCII_PRECISION,
        use_camera: bool = True,
        mask: Optional[FieldGroup] = None,
    ) -> None:
        logger.info(f"Saving ASCII PLY to: {path}")
        payload = self._encode(self.encode_ascii, path, cloud, pose, precision, use_camera, mask)
        self._write_file(path, payload)
        logger.info(f"ASCII PLY saved ({cloud.row_count} rows): {path}")

    def write_binary(
        self,
        path: PathLike,
        cloud: RowBuffer,
        pose: Optional[Pose] = None,
        use_camera: bool = True,
        mask: Optional[FieldGroup] = None,
    ) -> None:
        logger.info(f"Saving binary PLY to: {path}")
        payload = self._encode(self.encode_binary, path, cloud, pose, use_camera, mask)
        self._write_file(path, payload)
        logger.info(f"Binary PLY saved ({cloud.row_count} rows): {path}")

    def write(
        self,
        path: PathLike,
        cloud: RowBuffer,
        pose: Optional[Pose] = None,
        binary: bool = False,
        use_camera: bool = True,
        precision: int = DEFAULT_ASCII_PRECISION,
        indices: Optional[Sequence[int]] = None,
        mask: Optional[FieldGroup] = None,
    ) -> None:
        """
        Save a cloud in ASCII (default) or binary mode.

        Args:
            path: Output file name.
            cloud: Row buffer to save.
            pose: Sensor acquisition pose.
            binary: Binary mode instead of ASCII.
            use_camera: Use the camera element; False selects the range_grid
                        element and valid-points-only output in ASCII mode.
            precision: Significant digits of floating values in ASCII mode.
            indices: Save only these rows.
            mask: Field groups to emit.
        """
        if indices is not None:
            cloud = cloud.select(indices)
        if binary:
            self.write_binary(path, cloud, pose, use_camera=use_camera, mask=mask)
        else:
            self.write_ascii(path, cloud, pose, precision=precision, use_camera=use_camera, mask=mask)

    def write_mesh(self, path: PathLike, mesh: PolygonMesh, precision: int = MESH_ASCII_PRECISION) -> None:
        logger.info(f"Saving PLY mesh to: {path}")
        payload = self._encode(self.encode_mesh, path, mesh, precision)
        self._write_file(path, payload)
        logger.info(f"PLY mesh saved ({mesh.cloud.row_count} vertices, {len(mesh.polygons)} polygons): {path}")

    @staticmethod
    def _encode(encoder, path: PathLike, *args) -> bytes:
        try:
            return encoder(*args)
        except PlyError as e:
            logger.error(f"Failed to encode '{path}': {e}")
            raise e.located(str(path), None)

    @staticmethod
    def _write_file(path: PathLike, payload: bytes) -> None:
        try:
            with open(path, "wb") as f:
                f.write(payload)
        except OSError as e:
            logger.error(f"Failed to write '{path}': {e}")
            raise PlyIOError(f"Cannot write file: {e.strerror or e}", str(path)) from e


def save_ply(
    path: PathLike,
    cloud: RowBuffer,
    pose: Optional[Pose] = None,
    binary: bool = False,
    use_camera: bool = True,
) -> None:
    """Save point cloud data to a PLY file."""
    PlyWriter().write(path, cloud, pose, binary=binary, use_camera=use_camera)


def save_ply_mesh(path: PathLike, mesh: PolygonMesh, precision: int = MESH_ASCII_PRECISION) -> None:
    """Save a polygon mesh in ASCII PLY format."""
    PlyWriter().write_mesh(path, mesh, precision)
