"""
cloudply
========
Schema-driven reader and writer for PLY point clouds.

The field layout of a cloud is discovered from the file header at runtime
and the rows are decoded into one packed, host-endian byte buffer that can
be viewed as a numpy structured array.
"""
from cloudply.config import PACKAGE_VERSION as __version__
from cloudply.errors import (
    HeaderSyntaxError, PlyError, PlyIOError, SchemaError, TruncatedBodyError, ValueFormatError,
)
from cloudply.io.reader import PlyData, PlyHeader, PlyReader, PlyVersion, load_ply, load_ply_mesh
from cloudply.io.writer import PlyWriter, save_ply, save_ply_mesh
from cloudply.model.cloud import PolygonMesh, RowBuffer, expand_range_grid
from cloudply.model.fields import FieldDescriptor, FieldGroup
from cloudply.model.pose import Pose

__all__ = [
    "__version__",
    "FieldDescriptor",
    "FieldGroup",
    "HeaderSyntaxError",
    "PlyData",
    "PlyError",
    "PlyHeader",
    "PlyIOError",
    "PlyReader",
    "PlyVersion",
    "PlyWriter",
    "PolygonMesh",
    "Pose",
    "RowBuffer",
    "SchemaError",
    "TruncatedBodyError",
    "ValueFormatError",
    "expand_range_grid",
    "load_ply",
    "load_ply_mesh",
    "save_ply",
    "save_ply_mesh",
]
