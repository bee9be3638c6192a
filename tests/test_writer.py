import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from cloudply.config import HOST_FORMAT
from cloudply.errors import PlyIOError, SchemaError, ValueFormatError
from cloudply.io.header import generate_header
from cloudply.io.reader import PlyReader, PlyVersion, load_ply_mesh
from cloudply.io.writer import PlyWriter, save_ply, save_ply_mesh
from cloudply.model.cloud import PolygonMesh, RowBuffer, expand_range_grid
from cloudply.model.datatypes import PlyType
from cloudply.model.fields import FieldDescriptor, FieldGroup
from cloudply.model.pose import Pose


def split(payload):
    header, body = payload.split(b"end_header\n", 1)
    return header.decode("ascii").splitlines(), body


def with_nan_row():
    points = np.array(
        [(0.0, 0.0, 0.0), (np.nan, 1.0, 1.0), (2.0, 2.0, 2.0)],
        dtype=[("x", "f4"), ("y", "f4"), ("z", "f4")],
    )
    return RowBuffer.from_array(points)


class TestHeader:
    def test_geometry_only_binary(self, xyz_cloud):
        header_lines, body = split(PlyWriter().encode_binary(xyz_cloud))

        assert header_lines[0] == "ply"
        assert header_lines[1] == f"format {HOST_FORMAT} 1.0"
        assert [line for line in header_lines if line.startswith("property")] == [
            "property float x", "property float y", "property float z",
        ]
        assert "element vertex 3" in header_lines
        assert not any(line.startswith("element camera") for line in header_lines)
        assert len(body) == xyz_cloud.row_count * 12

    def test_color_is_expanded(self, colored_cloud):
        text = generate_header(colored_cloud.fields, None, 4, binary=False, include_camera=True)
        assert "property uchar red\nproperty uchar green\nproperty uchar blue\nproperty float intensity\n" in text
        assert text.endswith("end_header\n")

    def test_camera_only_for_real_pose(self, xyz_cloud):
        identity = generate_header(xyz_cloud.fields, Pose(), 3, binary=False, include_camera=True)
        moved = generate_header(xyz_cloud.fields, Pose(origin=[0, 0, 1]), 3, binary=False, include_camera=True)
        organized = generate_header(xyz_cloud.fields, Pose(), 3, binary=False, include_camera=True, height=3)
        assert "element camera" not in identity
        assert "element camera 1" in moved
        assert "property int viewportx" in organized

    def test_range_grid_element(self, xyz_cloud):
        text = generate_header(xyz_cloud.fields, None, 2, binary=False, include_camera=False, range_grid_count=3)
        assert "element range_grid 3\nproperty list uchar int vertex_indices\n" in text

    def test_mask_restricts_groups(self, colored_cloud):
        payload = PlyWriter().encode_ascii(colored_cloud, mask=FieldGroup.XYZ | FieldGroup.INTENSITY)
        header_lines, body = split(payload)
        properties = [line.split()[-1] for line in header_lines if line.startswith("property")]
        assert properties == ["x", "y", "z", "intensity"]
        assert len(body.decode("ascii").splitlines()[0].split()) == 4

    def test_short_color_field_is_rejected(self):
        fields = [FieldDescriptor("rgb", PlyType.UINT16, 0)]
        with pytest.raises(SchemaError):
            generate_header(fields, None, 1, binary=False, include_camera=False)


class TestAscii:
    def test_rows_and_precision(self, xyz_cloud):
        _, body = split(PlyWriter().encode_ascii(xyz_cloud, precision=4))
        assert body.decode("ascii").splitlines() == ["0 0 0", "1 1 1", "-2.5 3.25 100.1"]

    def test_camera_mode_writes_every_row(self):
        _, body = split(PlyWriter().encode_ascii(with_nan_row()))
        assert len(body.decode("ascii").splitlines()) == 3

    def test_valid_points_only(self):
        header_lines, body = split(PlyWriter().encode_ascii(with_nan_row(), use_camera=False))
        lines = body.decode("ascii").splitlines()

        assert "element vertex 2" in header_lines
        assert "element range_grid 3" in header_lines
        assert lines[:2] == ["0 0 0", "2 2 2"]
        assert lines[2:] == ["1 0", "0", "1 1"]

    def test_valid_count_matches_rows_written(self, tmp_path):
        points = np.zeros(50, dtype=[("x", "f8"), ("y", "f8"), ("z", "f8"), ("label", "i4")])
        points["x"] = np.arange(50)
        points["y"][::7] = np.inf
        points["z"][3] = np.nan
        cloud = RowBuffer.from_array(points)
        path = tmp_path / "valid.ply"
        PlyWriter().write(path, cloud, use_camera=False)

        data = PlyReader().read(path)
        expected = int(np.isfinite(points["y"] + points["z"]).sum())
        assert data.cloud.row_count == expected
        assert len(data.range_grid) == 50
        assert sum(entry.declared_size for entry in data.range_grid) == expected

    def test_binary_never_filters(self):
        header_lines, body = split(PlyWriter().encode_binary(with_nan_row(), use_camera=False))
        assert "element vertex 3" in header_lines
        assert not any("range_grid" in line for line in header_lines)
        assert len(body) == 36


class TestRoundTrip:
    def test_ascii(self, tmp_path, colored_cloud):
        pose = Pose.from_quaternion([1.0, -2.0, 0.5], [0.9238795, 0.0, 0.3826834, 0.0])
        path = tmp_path / "ascii.ply"
        PlyWriter().write(path, colored_cloud, pose)

        data = PlyReader().read(path)
        assert data.version is PlyVersion.V1
        assert [f.name for f in data.cloud.fields] == [
            "rgba" if f.name == "rgb" else f.name for f in colored_cloud.fields
        ]
        original, read = colored_cloud.as_array(), data.cloud.as_array()
        for name in ("x", "y", "z", "normal_z", "intensity"):
            assert_allclose(read[name], original[name], rtol=1e-6)
        assert_array_equal(read["rgba"], original["rgb"])
        assert_allclose(data.pose.origin, pose.origin, rtol=1e-6)
        assert_allclose(data.pose.orientation, pose.orientation, atol=1e-6)

    def test_binary_is_bit_identical(self, tmp_path):
        dtype = np.dtype([
            ("x", "f4"), ("y", "f4"), ("z", "f4"),
            ("a", "i1"), ("flags", "u1"), ("b", "i2"), ("ring", "u2"),
            ("label", "i4"), ("id", "u4"), ("time", "f8"),
        ])
        rng = np.random.default_rng(7)
        points = np.zeros(16, dtype=dtype)
        for name in dtype.names:
            if dtype[name].kind == "f":
                points[name] = rng.standard_normal(16) * 1e3
            else:
                info = np.iinfo(dtype[name])
                points[name] = rng.integers(info.min, info.max, 16, endpoint=True)
        points["x"][0] = np.nan
        cloud = RowBuffer.from_array(points)
        path = tmp_path / "binary.ply"
        PlyWriter().write(path, cloud, binary=True)

        data = PlyReader().read(path)
        assert data.cloud.point_step == cloud.point_step
        assert bytes(data.cloud.data) == bytes(cloud.data)
        assert [(f.name, f.datatype) for f in data.cloud.fields] == [(f.name, f.datatype) for f in cloud.fields]

    def test_binary_transparent_colour_is_bit_identical(self, tmp_path):
        points = np.zeros(3, dtype=[("x", "f4"), ("y", "f4"), ("z", "f4"), ("rgb", "u4")])
        points["x"] = [1.0, 2.0, 3.0]
        points["rgb"] = [0x00102030, 0x7F405060, 0xFFFFFFFF]
        cloud = RowBuffer.from_array(points)
        path = tmp_path / "transparent.ply"
        PlyWriter().write(path, cloud, binary=True)

        assert b"property uchar alpha" in path.read_bytes()
        data = PlyReader().read(path)
        assert bytes(data.cloud.data) == bytes(cloud.data)
        assert [f.name for f in data.cloud.fields] == ["x", "y", "z", "rgba"]

    def test_opaque_colour_writes_three_channels(self):
        points = np.zeros(2, dtype=[("x", "f4"), ("y", "f4"), ("z", "f4"), ("rgb", "u4")])
        points["rgb"] = [0xFF102030, 0xFFFFFFFF]
        header_lines, _ = split(PlyWriter().encode_binary(RowBuffer.from_array(points)))
        assert "property uchar blue" in header_lines
        assert "property uchar alpha" not in header_lines

    def test_ascii_float_limits(self, tmp_path):
        limit = np.finfo(np.float32).max
        points = np.array([(limit, -limit, 0.0)], dtype=[("x", "f4"), ("y", "f4"), ("z", "f4")])
        path = tmp_path / "limits.ply"
        save_ply(path, RowBuffer.from_array(points))

        rows = PlyReader().read(path).cloud.as_array()
        assert rows["x"][0] == limit
        assert rows["y"][0] == -limit

    def test_binary_colour(self, tmp_path, colored_cloud):
        path = tmp_path / "colour.ply"
        save_ply(path, colored_cloud, binary=True)
        read = PlyReader().read(path).cloud.as_array()
        assert_array_equal(read["rgba"], colored_cloud.as_array()["rgb"])

    def test_mask_keeps_alpha(self, colored_cloud):
        header_lines, _ = split(PlyWriter().encode_ascii(colored_cloud, mask=FieldGroup.XYZ | FieldGroup.RGB))
        properties = [line.split()[-1] for line in header_lines if line.startswith("property")]
        assert properties == ["x", "y", "z", "red", "green", "blue", "alpha"]

    def test_organized_cloud(self, tmp_path):
        grid = np.zeros((2, 3), dtype=[("x", "f4"), ("y", "f4"), ("z", "f4")])
        grid["z"] = np.arange(6).reshape(2, 3)
        path = tmp_path / "organized.ply"
        save_ply(path, RowBuffer.from_array(grid), binary=True)

        data = PlyReader().read(path)
        assert (data.cloud.width, data.cloud.height) == (3, 2)
        assert data.pose.is_identity
        assert_array_equal(data.cloud.as_array()["z"], np.arange(6))

    def test_range_grid_expansion(self, tmp_path):
        path = tmp_path / "grid.ply"
        save_ply(path, with_nan_row(), use_camera=False)
        data = PlyReader().read(path)

        expanded = expand_range_grid(data.cloud, data.range_grid).as_array()
        assert np.isnan(expanded["x"][1])
        assert_array_equal(expanded["x"][[0, 2]], [0.0, 2.0])

    def test_index_subset(self, tmp_path, xyz_cloud):
        path = tmp_path / "subset.ply"
        PlyWriter().write(path, xyz_cloud, indices=[2])
        rows = PlyReader().read(path).cloud.as_array()
        assert rows["z"].tolist() == [100.125]

    def test_comments_and_obj_info(self, tmp_path, xyz_cloud):
        payload = PlyWriter().encode_ascii(xyz_cloud, comments=["one", "two"], obj_info=["scanner x"])
        path = tmp_path / "meta.ply"
        path.write_bytes(payload)
        data = PlyReader().read(path)
        assert data.comments == ["one", "two"]
        assert data.obj_info == ["scanner x"]


class TestMesh:
    def test_round_trip(self, tmp_path, xyz_cloud):
        mesh = PolygonMesh(xyz_cloud, [[0, 1, 2], [2, 1, 0]])
        path = tmp_path / "mesh.ply"
        save_ply_mesh(path, mesh)

        text = path.read_text()
        assert "element face 2\nproperty list uchar int vertex_indices\n" in text
        assert "3 0 1 2\n" in text
        read = load_ply_mesh(path)
        assert read.polygons == [[0, 1, 2], [2, 1, 0]]
        assert_allclose(read.cloud.as_array()["z"], xyz_cloud.as_array()["z"], rtol=1e-4)

    def test_mesh_precision(self, xyz_cloud):
        _, body = split(PlyWriter().encode_mesh(PolygonMesh(xyz_cloud, [])))
        assert body.decode("ascii").splitlines()[2] == "-2.5 3.25 100.12"

    def test_too_many_polygon_vertices(self, xyz_cloud):
        with pytest.raises(ValueFormatError):
            PlyWriter().encode_mesh(PolygonMesh(xyz_cloud, [list(range(256))]))


def test_unwritable_path(tmp_path, xyz_cloud):
    with pytest.raises(PlyIOError) as excinfo:
        save_ply(tmp_path / "missing" / "cloud.ply", xyz_cloud)
    assert isinstance(excinfo.value.__cause__, OSError)
