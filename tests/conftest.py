import numpy as np
import pytest

from cloudply.model.cloud import RowBuffer


@pytest.fixture
def make_ply(tmp_path):
    """Write a PLY file from header lines and a body, return its path."""
    def _make(header_lines, body=b"", name="cloud.ply"):
        header = "\n".join(["ply", *header_lines, "end_header"]) + "\n"
        if isinstance(body, str):
            body = body.encode("ascii")
        path = tmp_path / name
        path.write_bytes(header.encode("ascii") + body)
        return path
    return _make


@pytest.fixture
def xyz_cloud():
    points = np.array(
        [(0.0, 0.0, 0.0), (1.0, 1.0, 1.0), (-2.5, 3.25, 100.125)],
        dtype=[("x", "f4"), ("y", "f4"), ("z", "f4")],
    )
    return RowBuffer.from_array(points)


@pytest.fixture
def colored_cloud():
    dtype = np.dtype([
        ("x", "f4"), ("y", "f4"), ("z", "f4"),
        ("normal_x", "f4"), ("normal_y", "f4"), ("normal_z", "f4"),
        ("rgb", "u4"),
        ("intensity", "f4"),
    ])
    points = np.zeros(4, dtype=dtype)
    points["x"] = [0.5, 1.5, -3.0, 7.125]
    points["y"] = [0.1, 0.2, 0.3, 0.4]
    points["z"] = [10.0, 20.0, 30.0, 40.0]
    points["normal_z"] = 1.0
    points["rgb"] = [0x80102030, 0xFFFFFFFF, 0x00000000, 0xFF7F8081]
    points["intensity"] = [0.25, 0.5, 0.75, 1.0]
    return RowBuffer.from_array(points)
