"""
Sensor Pose
===========
Acquisition origin and orientation of a cloud, stored in the optional
one-row `camera` element of a PLY file.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import numpy as np

from cloudply.model.datatypes import PlyType
from cloudply.utils import quaternion_to_rotation_matrix, rotation_matrix_to_quaternion

if TYPE_CHECKING:
    import numpy.typing as npt


@dataclass
class Pose:
    origin: npt.NDArray[np.float64] = field(default_factory=lambda: np.zeros(3))
    orientation: npt.NDArray[np.float64] = field(default_factory=lambda: np.eye(3))

    def __post_init__(self) -> None:
        self.origin = np.array(self.origin, dtype=np.float64).reshape(3)
        self.orientation = np.array(self.orientation, dtype=np.float64).reshape(3, 3)

    @classmethod
    def from_quaternion(cls, origin: npt.ArrayLike, quaternion: npt.ArrayLike) -> Pose:
        """Build a pose from an origin and a (w, x, y, z) quaternion."""
        return cls(origin=origin, orientation=quaternion_to_rotation_matrix(quaternion))

    @property
    def quaternion(self) -> npt.NDArray[np.float64]:
        return rotation_matrix_to_quaternion(self.orientation)

    @property
    def is_identity(self) -> bool:
        """True for the default pose (zero origin, identity orientation)."""
        return bool(np.all(self.origin == 0.0) and np.allclose(self.orientation, np.eye(3)))


@dataclass(frozen=True)
class CameraProperty:
    """
    One scalar property of the camera element.

    `target` names what the value sets: ("origin", i), ("orientation", row, col),
    ("width",), ("height",), or None for intrinsics that are written as zero
    and ignored on read.
    """
    name: str
    datatype: PlyType
    target: Optional[tuple] = None


CAMERA_PROPERTIES: tuple[CameraProperty, ...] = (
    CameraProperty("view_px", PlyType.FLOAT32, ("origin", 0)),
    CameraProperty("view_py", PlyType.FLOAT32, ("origin", 1)),
    CameraProperty("view_pz", PlyType.FLOAT32, ("origin", 2)),
    CameraProperty("x_axisx", PlyType.FLOAT32, ("orientation", 0, 0)),
    CameraProperty("x_axisy", PlyType.FLOAT32, ("orientation", 0, 1)),
    CameraProperty("x_axisz", PlyType.FLOAT32, ("orientation", 0, 2)),
    CameraProperty("y_axisx", PlyType.FLOAT32, ("orientation", 1, 0)),
    CameraProperty("y_axisy", PlyType.FLOAT32, ("orientation", 1, 1)),
    CameraProperty("y_axisz", PlyType.FLOAT32, ("orientation", 1, 2)),
    CameraProperty("z_axisx", PlyType.FLOAT32, ("orientation", 2, 0)),
    CameraProperty("z_axisy", PlyType.FLOAT32, ("orientation", 2, 1)),
    CameraProperty("z_axisz", PlyType.FLOAT32, ("orientation", 2, 2)),
    CameraProperty("focal", PlyType.FLOAT32),
    CameraProperty("scalex", PlyType.FLOAT32),
    CameraProperty("scaley", PlyType.FLOAT32),
    CameraProperty("centerx", PlyType.FLOAT32),
    CameraProperty("centery", PlyType.FLOAT32),
    CameraProperty("viewportx", PlyType.INT32, ("width",)),
    CameraProperty("viewporty", PlyType.INT32, ("height",)),
    CameraProperty("k1", PlyType.FLOAT32),
    CameraProperty("k2", PlyType.FLOAT32),
)

CAMERA_PROPERTY_MAP: dict[str, CameraProperty] = {prop.name: prop for prop in CAMERA_PROPERTIES}


def camera_values(pose: Pose, width: int, height: int) -> list[float | int]:
    """Values of the camera row, in `CAMERA_PROPERTIES` order."""
    values: list[float | int] = []
    for prop in CAMERA_PROPERTIES:
        target = prop.target
        if target is None:
            values.append(0.0)
        elif target[0] == "origin":
            values.append(float(pose.origin[target[1]]))
        elif target[0] == "orientation":
            values.append(float(pose.orientation[target[1], target[2]]))
        elif target[0] == "width":
            values.append(int(width))
        else:
            values.append(int(height))
    return values
