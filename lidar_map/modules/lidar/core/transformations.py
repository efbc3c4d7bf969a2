"""
Transformation and mathematical utilities for lidar point cloud processing.

All transforms are homogeneous 4x4 matrices acting on column vectors:
p' = R @ p + t. Composition ``A.compose(B)`` is the matrix product
``A @ B`` and means "apply B first, then A".
"""
import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from lidar_map.core.errors import InvalidParameterError

# Rotation drift allowed before a rotation gets re-orthonormalized
ORTHONORMAL_TOLERANCE: float = 1e-6

# Below this angle rotation-vector maps switch to first order expansions
ROTATION_EPSILON: float = 1e-10


def create_transformation_matrix(
    x: float, y: float, z: float,
    roll: float = 0, pitch: float = 0, yaw: float = 0
) -> np.ndarray:
    """
    Creates a 4x4 transformation matrix from translation and rotation parameters.

    Args:
        x, y, z: Translation in meters
        roll, pitch, yaw: Rotation in degrees

    Returns:
        4x4 numpy array representing the transformation matrix
    """
    # Convert degrees to radians for internal math
    roll_rad = np.radians(roll)
    pitch_rad = np.radians(pitch)
    yaw_rad = np.radians(yaw)

    # Translation
    T = np.eye(4)
    T[:3, 3] = [x, y, z]

    # Rotation (Z-Y-X order)
    cr, sr = np.cos(roll_rad), np.sin(roll_rad)
    cp, sp = np.cos(pitch_rad), np.sin(pitch_rad)
    cy, sy = np.cos(yaw_rad), np.sin(yaw_rad)

    R = np.array([
        [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
        [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
        [-sp, cp * sr, cp * cr]
    ])

    T[:3, :3] = R
    return T


def matrix_to_euler(R: np.ndarray) -> Tuple[float, float, float]:
    """Inverse of the Z-Y-X convention above. Returns (roll, pitch, yaw) in degrees."""
    pitch = math.asin(float(np.clip(-R[2, 0], -1.0, 1.0)))
    roll = math.atan2(R[2, 1], R[2, 2])
    yaw = math.atan2(R[1, 0], R[0, 0])
    return math.degrees(roll), math.degrees(pitch), math.degrees(yaw)


def transform_points(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    """
    Applies a 4x4 transformation matrix T to (N, 3) or (N, M) points.
    Efficiently handles rotation and translation using numpy.

    Args:
        points: Numpy array of shape (N, 3) or (N, M) where M >= 3
        T: 4x4 transformation matrix

    Returns:
        Transformed points with the same shape as input
    """
    if points is None or len(points) == 0:
        return points

    # Skip if identity matrix
    if np.array_equal(T, np.eye(4)):
        return points

    # R is top-left 3x3, t is top-right 3x1
    R = T[:3, :3]
    t = T[:3, 3]

    # points_transformed = points * R^T + t
    transformed = points.copy()
    transformed[:, :3] = points[:, :3] @ R.T + t
    return transformed


def pose_to_dict(
    x: float, y: float, z: float,
    roll: float, pitch: float, yaw: float
) -> Dict[str, float]:
    """
    Converts pose parameters to a dictionary.

    Args:
        x, y, z: Translation in meters
        roll, pitch, yaw: Rotation in degrees

    Returns:
        Dictionary with keys: x, y, z, roll, pitch, yaw
    """
    result: Dict[str, float] = {
        "x": float(x),
        "y": float(y),
        "z": float(z),
        "roll": float(roll),
        "pitch": float(pitch),
        "yaw": float(yaw)
    }
    return result


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix from 3-vector (hat operator)."""
    v = np.asarray(v, dtype=float).reshape(-1)
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0]
    ], dtype=float)


def rotvec_to_rotmat(rotvec: np.ndarray) -> np.ndarray:
    """
    Rotation vector (axis * angle) to rotation matrix, Rodrigues' formula.

    The result is orthonormal up to rounding.
    """
    rotvec = np.asarray(rotvec, dtype=float).reshape(-1)
    theta = float(np.linalg.norm(rotvec))
    if theta < ROTATION_EPSILON:
        return np.eye(3) + skew(rotvec)

    K = skew(rotvec / theta)
    return np.eye(3) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def rotmat_to_rotvec(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to rotation vector (log map of SO(3))."""
    R = np.asarray(R, dtype=float)
    cos_theta = float(np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0))
    theta = math.acos(cos_theta)
    vee = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])

    if theta < 1e-8:
        return vee / 2.0

    if math.pi - theta < 1e-6:
        # Near pi the antisymmetric part vanishes; read the axis off R + I
        M = (R + np.eye(3)) / 2.0
        col = int(np.argmax(np.diag(M)))
        axis = M[:, col] / math.sqrt(max(M[col, col], 1e-300))
        axis /= np.linalg.norm(axis)
        return axis * theta

    return vee * (theta / (2.0 * math.sin(theta)))


def orthonormalize_rotation(R: np.ndarray) -> np.ndarray:
    """Closest proper rotation to R in the Frobenius sense (SVD projection)."""
    U, _, Vt = np.linalg.svd(R)
    D = np.eye(3)
    D[2, 2] = np.sign(np.linalg.det(U @ Vt)) or 1.0
    return U @ D @ Vt


@dataclass(frozen=True, eq=False)
class RigidTransform:
    """
    Element of SE(3) backed by a homogeneous 4x4 matrix.

    Instances are immutable; every operation returns a new transform.
    """
    matrix: np.ndarray

    def __post_init__(self):
        m = np.array(self.matrix, dtype=np.float64)
        if m.shape != (4, 4):
            raise InvalidParameterError(f"Expected a 4x4 matrix, got shape {m.shape}")
        m.setflags(write=False)
        object.__setattr__(self, "matrix", m)

    @classmethod
    def identity(cls) -> "RigidTransform":
        return cls(np.eye(4))

    @classmethod
    def from_rotation_translation(
        cls, rotation: np.ndarray, translation: Optional[np.ndarray] = None
    ) -> "RigidTransform":
        T = np.eye(4)
        T[:3, :3] = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
        if translation is not None:
            T[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
        return cls(T)

    @classmethod
    def from_params(cls, params: np.ndarray) -> "RigidTransform":
        """Build from a 6-vector (rx, ry, rz, tx, ty, tz), rotation as rotation vector."""
        params = np.asarray(params, dtype=np.float64).reshape(6)
        return cls.from_rotation_translation(rotvec_to_rotmat(params[:3]), params[3:])

    @classmethod
    def from_pose(
        cls, x: float, y: float, z: float,
        roll: float = 0, pitch: float = 0, yaw: float = 0
    ) -> "RigidTransform":
        """Translation in meters, roll/pitch/yaw in degrees (Z-Y-X)."""
        return cls(create_transformation_matrix(x, y, z, roll, pitch, yaw))

    @property
    def rotation(self) -> np.ndarray:
        return self.matrix[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:3, 3].copy()

    def to_params(self) -> np.ndarray:
        return np.concatenate([rotmat_to_rotvec(self.matrix[:3, :3]), self.matrix[:3, 3]])

    def compose(self, other: "RigidTransform") -> "RigidTransform":
        """``self @ other``: apply ``other`` first, then ``self``."""
        return RigidTransform(self.matrix @ other.matrix)

    def __matmul__(self, other: "RigidTransform") -> "RigidTransform":
        return self.compose(other)

    def inverse(self) -> "RigidTransform":
        R = self.matrix[:3, :3]
        t = self.matrix[:3, 3]
        return RigidTransform.from_rotation_translation(R.T, -R.T @ t)

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transform (N, 3+) points; extra columns are carried through."""
        return transform_points(np.asarray(points, dtype=np.float64), self.matrix)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.matrix)))

    def orthogonality_error(self) -> float:
        R = self.matrix[:3, :3]
        ortho = float(np.max(np.abs(R.T @ R - np.eye(3))))
        return max(ortho, abs(float(np.linalg.det(R)) - 1.0))

    def orthonormalized(self, tolerance: float = ORTHONORMAL_TOLERANCE) -> "RigidTransform":
        """Return self when the rotation is orthonormal within tolerance, else its projection."""
        if self.orthogonality_error() <= tolerance:
            return self
        return RigidTransform.from_rotation_translation(
            orthonormalize_rotation(self.matrix[:3, :3]), self.matrix[:3, 3]
        )

    def rotation_angle(self) -> float:
        """Rotation magnitude in radians."""
        trace = np.trace(self.matrix[:3, :3])
        return float(np.arccos(np.clip((trace - 1) / 2, -1, 1)))

    def translation_norm(self) -> float:
        return float(np.linalg.norm(self.matrix[:3, 3]))

    def to_pose_dict(self) -> Dict[str, float]:
        roll, pitch, yaw = matrix_to_euler(self.matrix[:3, :3])
        x, y, z = self.matrix[:3, 3]
        return pose_to_dict(x, y, z, roll, pitch, yaw)

    def __repr__(self) -> str:
        pose = self.to_pose_dict()
        return (
            "RigidTransform(xyz=({x:.4f}, {y:.4f}, {z:.4f}), "
            "rpy_deg=({roll:.3f}, {pitch:.3f}, {yaw:.3f}))".format(**pose)
        )
