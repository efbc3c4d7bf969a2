"""
Core domain models and utilities for LiDAR point clouds.
"""

from .transformations import (
    RigidTransform,
    create_transformation_matrix,
    orthonormalize_rotation,
    pose_to_dict,
    rotmat_to_rotvec,
    rotvec_to_rotmat,
    transform_points,
)
from .point_set import PointSet

__all__ = [
    "PointSet",
    "RigidTransform",
    "create_transformation_matrix",
    "orthonormalize_rotation",
    "pose_to_dict",
    "rotmat_to_rotvec",
    "rotvec_to_rotmat",
    "transform_points",
]
