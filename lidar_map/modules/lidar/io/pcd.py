"""
Open3D adapters for reading frames from and writing maps to point cloud files.

File I/O stays at the edge of the system: the mapping core only sees
PointSet objects.
"""
import os
from typing import Iterator, List, Optional, Sequence

import numpy as np
import open3d as o3d

from lidar_map.core.logging_config import get_logger
from ..core.point_set import PointSet

logger = get_logger(__name__)

SUPPORTED_EXTENSIONS = (".pcd", ".ply", ".xyz", ".pts")


def to_legacy_pcd(point_set: PointSet) -> o3d.geometry.PointCloud:
    """Convert a PointSet to an Open3D legacy PointCloud (positions, colors, normals)."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(point_set.points.astype(np.float64))
    if point_set.colors is not None:
        pcd.colors = o3d.utility.Vector3dVector(np.clip(point_set.colors, 0.0, 1.0))
    if point_set.normals is not None:
        pcd.normals = o3d.utility.Vector3dVector(point_set.normals)
    return pcd


def from_legacy_pcd(pcd: o3d.geometry.PointCloud) -> PointSet:
    """Convert an Open3D legacy PointCloud to a PointSet."""
    points = np.asarray(pcd.points, dtype=np.float64)
    if len(points) == 0:
        return PointSet.empty()
    colors = np.asarray(pcd.colors, dtype=np.float64) if pcd.has_colors() else None
    normals = np.asarray(pcd.normals, dtype=np.float64) if pcd.has_normals() else None
    return PointSet(points.copy(), colors=colors, normals=normals)


def load_pcd(path: str) -> PointSet:
    """Read a point cloud file through Open3D."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Point cloud file not found: {path}")
    pcd = o3d.io.read_point_cloud(path)
    return from_legacy_pcd(pcd)


def save_to_pcd(point_set: PointSet, output_path: str, binary: bool = False) -> None:
    """Saves a PointSet (e.g. the global map) to a PCD/PLY file."""
    pcd = to_legacy_pcd(point_set)
    ok = o3d.io.write_point_cloud(output_path, pcd, write_ascii=not binary)
    if not ok:
        raise OSError(f"Open3D failed to write point cloud to {output_path}")


def list_frame_files(directory: str, extensions: Sequence[str] = SUPPORTED_EXTENSIONS) -> List[str]:
    """Point cloud files in a directory, sorted by name (frame order)."""
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"Frame directory does not exist: {directory}")
    names = sorted(
        name for name in os.listdir(directory)
        if os.path.splitext(name)[1].lower() in extensions
    )
    return [os.path.join(directory, name) for name in names]


class PcdDirectorySource:
    """
    Frame source over a directory of point cloud files, one file per frame.

    Files are read lazily in name order. ``next_frame`` returns None once
    the sequence is exhausted. Unreadable files are logged and skipped.
    """

    def __init__(self, directory: str, start: int = 0, stop: Optional[int] = None):
        self.directory = directory
        self.files = list_frame_files(directory)[start:stop]
        self._iter: Iterator[str] = iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def next_frame(self) -> Optional[PointSet]:
        for path in self._iter:
            try:
                frame = load_pcd(path)
            except (OSError, RuntimeError) as e:
                logger.error(f"Failed to read frame {path}: {e}")
                continue
            logger.debug(f"Loaded {len(frame)} points from {path}")
            return frame
        return None
