"""
Persistent global map and the voxel merge that grows it.
"""
from dataclasses import dataclass, field
from typing import Optional

from lidar_map.core.errors import InvalidParameterError
from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform
from lidar_map.modules.pipeline.operations.downsample import grid_average

logger = get_logger(__name__)


@dataclass(frozen=True)
class GlobalMap:
    """
    Snapshot of the map: points in the first frame's coordinates, the
    platform pose in that frame, and how many frames went into it.

    Snapshots are never modified; fusing produces the next one.
    """
    point_set: PointSet = field(default_factory=PointSet.empty)
    pose: RigidTransform = field(default_factory=RigidTransform.identity)
    frame_count: int = 0

    def __len__(self) -> int:
        return len(self.point_set)

    @property
    def is_empty(self) -> bool:
        return self.frame_count == 0


class MapFuser:
    """
    Merges globally posed frames into the map with voxel deduplication.

    Args:
        merge_voxel_size: Grid used to merge the union of map and frame.
        map_voxel_size: Optional coarser grid applied to the merged map,
            bounding its density further.
    """

    def __init__(self, merge_voxel_size: float, map_voxel_size: Optional[float] = None):
        if not merge_voxel_size > 0:
            raise InvalidParameterError(f"merge_voxel_size must be strictly positive, got {merge_voxel_size}")
        if map_voxel_size is not None and not map_voxel_size > 0:
            raise InvalidParameterError(f"map_voxel_size must be strictly positive, got {map_voxel_size}")
        self.merge_voxel_size = merge_voxel_size
        self.map_voxel_size = map_voxel_size

    def merge(self, map_points: PointSet, frame_points: PointSet) -> PointSet:
        """Grid-average the union of two point sets at the merge voxel size."""
        merged = grid_average(PointSet.concatenate([map_points, frame_points]), self.merge_voxel_size)
        if self.map_voxel_size is not None:
            merged = grid_average(merged, self.map_voxel_size)
        return merged

    def fuse(self, global_map: GlobalMap, aligned: PointSet, pose: Optional[RigidTransform] = None) -> GlobalMap:
        """
        Return the map with ``aligned`` (already in map coordinates) merged in.

        ``pose`` becomes the pose of the new snapshot; the old pose is kept
        when it is None.
        """
        merged = self.merge(global_map.point_set, aligned.without_normals())
        logger.debug(
            f"Fused {len(aligned)} points into map of {len(global_map)} -> {len(merged)} points"
        )
        return GlobalMap(
            point_set=merged,
            pose=pose if pose is not None else global_map.pose,
            frame_count=global_map.frame_count + 1,
        )
