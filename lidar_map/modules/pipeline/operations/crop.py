from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from lidar_map.core.errors import InvalidBoundsError
from lidar_map.modules.lidar.core.point_set import PointSet
from ..base import PipelineOperation


class Crop(PipelineOperation):
    """
    Crops the point cloud using an axis-aligned bounding box.

    Both ends of every axis are inclusive, so a point lying exactly on
    a face of the box is kept.

    Args:
        min_bound (List[float]): Minimum coordinates [x, y, z].
        max_bound (List[float]): Maximum coordinates [x, y, z].
    """

    def __init__(self, min_bound: List[float], max_bound: List[float]):
        self.min_bound = np.array(min_bound, dtype=np.float64).reshape(-1)
        self.max_bound = np.array(max_bound, dtype=np.float64).reshape(-1)

        if self.min_bound.shape != (3,) or self.max_bound.shape != (3,):
            raise InvalidBoundsError("Crop bounds must be [x, y, z] triples")
        if not (np.all(np.isfinite(self.min_bound)) and np.all(np.isfinite(self.max_bound))):
            raise InvalidBoundsError(f"Crop bounds must be finite: {self.min_bound}, {self.max_bound}")
        bad = np.nonzero(self.min_bound > self.max_bound)[0]
        if len(bad):
            axes = ", ".join("xyz"[i] for i in bad)
            raise InvalidBoundsError(
                f"Crop min bound exceeds max bound on axis {axes}: {self.min_bound} > {self.max_bound}"
            )

    @classmethod
    def from_bounds(cls, bounds: Sequence[float]) -> "Crop":
        """Build from (x_min, x_max, y_min, y_max, z_min, z_max)."""
        if len(bounds) != 6:
            raise InvalidBoundsError(f"Expected 6 bounds, got {len(bounds)}")
        x_min, x_max, y_min, y_max, z_min, z_max = bounds
        return cls([x_min, y_min, z_min], [x_max, y_max, z_max])

    def mask(self, points: PointSet) -> np.ndarray:
        xyz = points.points
        return np.all((xyz >= self.min_bound) & (xyz <= self.max_bound), axis=1)

    def apply(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        cropped = points.select(self.mask(points))
        return cropped, {"cropped_count": len(cropped)}
