import math
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from lidar_map.core.errors import InvalidParameterError
from lidar_map.modules.lidar.core.point_set import PointSet
from ..base import PipelineOperation

SeedLike = Union[None, int, np.random.Generator]


def _check_positive(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidParameterError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(value) or value <= 0:
        raise InvalidParameterError(f"{name} must be strictly positive, got {value}")
    return value


def voxel_keys(points: np.ndarray, voxel_size: float) -> np.ndarray:
    """
    Integer voxel coordinates floor(p / voxel_size) for (N, 3) points.

    Cells are half-open: [k * size, (k + 1) * size) on every axis.
    """
    voxel_size = _check_positive("voxel_size", voxel_size)
    return np.floor(np.asarray(points, dtype=np.float64) / voxel_size).astype(np.int64)


def grid_average(points: PointSet, voxel_size: float) -> PointSet:
    """
    Replace the points of every occupied voxel by their mean.

    Colors and intensity are averaged the same way; normals are dropped.
    Output is ordered by voxel key, so the result only depends on the
    input points and the voxel size.
    """
    voxel_size = _check_positive("voxel_size", voxel_size)
    points = points.valid()
    if points.is_empty:
        return PointSet.empty()

    keys = voxel_keys(points.points, voxel_size)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    n_voxels = len(counts)

    def _mean(values: np.ndarray) -> np.ndarray:
        if values.ndim == 1:
            return np.bincount(inverse, weights=values, minlength=n_voxels) / counts
        return np.stack(
            [np.bincount(inverse, weights=values[:, i], minlength=n_voxels) for i in range(values.shape[1])],
            axis=1,
        ) / counts[:, None]

    colors = _mean(points.colors) if points.colors is not None else None
    intensity = _mean(points.intensity) if points.intensity is not None else None
    return PointSet(_mean(points.points), colors=colors, intensity=intensity)


def random_decimate(points: PointSet, keep_fraction: float, rng: SeedLike = None) -> PointSet:
    """
    Keep exactly round(keep_fraction * N) points, drawn uniformly without
    replacement. Original point order is preserved.
    """
    keep_fraction = _check_positive("keep_fraction", keep_fraction)
    if keep_fraction > 1:
        raise InvalidParameterError(f"keep_fraction must be in (0, 1], got {keep_fraction}")
    points = points.valid()
    n = len(points)
    if n == 0:
        return PointSet.empty()

    target = min(n, int(round(keep_fraction * n)))
    if target == n:
        return points
    rng = np.random.default_rng(rng)
    keep = np.sort(rng.choice(n, size=target, replace=False))
    return points.select(keep)


class Downsample(PipelineOperation):
    """
    Downsamples the point cloud using a voxel grid filter (grid average).

    Args:
        voxel_size (float): Edge length of the voxel, strictly positive.
    """

    def __init__(self, voxel_size: float):
        self.voxel_size = _check_positive("voxel_size", voxel_size)

    def apply(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        down = grid_average(points, self.voxel_size)
        return down, {"downsampled_count": len(down)}


class RandomDownsample(PipelineOperation):
    """
    Downsamples the point cloud by exact-fraction random selection.

    The generator is created once from ``seed``, so a fresh operation
    with the same seed reproduces the same sequence of selections.

    Args:
        keep_fraction (float): Fraction of points to retain, in (0, 1].
        seed (int): Seed of the random generator.
    """

    def __init__(self, keep_fraction: float, seed: Optional[int] = None):
        self.keep_fraction = _check_positive("keep_fraction", keep_fraction)
        if self.keep_fraction > 1:
            raise InvalidParameterError(f"keep_fraction must be in (0, 1], got {keep_fraction}")
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def apply(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        down = random_decimate(points, self.keep_fraction, self._rng)
        return down, {"downsampled_count": len(down)}
