"""
Nearest-neighbour search over a fixed point set.

Wraps Open3D's FLANN k-d tree. The tree is built once in the constructor
and queried many times, e.g. once per ICP iteration for every moving
point, and for the neighbourhoods used by normal estimation.
"""
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import open3d as o3d

from lidar_map.core.errors import InvalidParameterError
from lidar_map.modules.lidar.core.point_set import PointSet


class SpatialIndex:
    """
    k-d tree over (N, 3) points.

    Args:
        points: PointSet or (N, 3) array. Non-finite rows are not allowed;
            pass ``PointSet.valid()``.
    """

    def __init__(self, points: Union[PointSet, np.ndarray]):
        xyz = points.points if isinstance(points, PointSet) else np.asarray(points, dtype=np.float64)
        if xyz.ndim != 2 or xyz.shape[1] != 3:
            raise InvalidParameterError(f"SpatialIndex expects (N, 3) points, got {xyz.shape}")
        if not np.all(np.isfinite(xyz)):
            raise InvalidParameterError("SpatialIndex points must be finite")

        self.points = np.ascontiguousarray(xyz, dtype=np.float64)
        self._tree: Optional[o3d.geometry.KDTreeFlann] = None
        if len(self.points):
            pcd = o3d.geometry.PointCloud()
            pcd.points = o3d.utility.Vector3dVector(self.points)
            self._tree = o3d.geometry.KDTreeFlann(pcd)

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def nearest(self, queries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Closest indexed point for each query.

        Returns:
            (indices (M,), distances (M,)). With an empty index every index
            is -1 and every distance inf.
        """
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        m = len(queries)
        indices = np.full(m, -1, dtype=np.int64)
        distances = np.full(m, np.inf)
        if self._tree is None:
            return indices, distances

        tree = self._tree
        for i, q in enumerate(queries):
            k, idx, dist2 = tree.search_knn_vector_3d(q, 1)
            if k:
                indices[i] = idx[0]
                distances[i] = dist2[0]
        return indices, np.sqrt(distances)

    def knn(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        k nearest indexed points for each query (k is clipped to len(self)).

        Returns:
            (indices (M, k), distances (M, k)), closest first.
        """
        if k < 1:
            raise InvalidParameterError(f"k must be >= 1, got {k}")
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        k = min(k, len(self))
        indices = np.zeros((len(queries), k), dtype=np.int64)
        dist2 = np.zeros((len(queries), k))
        if self._tree is None or k == 0:
            return indices, dist2

        tree = self._tree
        for i, q in enumerate(queries):
            _, idx, d2 = tree.search_knn_vector_3d(q, k)
            indices[i] = np.asarray(idx)
            dist2[i] = np.asarray(d2)
        return indices, np.sqrt(dist2)

    def radius(self, query: Sequence[float], radius: float, max_nn: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Indexed points within ``radius`` of one query, closest first (at most ``max_nn``)."""
        if not radius > 0:
            raise InvalidParameterError(f"radius must be strictly positive, got {radius}")
        if self._tree is None:
            return np.zeros(0, dtype=np.int64), np.zeros(0)
        q = np.asarray(query, dtype=np.float64).reshape(3)
        if max_nn is None:
            _, idx, d2 = self._tree.search_radius_vector_3d(q, radius)
        else:
            _, idx, d2 = self._tree.search_hybrid_vector_3d(q, radius, max_nn)
        idx = np.asarray(idx, dtype=np.int64)
        d2 = np.asarray(d2)
        order = np.argsort(d2, kind="stable")
        return idx[order], np.sqrt(d2[order])


def estimate_normals(
    points: Union[PointSet, np.ndarray],
    k: int = 6,
    index: Optional[SpatialIndex] = None,
    viewpoint: Optional[Sequence[float]] = (0.0, 0.0, 0.0),
) -> np.ndarray:
    """
    Per-point surface normals from a local plane fit (PCA of the k nearest
    neighbours, the point itself included).

    Normals are unit length and, when ``viewpoint`` is set, oriented
    towards it. Rows are NaN where fewer than 3 points are available.
    """
    xyz = points.points if isinstance(points, PointSet) else np.asarray(points, dtype=np.float64)
    n = len(xyz)
    normals = np.full((n, 3), np.nan)
    if n < 3:
        return normals
    if k < 3:
        raise InvalidParameterError(f"Normal estimation needs k >= 3 neighbours, got {k}")

    index = index if index is not None else SpatialIndex(xyz)
    nbr_idx, _ = index.knn(xyz, k)
    neighbourhoods = index.points[nbr_idx]                      # (N, k, 3)
    centered = neighbourhoods - neighbourhoods.mean(axis=1, keepdims=True)
    cov = np.einsum("nki,nkj->nij", centered, centered) / nbr_idx.shape[1]
    _, eigvecs = np.linalg.eigh(cov)
    normals = eigvecs[:, :, 0]                                  # smallest eigenvalue

    if viewpoint is not None:
        to_view = np.asarray(viewpoint, dtype=np.float64) - xyz
        flip = np.einsum("ij,ij->i", normals, to_view) < 0
        normals[flip] *= -1.0
    return normals / np.linalg.norm(normals, axis=1, keepdims=True)
