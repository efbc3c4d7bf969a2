import math
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Sequence, Tuple, Union

import numpy as np

from lidar_map.core.errors import InvalidParameterError, PlaneNotFoundError
from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet
from ..base import PipelineOperation

logger = get_logger(__name__)

# Cross product norm under which three samples count as collinear
_DEGENERATE_EPS = 1e-12

# Max number of refit / re-score passes after RANSAC
_REFINE_PASSES = 5


@dataclass
class PlaneFit:
    """Result of a plane fit: model [a, b, c, d] with unit normal, index arrays."""
    model: np.ndarray
    inliers: np.ndarray
    outliers: np.ndarray
    residual_sum: float
    iterations: int

    @property
    def normal(self) -> np.ndarray:
        return self.model[:3]

    @property
    def inlier_count(self) -> int:
        return int(len(self.inliers))


def fit_plane_svd(points: np.ndarray) -> np.ndarray:
    """
    Total least squares plane through (N, 3) points.

    Returns [a, b, c, d] with (a, b, c) unit length, normal = singular
    vector of the smallest singular value of the centered points.
    """
    centroid = points.mean(axis=0)
    _, _, vt = np.linalg.svd(points - centroid, full_matrices=False)
    normal = vt[-1]
    normal = normal / np.linalg.norm(normal)
    return np.append(normal, -normal @ centroid)


def _orient(model: np.ndarray, reference: Optional[np.ndarray]) -> np.ndarray:
    if reference is not None and model[:3] @ reference < 0:
        return -model
    return model


def segment_plane(
    points: PointSet,
    max_distance: float,
    reference_normal: Optional[Sequence[float]] = None,
    max_angular_distance: float = 5.0,
    num_iterations: int = 1000,
    early_exit_fraction: float = 1.0,
    min_points: int = 3,
    rng: Union[None, int, np.random.Generator] = None,
) -> PlaneFit:
    """
    Fit the dominant plane with RANSAC.

    Minimal samples are three distinct points. When ``reference_normal`` is
    given, candidates whose normal is more than ``max_angular_distance``
    degrees away from it (either orientation) are rejected. The winner has
    the most inliers, ties going to the smaller residual sum. The final
    plane is refit by SVD over its own inliers.

    Indices in the result refer to ``points.valid()``.

    Raises:
        PlaneNotFoundError: too few points, or no acceptable candidate.
        InvalidParameterError: malformed parameters.
    """
    if not max_distance > 0 or not math.isfinite(max_distance):
        raise InvalidParameterError(f"max_distance must be strictly positive, got {max_distance}")
    if num_iterations < 1:
        raise InvalidParameterError(f"num_iterations must be >= 1, got {num_iterations}")
    if not 0 < early_exit_fraction <= 1:
        raise InvalidParameterError(f"early_exit_fraction must be in (0, 1], got {early_exit_fraction}")

    ref = None
    cos_limit = -1.0
    if reference_normal is not None:
        ref = np.asarray(reference_normal, dtype=np.float64).reshape(-1)
        norm = np.linalg.norm(ref)
        if ref.shape != (3,) or not norm > 0:
            raise InvalidParameterError(f"reference_normal must be a non-zero 3-vector, got {reference_normal}")
        ref = ref / norm
        cos_limit = math.cos(math.radians(max_angular_distance))

    xyz = points.valid().points
    n = len(xyz)
    if n < max(3, min_points):
        raise PlaneNotFoundError(f"Need at least {max(3, min_points)} points to fit a plane, got {n}")

    rng = np.random.default_rng(rng)
    best_count = 0
    best_residual = math.inf
    best_model: Optional[np.ndarray] = None
    iterations = 0

    for iterations in range(1, num_iterations + 1):
        sample = xyz[rng.choice(n, size=3, replace=False)]
        normal = np.cross(sample[1] - sample[0], sample[2] - sample[0])
        length = np.linalg.norm(normal)
        if length < _DEGENERATE_EPS:
            continue
        normal /= length
        if ref is not None and abs(normal @ ref) < cos_limit:
            continue

        dist = np.abs(xyz @ normal - normal @ sample[0])
        inlier = dist <= max_distance
        count = int(inlier.sum())
        residual = float(dist[inlier].sum())
        if count > best_count or (count == best_count and residual < best_residual):
            best_count, best_residual = count, residual
            best_model = np.append(normal, -normal @ sample[0])
            if count >= early_exit_fraction * n:
                break

    if best_model is None or best_count < 3:
        raise PlaneNotFoundError(f"No plane candidate found in {iterations} iterations over {n} points")

    model = _orient(best_model, ref)
    inlier = np.abs(xyz @ model[:3] + model[3]) <= max_distance
    for _ in range(_REFINE_PASSES):
        refit = _orient(fit_plane_svd(xyz[inlier]), ref)
        refit_inlier = np.abs(xyz @ refit[:3] + refit[3]) <= max_distance
        if refit_inlier.sum() < 3:
            break
        model = refit
        if np.array_equal(refit_inlier, inlier):
            break
        inlier = refit_inlier

    dist = np.abs(xyz @ model[:3] + model[3])
    logger.debug(
        f"Plane fit: {int(inlier.sum())}/{n} inliers after {iterations} iterations, model={np.round(model, 4).tolist()}"
    )
    return PlaneFit(
        model=model,
        inliers=np.nonzero(inlier)[0],
        outliers=np.nonzero(~inlier)[0],
        residual_sum=float(dist[inlier].sum()),
        iterations=iterations,
    )


class PlaneSegmentation(PipelineOperation):
    """
    Segments a plane from the point cloud using RANSAC.

    With the default ``keep="outliers"`` this removes the plane, e.g. the
    ground. When no plane is found every point is kept as an outlier and
    the metadata reports ``plane_found=False``.

    Args:
        distance_threshold (float): Max distance a point can be from the plane to be considered an inlier.
        reference_normal (List[float]): Expected plane normal, or None for any orientation.
        max_angle_deg (float): Allowed deviation from the reference normal in degrees.
        num_iterations (int): Maximum number of iterations for RANSAC.
        early_exit_fraction (float): Stop as soon as this fraction of points are inliers.
        keep (str): "outliers" to drop the plane, "inliers" to keep only the plane.
        seed (int): Seed for the sampling generator.
    """

    def __init__(
        self,
        distance_threshold: float = 0.295,
        reference_normal: Optional[Sequence[float]] = (0.0, 0.0, 1.0),
        max_angle_deg: float = 5.0,
        num_iterations: int = 1000,
        early_exit_fraction: float = 1.0,
        min_points: int = 3,
        keep: Literal["outliers", "inliers"] = "outliers",
        seed: Optional[int] = None,
    ):
        if keep not in ("outliers", "inliers"):
            raise InvalidParameterError(f"keep must be 'outliers' or 'inliers', got {keep!r}")
        if not distance_threshold > 0:
            raise InvalidParameterError(f"distance_threshold must be strictly positive, got {distance_threshold}")
        self.distance_threshold = distance_threshold
        self.reference_normal = reference_normal
        self.max_angle_deg = max_angle_deg
        self.num_iterations = num_iterations
        self.early_exit_fraction = early_exit_fraction
        self.min_points = min_points
        self.keep = keep
        self._rng = np.random.default_rng(seed)

    def apply(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        points = points.valid()
        try:
            fit = segment_plane(
                points,
                max_distance=self.distance_threshold,
                reference_normal=self.reference_normal,
                max_angular_distance=self.max_angle_deg,
                num_iterations=self.num_iterations,
                early_exit_fraction=self.early_exit_fraction,
                min_points=self.min_points,
                rng=self._rng,
            )
        except PlaneNotFoundError as e:
            logger.warning(f"Plane segmentation skipped: {e}")
            kept = points if self.keep == "outliers" else PointSet.empty()
            return kept, {"plane_found": False, "plane_model": None, "inlier_count": 0}

        selected = fit.outliers if self.keep == "outliers" else fit.inliers
        return points.select(selected), {
            "plane_found": True,
            "plane_model": fit.model.tolist(),
            "inlier_count": fit.inlier_count,
        }
