"""
Point-to-plane ICP registration between consecutive LiDAR frames.

Each iteration matches every moving point to its nearest fixed point,
rejects pairs that are too far apart or whose surface normals disagree,
and solves the linearised point-to-plane least squares problem for an
incremental rigid motion. Optional extrapolation (Besl & McKay) takes
larger steps while successive updates keep pointing the same way.
"""
import asyncio
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Union

import numpy as np
from pydantic import ValidationError

from lidar_map.core.config import ICPConfig
from lidar_map.core.errors import InvalidParameterError, RegistrationDivergedError
from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform
from .quality import QualityEvaluator
from .spatial_index import SpatialIndex, estimate_normals

logger = get_logger(__name__)

# A residual at or below this is treated as an exact fit
ABSOLUTE_RESIDUAL_TOLERANCE = 1e-9

# Normal equations with eigenvalue spread beyond this are rank deficient
MAX_CONDITION_NUMBER = 1e10

# Extrapolation: max angle between successive updates, and step cap
EXTRAPOLATION_MAX_ANGLE_DEG = 10.0
EXTRAPOLATION_MAX_STEP_FACTOR = 25.0

STATUS_CONVERGED = "converged"
STATUS_MAX_ITERATIONS = "max_iterations"
STATUS_INSUFFICIENT = "insufficient_correspondences"
STATUS_DEGENERATE = "degenerate"
STATUS_DIVERGED = "diverged"
STATUS_EMPTY = "empty_input"


@dataclass
class RegistrationResult:
    """Result of one ICP run"""
    transform: RigidTransform  # maps moving-frame coordinates into the fixed frame
    converged: bool
    iterations: int
    final_residual: float      # point-to-plane RMS over accepted correspondences
    fitness: float = 0.0       # accepted correspondences / moving points
    correspondences: int = 0
    status: str = STATUS_CONVERGED
    extrapolations: int = 0
    quality: str = "poor"  # "excellent", "good", "poor"
    acceptable: bool = False  # quality is "good" or better

    @property
    def transformation(self) -> np.ndarray:
        """4x4 transformation matrix"""
        return self.transform.matrix

    def ensure_converged(self) -> "RegistrationResult":
        """Return self, or raise RegistrationDivergedError carrying this result."""
        if not self.converged:
            raise RegistrationDivergedError(
                f"Registration did not converge ({self.status}) after {self.iterations} iterations, "
                f"residual={self.final_residual:.6f}, correspondences={self.correspondences}",
                result=self,
            )
        return self


def _point_to_plane_rms(p: np.ndarray, q: np.ndarray, normals: np.ndarray, T: np.ndarray) -> float:
    moved = p @ T[:3, :3].T + T[:3, 3]
    err = np.einsum("ij,ij->i", moved - q, normals)
    return float(np.sqrt(np.mean(err ** 2)))


def solve_point_to_plane(p: np.ndarray, q: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
    """
    Linearised point-to-plane step.

    Minimises sum(((I + [w]x) p + t - q) . n)^2 over x = (w, t).
    Returns the 6-vector x, or None when the system is rank deficient.
    """
    A = np.hstack([np.cross(p, normals), normals])
    b = np.einsum("ij,ij->i", q - p, normals)
    H = A.T @ A
    g = A.T @ b
    if not (np.all(np.isfinite(H)) and np.all(np.isfinite(g))):
        return None

    eig = np.linalg.eigvalsh(H)
    if eig[-1] <= 0 or eig[0] <= eig[-1] / MAX_CONDITION_NUMBER:
        return None
    try:
        x = np.linalg.solve(H, g)
    except np.linalg.LinAlgError:
        return None
    return x if np.all(np.isfinite(x)) else None


def extrapolate_params(params: Deque[np.ndarray], residuals: Deque[float]) -> Optional[np.ndarray]:
    """
    Besl & McKay accelerated update from the last three iterations.

    ``params`` holds the last three pose parameter vectors (oldest first)
    and ``residuals`` their errors. Returns the extrapolated parameter
    vector, or None when the updates do not point the same way or no
    positive step is predicted.
    """
    if len(params) < 3 or len(residuals) < 3:
        return None
    q0, q1, q2 = params[-3], params[-2], params[-1]
    d_prev = q1 - q0
    d_last = q2 - q1
    len_prev = float(np.linalg.norm(d_prev))
    len_last = float(np.linalg.norm(d_last))
    if len_prev < 1e-12 or len_last < 1e-12:
        return None

    cos_angle = float(d_prev @ d_last) / (len_prev * len_last)
    if cos_angle < math.cos(math.radians(EXTRAPOLATION_MAX_ANGLE_DEG)):
        return None

    # Arc length along the update path, current pose at 0
    v = np.array([-(len_last + len_prev), -len_last, 0.0])
    e = np.array([residuals[-3], residuals[-2], residuals[-1]], dtype=np.float64)
    v_max = EXTRAPOLATION_MAX_STEP_FACTOR * len_last

    steps = []
    slope, intercept = np.polyfit(v, e, 1)
    if slope < 0:
        steps.append(-intercept / slope)
    a, b, _ = np.polyfit(v, e, 2)
    if a > 0:
        steps.append(-b / (2.0 * a))

    steps = [s for s in steps if s > 0 and math.isfinite(s)]
    if not steps:
        return None
    step = min(min(steps), v_max)
    return q2 + step * (d_last / len_last)


class ICPEngine:
    """
    Point-to-plane ICP between a moving and a fixed point set.

    Args:
        config: ICPConfig, or a dict of ICPConfig fields, or None for defaults:
            - max_iterations: iteration budget (liveness bound)
            - tolerance: relative residual improvement that counts as converged
            - max_correspondence_distance: pairs farther apart are rejected (m)
            - max_normal_angle_deg: pairs whose normals disagree more are rejected (None disables)
            - normal_neighbors: neighbourhood size for normal estimation
            - min_correspondences / min_correspondence_fraction: minimum accepted pairs
            - extrapolate: enable accelerated updates
            - divergence_ratio: stop when the residual grows this far past the best
    """

    def __init__(self, config: Union[ICPConfig, Dict[str, Any], None] = None):
        if config is None:
            config = ICPConfig()
        elif isinstance(config, dict):
            try:
                config = ICPConfig.model_validate(config)
            except ValidationError as e:
                raise InvalidParameterError(f"Invalid ICP configuration: {e}") from e

        self.config = config
        self.max_iterations = config.max_iterations
        self.tolerance = config.tolerance
        self.max_correspondence_distance = config.max_correspondence_distance
        self.max_normal_angle_deg = config.max_normal_angle_deg
        self.normal_neighbors = config.normal_neighbors
        self.min_correspondences = config.min_correspondences
        self.min_correspondence_fraction = config.min_correspondence_fraction
        self.extrapolate = config.extrapolate
        self.divergence_ratio = config.divergence_ratio

        self.quality_evaluator = QualityEvaluator()

    async def register_async(
        self,
        moving: PointSet,
        fixed: PointSet,
        initial_transform: Union[RigidTransform, np.ndarray, None] = None,
    ) -> RegistrationResult:
        """Run ``register`` off the event loop thread."""
        return await asyncio.to_thread(self.register, moving, fixed, initial_transform)

    def register(
        self,
        moving: PointSet,
        fixed: PointSet,
        initial_transform: Union[RigidTransform, np.ndarray, None] = None,
    ) -> RegistrationResult:
        """
        Estimate the transform that maps ``moving`` onto ``fixed``.

        Args:
            moving: Point set to align (e.g. the current frame)
            fixed: Reference point set (e.g. the previous frame); its
                normals are used when present, estimated otherwise
            initial_transform: Starting guess, identity when None

        Returns:
            RegistrationResult. ``converged`` is True only when the
            residual stopped improving by more than ``tolerance``.
        """
        if initial_transform is None:
            init = RigidTransform.identity()
        elif isinstance(initial_transform, RigidTransform):
            init = initial_transform
        else:
            init = RigidTransform(initial_transform)
        if not init.is_finite():
            raise InvalidParameterError("Initial transform must be finite")
        init = init.orthonormalized()

        moving = moving.valid()
        fixed = fixed.valid()
        n_moving = len(moving)
        min_needed = max(
            self.min_correspondences,
            int(math.ceil(self.min_correspondence_fraction * n_moving)),
        )
        if n_moving < 3 or len(fixed) < 3:
            logger.warning(f"ICP skipped: moving={n_moving}, fixed={len(fixed)} points")
            return self._result(init, False, 0, math.inf, 0, n_moving, STATUS_EMPTY, 0)

        index = SpatialIndex(fixed)
        fixed_normals = fixed.normals
        if fixed_normals is None:
            fixed_normals = estimate_normals(fixed, k=self.normal_neighbors, index=index)
        normal_ok = np.all(np.isfinite(fixed_normals), axis=1)

        cos_max_angle = None
        moving_normals = None
        if self.max_normal_angle_deg is not None:
            cos_max_angle = math.cos(math.radians(self.max_normal_angle_deg))
            moving_normals = moving.normals
            if moving_normals is None:
                moving_normals = estimate_normals(moving, k=self.normal_neighbors)

        src = moving.points

        def match(T: np.ndarray):
            """Correspondences at pose T with outlier rejection: (p, q, normals)."""
            R, t = T[:3, :3], T[:3, 3]
            moved = src @ R.T + t
            idx, dist = index.nearest(moved)
            safe_idx = np.clip(idx, 0, None)
            accept = (idx >= 0) & (dist <= self.max_correspondence_distance) & normal_ok[safe_idx]
            if moving_normals is not None:
                rotated = moving_normals @ R.T
                cos_angle = np.abs(np.einsum("ij,ij->i", rotated, fixed_normals[safe_idx]))
                with np.errstate(invalid="ignore"):
                    accept &= cos_angle >= cos_max_angle
            matched = idx[accept]
            return moved[accept], fixed.points[matched], fixed_normals[matched]

        def matched_residual(T: np.ndarray) -> float:
            p, q, normals = match(T)
            if len(p) < min_needed:
                return math.inf
            return _point_to_plane_rms(p, q, normals, np.eye(4))

        T = init.matrix.copy()
        best_T, best_residual = T.copy(), math.inf
        prev_residual: Optional[float] = None
        residual = math.inf
        param_history: Deque[np.ndarray] = deque(maxlen=3)
        residual_history: Deque[float] = deque(maxlen=3)

        status = STATUS_MAX_ITERATIONS
        converged = False
        accepted_count = 0
        extrapolations = 0
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            p, q, normals = match(T)
            accepted_count = len(p)
            if accepted_count < min_needed:
                status = STATUS_INSUFFICIENT
                logger.debug(f"ICP iter {iterations}: {accepted_count} correspondences < {min_needed}")
                break

            x = solve_point_to_plane(p, q, normals)
            if x is None:
                status = STATUS_DEGENERATE
                logger.debug(f"ICP iter {iterations}: rank deficient point-to-plane system")
                break
            delta = RigidTransform.from_params(x).matrix
            T_new = delta @ T
            if not np.all(np.isfinite(T_new)):
                status = STATUS_DEGENERATE
                break
            residual = _point_to_plane_rms(p, q, normals, delta)

            if self.extrapolate:
                param_history.append(RigidTransform(T_new).to_params())
                residual_history.append(residual)
                candidate = extrapolate_params(param_history, residual_history)
                if candidate is not None:
                    T_cand = RigidTransform.from_params(candidate).matrix
                    if np.all(np.isfinite(T_cand)):
                        # Both poses are scored on their own correspondences
                        cand_residual = matched_residual(T_cand)
                        if cand_residual <= matched_residual(T_new):
                            T_new, residual = T_cand, cand_residual
                            extrapolations += 1
                            param_history.clear()
                            residual_history.clear()
                            param_history.append(candidate)
                            residual_history.append(residual)

            T = T_new
            logger.debug(
                f"ICP iter {iterations}: correspondences={accepted_count}, residual={residual:.6g}"
            )

            if residual < best_residual:
                best_T, best_residual = T.copy(), residual
            elif best_residual > ABSOLUTE_RESIDUAL_TOLERANCE and residual > self.divergence_ratio * best_residual:
                status = STATUS_DIVERGED
                break

            # A residual that went up counts as no improvement
            if residual <= ABSOLUTE_RESIDUAL_TOLERANCE or (
                prev_residual is not None
                and (prev_residual - residual) <= self.tolerance * prev_residual
            ):
                status = STATUS_CONVERGED
                converged = True
                break
            prev_residual = residual

        final_T, final_residual = best_T, best_residual

        result = self._result(
            RigidTransform(final_T).orthonormalized(),
            converged, iterations, final_residual, accepted_count, n_moving, status, extrapolations,
        )
        log = logger.debug if converged else logger.warning
        log(
            f"ICP {status} after {iterations} iterations: residual={final_residual:.6g}, "
            f"fitness={result.fitness:.3f}, extrapolations={extrapolations}"
        )
        return result

    def _result(
        self,
        transform: RigidTransform,
        converged: bool,
        iterations: int,
        residual: float,
        correspondences: int,
        n_moving: int,
        status: str,
        extrapolations: int,
    ) -> RegistrationResult:
        fitness = correspondences / n_moving if n_moving else 0.0
        quality = self.quality_evaluator.evaluate(fitness, residual).quality
        return RegistrationResult(
            transform=transform,
            converged=converged,
            iterations=iterations,
            final_residual=residual,
            fitness=fitness,
            correspondences=correspondences,
            status=status,
            extrapolations=extrapolations,
            quality=quality,
            acceptable=self.quality_evaluator.is_acceptable(fitness, residual),
        )
