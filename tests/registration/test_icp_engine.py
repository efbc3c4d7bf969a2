import math
from collections import deque

import numpy as np
import pytest

from lidar_map.core.config import ICPConfig
from lidar_map.core.errors import InvalidParameterError, RegistrationDivergedError
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform
from lidar_map.modules.pipeline.operations.downsample import grid_average
from lidar_map.modules.registration import icp_engine
from lidar_map.modules.registration.icp_engine import (
    STATUS_CONVERGED,
    STATUS_DEGENERATE,
    STATUS_EMPTY,
    STATUS_INSUFFICIENT,
    ICPEngine,
    extrapolate_params,
    solve_point_to_plane,
)


def _errors(estimate: RigidTransform, truth: RigidTransform):
    diff = estimate.inverse() @ truth
    return diff.translation_norm(), math.degrees(diff.rotation_angle())


@pytest.fixture
def true_transform():
    """5 degrees about Z plus 10 cm along X"""
    return RigidTransform.from_pose(0.1, 0.0, 0.0, yaw=5.0)


class TestICPEngine:
    """Tests for ICPEngine.register"""

    def test_identity_registration(self, corner_points):
        ps = PointSet(corner_points)
        result = ICPEngine().register(ps, ps)

        assert result.converged
        assert result.status == STATUS_CONVERGED
        assert result.iterations == 1
        assert result.final_residual == pytest.approx(0.0, abs=1e-9)
        np.testing.assert_allclose(result.transformation, np.eye(4), atol=1e-9)
        assert result.fitness == pytest.approx(1.0)
        assert result.quality == "excellent"
        assert result.acceptable

    def test_recovers_known_transform(self, corner_points, true_transform):
        moving = PointSet(corner_points)
        fixed = moving.transformed(true_transform)
        result = ICPEngine().register(moving, fixed)

        t_err, r_err = _errors(result.transform, true_transform)
        assert result.converged
        assert t_err < 0.01
        assert r_err < 0.1
        assert result.final_residual < 1e-3

    def test_recovers_known_transform_without_extrapolation(self, corner_points, true_transform):
        moving = PointSet(corner_points)
        fixed = moving.transformed(true_transform)
        result = ICPEngine({"extrapolate": False}).register(moving, fixed)

        t_err, r_err = _errors(result.transform, true_transform)
        assert result.extrapolations == 0
        assert t_err < 0.01
        assert r_err < 0.1

    def test_initial_guess_is_used(self, corner_points, true_transform):
        moving = PointSet(corner_points)
        fixed = moving.transformed(true_transform)
        result = ICPEngine().register(moving, fixed, initial_transform=true_transform.matrix)
        assert result.converged
        assert result.iterations <= 2

    def test_uses_supplied_fixed_normals(self, corner_points):
        ps = PointSet(corner_points)
        normals = np.zeros_like(corner_points)
        normals[:, 2] = 1.0
        # Every normal claims the floor orientation: walls give no constraint
        fixed = ps.with_normals(normals)
        result = ICPEngine({"max_normal_angle_deg": None}).register(ps, fixed)
        assert result.status == STATUS_DEGENERATE
        assert not result.converged

    def test_degenerate_single_plane(self):
        ticks = np.arange(30) * 0.1
        X, Y = np.meshgrid(ticks, ticks)
        plane = PointSet(np.column_stack([X.ravel(), Y.ravel(), np.zeros(X.size)]))
        result = ICPEngine().register(plane, plane.transformed(RigidTransform.from_pose(0, 0, 0.05)))

        assert result.status == STATUS_DEGENERATE
        assert not result.converged
        assert result.transform.is_finite()

    def test_insufficient_correspondences(self, corner_points):
        moving = PointSet(corner_points)
        fixed = moving.transformed(RigidTransform.from_pose(20.0, 0, 0))
        result = ICPEngine().register(moving, fixed)

        assert result.status == STATUS_INSUFFICIENT
        assert not result.converged
        assert not result.acceptable
        with pytest.raises(RegistrationDivergedError) as exc_info:
            result.ensure_converged()
        assert exc_info.value.result is result

    def test_too_few_points(self, corner_points):
        result = ICPEngine().register(PointSet(corner_points[:2]), PointSet(corner_points))
        assert result.status == STATUS_EMPTY
        assert not result.converged
        assert math.isinf(result.final_residual)

    def test_non_finite_points_are_ignored(self, corner_points):
        dirty = np.vstack([corner_points, [[np.nan, 0, 0], [np.inf, 1, 1]]])
        result = ICPEngine().register(PointSet(dirty), PointSet(corner_points))
        assert result.converged
        np.testing.assert_allclose(result.transformation, np.eye(4), atol=1e-9)

    def test_non_finite_initial_guess(self, corner_points):
        ps = PointSet(corner_points)
        bad = np.eye(4)
        bad[0, 3] = np.nan
        with pytest.raises(InvalidParameterError):
            ICPEngine().register(ps, ps, initial_transform=bad)

    def test_noisy_partial_overlap_converges(self, corridor_frames):
        # Noise makes the residual settle into a small oscillation between two correspondence sets
        rng = np.random.default_rng(1)
        fixed, moving = (
            grid_average(PointSet(f.points + rng.normal(0.0, 0.03, f.points.shape)), 0.25)
            for f in corridor_frames[:2]
        )
        result = ICPEngine().register(moving, fixed, initial_transform=RigidTransform.from_pose(0.9, 0, 0))

        assert result.converged
        assert result.iterations < ICPConfig().max_iterations
        np.testing.assert_allclose(result.transform.translation, [1.0, 0.0, 0.0], atol=0.1)
        assert np.degrees(result.transform.rotation_angle()) < 1.0

    def test_invalid_config(self):
        with pytest.raises(InvalidParameterError):
            ICPEngine({"max_iterations": 0})
        assert ICPEngine(ICPConfig(max_iterations=5)).max_iterations == 5

    @pytest.mark.asyncio
    async def test_register_async(self, corner_points, true_transform):
        moving = PointSet(corner_points)
        result = await ICPEngine().register_async(moving, moving.transformed(true_transform))
        t_err, _ = _errors(result.transform, true_transform)
        assert t_err < 0.01


class TestSolver:
    """Tests for the linearised point-to-plane step"""

    def test_small_translation_solved_exactly(self, corner_points):
        from lidar_map.modules.registration.spatial_index import estimate_normals

        normals = estimate_normals(corner_points, k=6)
        ok = np.all(np.isfinite(normals), axis=1)
        p = corner_points[ok]
        q = p + np.array([0.01, -0.02, 0.03])
        x = solve_point_to_plane(p, q, normals[ok])
        np.testing.assert_allclose(x[:3], 0, atol=1e-9)
        np.testing.assert_allclose(x[3:], [0.01, -0.02, 0.03], atol=1e-9)

    def test_rank_deficient(self):
        p = np.random.default_rng(0).uniform(-1, 1, (20, 3))
        normals = np.tile([0.0, 0.0, 1.0], (20, 1))
        # Normals all parallel: only 3 of 6 directions are observable
        assert solve_point_to_plane(p, p, normals) is None


class TestExtrapolation:
    """Tests for the accelerated update"""

    def test_straight_path_extends_to_linear_root(self):
        params = deque([np.zeros(6), np.array([1.0, 0, 0, 0, 0, 0]), np.array([2.0, 0, 0, 0, 0, 0])])
        residuals = deque([3.0, 2.0, 1.0])
        candidate = extrapolate_params(params, residuals)
        np.testing.assert_allclose(candidate, [3.0, 0, 0, 0, 0, 0], atol=1e-9)

    def test_turning_path_is_not_extrapolated(self):
        params = deque([np.zeros(6), np.array([1.0, 0, 0, 0, 0, 0]), np.array([1.0, 1.0, 0, 0, 0, 0])])
        assert extrapolate_params(params, deque([3.0, 2.0, 1.0])) is None

    def test_needs_three_iterations(self):
        assert extrapolate_params(deque([np.zeros(6)]), deque([1.0])) is None

    def test_step_is_capped(self):
        params = deque([np.zeros(6), np.array([0.001, 0, 0, 0, 0, 0]), np.array([0.002, 0, 0, 0, 0, 0])])
        # Residuals barely decrease: the linear root lies far ahead
        candidate = extrapolate_params(params, deque([1.0, 0.9999, 0.9998]))
        assert candidate[0] == pytest.approx(0.002 + 25 * 0.001)


class TestExtrapolationInRegistration:
    """Accelerated updates inside ICPEngine.register"""

    def test_better_candidate_is_taken(self, corner_points, true_transform, monkeypatch):
        history_sizes = []

        def propose_truth(params, residuals):
            history_sizes.append(len(params))
            return true_transform.to_params()

        monkeypatch.setattr(icp_engine, "extrapolate_params", propose_truth)
        moving = PointSet(corner_points)
        fixed = moving.transformed(true_transform)
        result = ICPEngine().register(moving, fixed)

        assert result.extrapolations == 1
        assert result.converged
        assert result.iterations == 1
        assert history_sizes == [1]
        t_err, r_err = _errors(result.transform, true_transform)
        assert t_err < 1e-6
        assert r_err < 1e-6

        plain = ICPEngine({"extrapolate": False}).register(moving, fixed)
        assert plain.iterations > result.iterations
        t_err, r_err = _errors(result.transform, plain.transform)
        assert t_err < 0.01
        assert r_err < 0.1

    def test_worse_candidate_is_rejected(self, corner_points, true_transform, monkeypatch):
        far_away = true_transform.to_params() + np.array([0.0, 0.0, 0.0, 20.0, 0.0, 0.0])
        monkeypatch.setattr(icp_engine, "extrapolate_params", lambda params, residuals: far_away)
        moving = PointSet(corner_points)
        fixed = moving.transformed(true_transform)

        result = ICPEngine().register(moving, fixed)
        plain = ICPEngine({"extrapolate": False}).register(moving, fixed)

        # Every candidate lost, so the run follows the plain steps exactly
        assert result.extrapolations == 0
        assert result.iterations == plain.iterations
        assert result.final_residual == plain.final_residual
        np.testing.assert_array_equal(result.transformation, plain.transformation)
