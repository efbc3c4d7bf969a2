import numpy as np
import pytest

from lidar_map.core.errors import InvalidParameterError
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform


class TestPointSetConstruction:
    """Tests for building PointSets"""

    def test_empty(self):
        ps = PointSet.empty()
        assert len(ps) == 0
        assert ps.is_empty
        assert ps.points.shape == (0, 3)

    def test_empty_array_is_reshaped(self):
        assert PointSet(np.array([])).points.shape == (0, 3)

    def test_rejects_bad_shapes(self):
        with pytest.raises(InvalidParameterError):
            PointSet(np.zeros((4, 2)))
        with pytest.raises(InvalidParameterError):
            PointSet(np.zeros((4, 3)), colors=np.zeros((3, 3)))

    def test_from_array_intensity(self):
        ps = PointSet.from_array(np.array([[1, 2, 3, 0.5], [4, 5, 6, 0.7]]))
        np.testing.assert_array_equal(ps.intensity, [0.5, 0.7])
        assert not ps.has_colors

    def test_from_array_colors_and_intensity(self):
        ps = PointSet.from_array(np.array([[1, 2, 3, 0.1, 0.2, 0.3, 9.0]]))
        np.testing.assert_array_equal(ps.colors, [[0.1, 0.2, 0.3]])
        np.testing.assert_array_equal(ps.intensity, [9.0])

    def test_to_array_round_trip(self):
        array = np.array([[1, 2, 3, 0.1, 0.2, 0.3, 9.0], [4, 5, 6, 0.4, 0.5, 0.6, 8.0]])
        np.testing.assert_array_equal(PointSet.from_array(array).to_array(), array)


class TestPointSetOperations:
    """Tests for the PointSet producing operations"""

    def test_valid_drops_non_finite(self):
        ps = PointSet(np.array([[0, 0, 0], [np.nan, 1, 1], [1, np.inf, 0], [2, 2, 2]]),
                      intensity=np.array([1, 2, 3, 4]))
        valid = ps.valid()
        assert len(valid) == 2
        np.testing.assert_array_equal(valid.intensity, [1, 4])

    def test_valid_returns_self_when_clean(self):
        ps = PointSet(np.zeros((3, 3)))
        assert ps.valid() is ps

    def test_select_keeps_order_and_attributes(self):
        ps = PointSet(np.arange(15, dtype=float).reshape(5, 3), colors=np.eye(5, 3))
        sub = ps.select([4, 0, 2])
        np.testing.assert_array_equal(sub.points[:, 0], [12, 0, 6])
        np.testing.assert_array_equal(sub.colors, np.eye(5, 3)[[4, 0, 2]])

    def test_concatenate_drops_partial_attributes(self):
        a = PointSet(np.zeros((2, 3)), colors=np.ones((2, 3)), intensity=np.ones(2))
        b = PointSet(np.ones((3, 3)), intensity=np.zeros(3))
        merged = PointSet.concatenate([a, PointSet.empty(), b])
        assert len(merged) == 5
        assert merged.colors is None
        np.testing.assert_array_equal(merged.intensity, [1, 1, 0, 0, 0])

    def test_concatenate_nothing(self):
        assert PointSet.concatenate([]).is_empty

    def test_transformed_rotates_normals(self):
        ps = PointSet(np.array([[1.0, 0.0, 0.0]]), normals=np.array([[1.0, 0.0, 0.0]]))
        out = ps.transformed(RigidTransform.from_pose(0, 0, 1, yaw=90))
        np.testing.assert_allclose(out.points, [[0, 1, 1]], atol=1e-12)
        np.testing.assert_allclose(out.normals, [[0, 1, 0]], atol=1e-12)
        # The source is untouched
        np.testing.assert_array_equal(ps.points, [[1.0, 0.0, 0.0]])

    def test_transformed_identity_is_a_copy(self):
        ps = PointSet(np.ones((2, 3)))
        out = ps.transformed(np.eye(4))
        assert out.points is not ps.points
        np.testing.assert_array_equal(out.points, ps.points)

    def test_bounds(self):
        ps = PointSet(np.array([[0, 5, -1], [2, -3, 4], [np.nan, 100, 100]]))
        lo, hi = ps.bounds()
        np.testing.assert_array_equal(lo, [0, -3, -1])
        np.testing.assert_array_equal(hi, [2, 5, 4])

    def test_bounds_of_empty_raises(self):
        with pytest.raises(InvalidParameterError):
            PointSet.empty().bounds()
