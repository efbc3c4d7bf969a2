"""
Synthetic scenes shared by the test suite.
"""
import numpy as np
import pytest

from lidar_map.core.config import MappingConfig
from lidar_map.modules.lidar.core.point_set import PointSet


def corner_scene(size: float = 4.0, step: float = 0.1) -> np.ndarray:
    """Floor z=0 plus walls x=0 and y=0, sampled on a regular grid."""
    ticks = np.arange(int(round(size / step)) + 1) * step
    a, b = np.meshgrid(ticks, ticks, indexing="ij")
    a, b = a.ravel(), b.ravel()
    zeros = np.zeros_like(a)
    floor = np.column_stack([a, b, zeros])
    wall_x = np.column_stack([zeros, a, b + step])
    wall_y = np.column_stack([a + step, zeros, b + step])
    return np.vstack([floor, wall_x, wall_y])


def corridor_world() -> np.ndarray:
    """
    Flat ground between two wavy, leaning walls along the x axis.

    The walls change shape along x, so sliding along the corridor is
    observable by point-to-plane ICP.
    """
    xs = np.arange(-80, 141) * 0.1                     # -8 .. 14 m
    zs = np.arange(2, 31) * 0.1                        # 0.2 .. 3 m
    X, Z = np.meshgrid(xs, zs, indexing="ij")
    X, Z = X.ravel(), Z.ravel()
    left = np.column_stack([X, 4.0 + 0.6 * np.sin(0.5 * X) + 0.3 * Z, Z])
    right = np.column_stack([X, -(4.0 + 0.6 * np.cos(0.4 * X) + 0.3 * Z), Z])

    gx = np.arange(-40, 71) * 0.2                      # -8 .. 14 m
    gy = np.arange(-20, 21) * 0.2                      # -4 .. 4 m
    GX, GY = np.meshgrid(gx, gy, indexing="ij")
    ground = np.column_stack([GX.ravel(), GY.ravel(), np.zeros(GX.size)])
    return np.vstack([ground, left, right])


def corridor_frame(world: np.ndarray, offset: float) -> np.ndarray:
    """What a platform at x=offset sees: x in [offset-6, offset+8], in its own frame."""
    x = world[:, 0]
    visible = world[(x >= offset - 6 - 1e-9) & (x <= offset + 8 + 1e-9)]
    return visible - np.array([offset, 0.0, 0.0])


@pytest.fixture
def corner_points():
    return corner_scene()


@pytest.fixture
def corridor_frames():
    """Three frames, the platform moving +1 m along x between frames."""
    world = corridor_world()
    return [PointSet(corridor_frame(world, float(i))) for i in range(3)]


@pytest.fixture
def corridor_config():
    return MappingConfig.model_validate({
        "roi": {"x_min": -20, "x_max": 20, "y_min": -10, "y_max": 10, "z_min": -2, "z_max": 5},
        "ground": {"max_distance": 0.1, "num_iterations": 500, "seed": 1},
        "downsample": {"strategy": "grid_average", "voxel_size": 0.25},
        "icp": {"max_iterations": 100, "tolerance": 1e-4, "max_correspondence_distance": 0.5},
        "fusion": {"merge_voxel_size": 0.05},
    })


@pytest.fixture
def noisy_ground():
    """Noisy ground plane z~0 (1000 points) plus 200 scattered obstacle points above it."""
    rng = np.random.default_rng(7)
    ground = np.column_stack([
        rng.uniform(-10, 10, 1000),
        rng.uniform(-10, 10, 1000),
        rng.normal(0.0, 0.02, 1000),
    ])
    obstacles = np.column_stack([
        rng.uniform(-10, 10, 200),
        rng.uniform(-10, 10, 200),
        rng.uniform(0.5, 3.0, 200),
    ])
    return PointSet(np.vstack([ground, obstacles]))
