import numpy as np
import pytest

from lidar_map.core.config import DownsampleConfig, MappingConfig
from lidar_map.core.errors import InvalidParameterError
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.pipeline import (
    OperationFactory,
    PointCloudPipeline,
    build_downsampler,
    build_preprocessing_pipeline,
)
from lidar_map.modules.pipeline.operations import Crop, Downsample, PlaneSegmentation, RandomDownsample


class TestOperationFactory:
    """Tests for OperationFactory"""

    def test_create_known_operation(self):
        op = OperationFactory.create("crop", {"min_bound": [0, 0, 0], "max_bound": [1, 1, 1]})
        assert isinstance(op, Crop)

    def test_unknown_operation(self):
        with pytest.raises(InvalidParameterError, match="Unknown operation"):
            OperationFactory.create("smooth", {})

    def test_bad_arguments(self):
        with pytest.raises(InvalidParameterError):
            OperationFactory.create("downsample", {"size": 0.1})


class TestBuilders:
    """Tests for the config driven pipeline builders"""

    def test_preprocessing_pipeline_from_defaults(self):
        pipeline = build_preprocessing_pipeline(MappingConfig())
        assert len(pipeline) == 2
        assert isinstance(pipeline.operations[0], Crop)
        assert isinstance(pipeline.operations[1], PlaneSegmentation)

    def test_preprocessing_pipeline_without_roi_or_ground(self):
        config = MappingConfig.model_validate({"roi": None, "ground": {"enabled": False}})
        assert len(build_preprocessing_pipeline(config)) == 0

    def test_downsampler_strategies(self):
        assert isinstance(build_downsampler(DownsampleConfig()), Downsample)
        op = build_downsampler(DownsampleConfig(strategy="random", keep_fraction=0.5, seed=3))
        assert isinstance(op, RandomDownsample)
        assert op.keep_fraction == 0.5


def test_pipeline_process_merges_metadata(noisy_ground):
    points = PointSet(np.vstack([noisy_ground.points, [[np.nan, 0, 0], [50, 50, 50]]]))
    pipeline = (
        PointCloudPipeline()
        .add_operation(Crop([-20, -20, -1], [20, 20, 10]))
        .add_operation(PlaneSegmentation(distance_threshold=0.1, seed=0))
    )
    result, meta = pipeline.process(points)

    assert meta["original_count"] == len(noisy_ground) + 2
    assert meta["finite_count"] == len(noisy_ground) + 1
    assert meta["cropped_count"] == len(noisy_ground)
    assert meta["plane_found"] is True
    assert meta["count"] == len(result)
