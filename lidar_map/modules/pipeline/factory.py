from typing import Any, Callable, Dict

from lidar_map.core.config import DownsampleConfig, MappingConfig
from lidar_map.core.errors import InvalidParameterError
from .base import PipelineOperation, PointCloudPipeline
from .operations import Crop, Downsample, PlaneSegmentation, RandomDownsample

# Single source of truth: add a new operation here and the factory knows it
_OPERATION_MAP: Dict[str, Callable[..., PipelineOperation]] = {
    "crop": Crop,
    "downsample": Downsample,
    "random_downsample": RandomDownsample,
    "plane_segmentation": PlaneSegmentation,
}


class OperationFactory:
    @staticmethod
    def create(op_type: str, op_config: Dict[str, Any]) -> PipelineOperation:
        """Resolves an operation name and its keyword arguments to an operation object"""
        if op_type not in _OPERATION_MAP:
            raise InvalidParameterError(
                f"Unknown operation: '{op_type}'. Available: {list(_OPERATION_MAP.keys())}"
            )
        try:
            return _OPERATION_MAP[op_type](**op_config)
        except TypeError as e:
            raise InvalidParameterError(f"Bad arguments for operation '{op_type}': {e}") from e


def build_preprocessing_pipeline(config: MappingConfig) -> PointCloudPipeline:
    """ROI crop followed by ground removal, as configured."""
    pipeline = PointCloudPipeline()
    if config.roi is not None:
        pipeline.add_operation(Crop.from_bounds(config.roi.as_bounds()))
    ground = config.ground
    if ground.enabled:
        pipeline.add_operation(OperationFactory.create("plane_segmentation", {
            "distance_threshold": ground.max_distance,
            "reference_normal": ground.reference_normal,
            "max_angle_deg": ground.max_angle_deg,
            "num_iterations": ground.num_iterations,
            "early_exit_fraction": ground.early_exit_fraction,
            "min_points": ground.min_points,
            "keep": "outliers",
            "seed": ground.seed,
        }))
    return pipeline


def build_downsampler(config: DownsampleConfig) -> PipelineOperation:
    """Downsampling operation used to prepare frames for registration."""
    if config.strategy == "grid_average":
        return OperationFactory.create("downsample", {"voxel_size": config.voxel_size})
    if config.strategy == "random":
        return OperationFactory.create("random_downsample", {
            "keep_fraction": config.keep_fraction,
            "seed": config.seed,
        })
    raise InvalidParameterError(f"Unknown downsample strategy: '{config.strategy}'")
