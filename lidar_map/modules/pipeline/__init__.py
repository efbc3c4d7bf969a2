"""
Per-frame point cloud operations and the pipeline that chains them.
"""
from .base import PipelineOperation, PointCloudPipeline
from .factory import OperationFactory, build_downsampler, build_preprocessing_pipeline

__all__ = [
    "PipelineOperation",
    "PointCloudPipeline",
    "OperationFactory",
    "build_downsampler",
    "build_preprocessing_pipeline",
]
