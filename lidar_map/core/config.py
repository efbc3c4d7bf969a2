import json
import os
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidParameterError


class Settings:
    # Runtime settings
    PROJECT_NAME: str = "LiDAR Map Builder"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = os.getenv("LIDAR_MAP_LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LIDAR_MAP_LOG_FILE") or None

    # Path to a JSON file holding a MappingConfig (optional)
    CONFIG_PATH: Optional[str] = os.getenv("LIDAR_MAP_CONFIG") or None


settings = Settings()


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RoiConfig(_Section):
    """Axis-aligned region of interest, bounds inclusive (meters)."""
    x_min: float = -30.0
    x_max: float = 30.0
    y_min: float = -5.0
    y_max: float = 50.0
    z_min: float = -5.0
    z_max: float = 20.0

    def as_bounds(self) -> Tuple[float, float, float, float, float, float]:
        return (self.x_min, self.x_max, self.y_min, self.y_max, self.z_min, self.z_max)


class GroundConfig(_Section):
    enabled: bool = True
    max_distance: float = Field(0.295, gt=0)
    reference_normal: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    max_angle_deg: float = Field(5.0, gt=0, le=90)
    num_iterations: int = Field(1000, ge=1)
    early_exit_fraction: float = Field(0.9, gt=0, le=1)
    min_points: int = Field(3, ge=3)
    seed: Optional[int] = 0


class DownsampleConfig(_Section):
    strategy: Literal["grid_average", "random"] = "grid_average"
    voxel_size: float = Field(0.2, gt=0)
    keep_fraction: float = Field(0.2, gt=0, le=1)
    seed: Optional[int] = 0


class ICPConfig(_Section):
    max_iterations: int = Field(50, ge=1)
    tolerance: float = Field(1e-5, gt=0)
    max_correspondence_distance: float = Field(1.0, gt=0)
    max_normal_angle_deg: Optional[float] = Field(45.0, gt=0, le=90)
    normal_neighbors: int = Field(6, ge=3)
    min_correspondences: int = Field(3, ge=3)
    min_correspondence_fraction: float = Field(0.1, ge=0, le=1)
    extrapolate: bool = True
    divergence_ratio: float = Field(10.0, gt=1)


class FusionConfig(_Section):
    merge_voxel_size: float = Field(0.015, gt=0)
    map_voxel_size: Optional[float] = Field(None, gt=0)


class MappingConfig(_Section):
    """All parameters of a map building session."""
    roi: Optional[RoiConfig] = Field(default_factory=RoiConfig)
    ground: GroundConfig = Field(default_factory=GroundConfig)
    downsample: DownsampleConfig = Field(default_factory=DownsampleConfig)
    icp: ICPConfig = Field(default_factory=ICPConfig)
    fusion: FusionConfig = Field(default_factory=FusionConfig)

    # What to do with a frame whose registration did not converge:
    #   "skip"   - do not fuse it, keep the previous pose and reference frame
    #   "accept" - use the best-effort transform anyway
    failure_policy: Literal["skip", "accept"] = "skip"
    use_motion_prior: bool = True


def load_config(source: Union[None, str, Dict[str, Any], MappingConfig] = None) -> MappingConfig:
    """
    Build a MappingConfig from a dict, a JSON file path, or nothing.

    With no argument the LIDAR_MAP_CONFIG file is used when set, otherwise
    the defaults. Validation problems are raised as InvalidParameterError.
    """
    if isinstance(source, MappingConfig):
        return source
    if source is None:
        source = settings.CONFIG_PATH
        if source is None:
            return MappingConfig()

    try:
        if isinstance(source, str):
            try:
                with open(source, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise InvalidParameterError(f"Cannot read config file '{source}': {e}") from e
            return MappingConfig.model_validate(data)
        return MappingConfig.model_validate(source)
    except ValidationError as e:
        raise InvalidParameterError(f"Invalid mapping configuration: {e}") from e
