"""
Scan-to-scan registration: nearest-neighbour index, normal estimation and
point-to-plane ICP.
"""
from .icp_engine import ICPEngine, RegistrationResult, solve_point_to_plane
from .quality import QualityEvaluator, QualityMetrics
from .spatial_index import SpatialIndex, estimate_normals

__all__ = [
    "ICPEngine",
    "RegistrationResult",
    "solve_point_to_plane",
    "QualityEvaluator",
    "QualityMetrics",
    "SpatialIndex",
    "estimate_normals",
]
