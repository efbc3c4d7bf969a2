"""
Quality labels for scan-to-scan registration results.
"""
from dataclasses import dataclass


@dataclass
class QualityMetrics:
    """Fitness / residual pair with its label"""
    fitness: float
    rmse: float
    quality: str  # "excellent", "good", "poor"


class QualityEvaluator:
    """
    Labels a registration from two numbers:
    - fitness: fraction of moving points with an accepted correspondence (0.0-1.0)
    - rmse: point-to-plane RMS error over those correspondences (meters)

    Consecutive LiDAR frames only partly overlap, so the fitness bar is
    lower than for calibrating two sensors against the same scene.
    """

    def __init__(self, min_fitness: float = 0.5, max_rmse: float = 0.1):
        self.min_fitness = min_fitness
        self.max_rmse = max_rmse

    def evaluate(self, fitness: float, rmse: float) -> QualityMetrics:
        return QualityMetrics(
            fitness=fitness,
            rmse=rmse,
            quality=self._classify_quality(fitness, rmse)
        )

    def _classify_quality(self, fitness: float, rmse: float) -> str:
        if fitness >= 0.8 and rmse <= self.max_rmse / 4:
            return "excellent"
        elif fitness >= self.min_fitness and rmse <= self.max_rmse:
            return "good"
        else:
            return "poor"

    def is_acceptable(self, fitness: float, rmse: float) -> bool:
        """True if the result is labelled good or excellent"""
        return self._classify_quality(fitness, rmse) in ["excellent", "good"]
