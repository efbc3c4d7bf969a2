from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet

logger = get_logger(__name__)


class PipelineOperation(ABC):
    """Base class for all atomic point cloud operations"""

    @abstractmethod
    def apply(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        """
        Processes the point set.
        Must return a new PointSet and a metadata dictionary:
        return points, {"some": "info"}
        """
        pass

    def __call__(self, points: PointSet) -> PointSet:
        return self.apply(points)[0]


class PointCloudPipeline:
    """Ordered chain of operations applied to one frame"""

    def __init__(self):
        self.operations: List[PipelineOperation] = []

    def add_operation(self, operation: PipelineOperation):
        self.operations.append(operation)
        return self

    def __len__(self) -> int:
        return len(self.operations)

    def process(self, points: PointSet) -> Tuple[PointSet, Dict[str, Any]]:
        """
        Run every operation in order on the finite points of ``points``.

        Returns the processed PointSet and the merged metadata of all
        operations, plus input and output counts.
        """
        original_count = len(points)
        points = points.valid()
        results: Dict[str, Any] = {"finite_count": len(points)}

        for op in self.operations:
            points, op_result = op.apply(points)
            if op_result:
                results.update(op_result)

        results["original_count"] = original_count
        results["count"] = len(points)
        logger.debug(f"Pipeline processed {original_count} -> {len(points)} points")
        return points, results
