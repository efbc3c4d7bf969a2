"""
Running platform pose, composed from frame-to-frame registrations.

Convention: a relative transform T_rel maps points of the current frame
into the previous frame, and the accumulated pose P maps the current
frame into the map frame (the first frame). With column-vector matrices
the update is P <- P @ T_rel, i.e. accumulating T1..Tn yields
T1 @ T2 @ ... @ Tn. Written with MATLAB's row-vector matrices this is
the familiar ``accum = tform * accum`` where the newest transform comes
first.
"""
from typing import List, Union

import numpy as np

from lidar_map.core.errors import PoseCorruptionError
from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.transformations import RigidTransform

logger = get_logger(__name__)


class PoseAccumulator:
    def __init__(self):
        self._pose = RigidTransform.identity()
        self._history: List[RigidTransform] = []

    @property
    def pose(self) -> RigidTransform:
        return self._pose

    @property
    def history(self) -> List[RigidTransform]:
        """Relative transforms accepted so far, oldest first."""
        return list(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def propose(self, relative: Union[RigidTransform, np.ndarray]) -> RigidTransform:
        """Pose that ``update(relative)`` would produce, without committing it."""
        if not isinstance(relative, RigidTransform):
            relative = RigidTransform(relative)
        if not relative.is_finite():
            raise PoseCorruptionError(f"Rejected non-finite relative transform:\n{relative.matrix}")

        candidate = self._pose.compose(relative).orthonormalized(tolerance=0.0)
        if not candidate.is_finite():
            raise PoseCorruptionError("Pose update produced non-finite values")
        return candidate

    def update(self, relative: Union[RigidTransform, np.ndarray]) -> RigidTransform:
        """
        Compose the next relative transform into the running pose.

        The rotation is re-orthonormalized on every update. Non-finite
        input or output leaves the pose untouched and raises
        PoseCorruptionError.
        """
        if not isinstance(relative, RigidTransform):
            relative = RigidTransform(relative)
        candidate = self.propose(relative)

        self._pose = candidate
        self._history.append(relative)
        logger.debug(f"Pose after {len(self._history)} updates: {candidate}")
        return candidate

    def reset(self) -> None:
        self._pose = RigidTransform.identity()
        self._history.clear()
