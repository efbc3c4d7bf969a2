"""
Seams between the mapping core and the outside world: where frames come
from and where map snapshots go.
"""
import threading
from typing import Iterable, Iterator, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np

from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform

logger = get_logger(__name__)


@runtime_checkable
class FrameSource(Protocol):
    def next_frame(self) -> Optional[PointSet]:
        """Next frame, or None at the end of the sequence."""
        ...


@runtime_checkable
class MapViewer(Protocol):
    """
    Anything that can display the map. A viewer may expose a ``closed``
    attribute; once it is truthy the viewer is no longer fed.
    """

    def update(self, points: PointSet, pose: RigidTransform) -> None:
        ...


class IterableFrameSource:
    """Adapts any iterable of PointSets or (N, 3+) arrays to a FrameSource."""

    def __init__(self, frames: Iterable[Union[PointSet, np.ndarray]]):
        self._frames: Iterator = iter(frames)

    def next_frame(self) -> Optional[PointSet]:
        frame = next(self._frames, None)
        if frame is None or isinstance(frame, PointSet):
            return frame
        return PointSet.from_array(frame)


class ViewerBridge:
    """
    Feeds a MapViewer from a background thread.

    Only the latest snapshot is kept: publishing replaces any snapshot the
    viewer has not picked up yet, so ``publish`` never waits on the viewer.
    A viewer that raises or closes is detached and the mapping session
    carries on without it.
    """

    def __init__(self, viewer: MapViewer, name: str = "map-viewer"):
        self.viewer: Optional[MapViewer] = viewer
        self._pending: Optional[Tuple[PointSet, RigidTransform]] = None
        self._cond = threading.Condition()
        self._stopping = False
        self.delivered = 0
        self._thread = threading.Thread(target=self._worker, name=name, daemon=True)
        self._thread.start()

    @property
    def attached(self) -> bool:
        return self.viewer is not None

    def publish(self, points: PointSet, pose: RigidTransform) -> None:
        with self._cond:
            if self.viewer is None or self._stopping:
                return
            self._pending = (points, pose)
            self._cond.notify()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver the last pending snapshot, then stop the worker."""
        with self._cond:
            self._stopping = True
            self._cond.notify()
        self._thread.join(timeout)

    def _detach(self, reason: str) -> None:
        logger.warning(f"Detaching map viewer: {reason}")
        with self._cond:
            self.viewer = None
            self._pending = None

    def _worker(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._stopping:
                    self._cond.wait()
                snapshot, self._pending = self._pending, None
                viewer = self.viewer
            if snapshot is None or viewer is None:
                if self._stopping:
                    return
                continue

            if getattr(viewer, "closed", False):
                self._detach("viewer closed")
                continue
            try:
                viewer.update(*snapshot)
                self.delivered += 1
            except Exception as e:
                self._detach(f"update failed: {e}")
