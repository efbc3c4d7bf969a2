"""
Mapping session: turns a stream of LiDAR frames into a global map.

Per frame: ROI crop -> ground removal -> downsample -> ICP against the
previous reference frame -> pose update -> fuse the ground-removed frame
(full resolution, posed into map coordinates) -> publish to the viewer.
"""
import asyncio
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from lidar_map.core.config import MappingConfig, load_config
from lidar_map.core.errors import LidarMapError, PoseCorruptionError, RegistrationDivergedError
from lidar_map.core.logging_config import get_logger
from lidar_map.modules.lidar.core.point_set import PointSet
from lidar_map.modules.lidar.core.transformations import RigidTransform
from lidar_map.modules.pipeline.factory import build_downsampler, build_preprocessing_pipeline
from lidar_map.modules.registration.icp_engine import STATUS_EMPTY, ICPEngine, RegistrationResult

from .fuser import GlobalMap, MapFuser
from .interfaces import FrameSource, MapViewer, ViewerBridge
from .pose import PoseAccumulator

logger = get_logger(__name__)

FRAME_ANCHORED = "anchored"
FRAME_FUSED = "fused"
FRAME_SKIPPED = "skipped"
FRAME_FAILED = "failed"


@dataclass
class FrameReport:
    """Outcome of one processed frame"""
    index: int
    status: str  # "anchored", "fused", "skipped", "failed"
    counts: Dict[str, int] = field(default_factory=dict)
    registration: Optional[RegistrationResult] = None
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (FRAME_ANCHORED, FRAME_FUSED)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "index": self.index,
            "status": self.status,
            "counts": dict(self.counts),
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
        }
        if self.registration is not None:
            reg = self.registration
            data["registration"] = {
                "status": reg.status,
                "converged": reg.converged,
                "iterations": reg.iterations,
                # inf (no iteration finished) is not valid JSON
                "residual": reg.final_residual if math.isfinite(reg.final_residual) else None,
                "fitness": reg.fitness,
                "quality": reg.quality,
                "acceptable": reg.acceptable,
                "transform": reg.transform.to_pose_dict(),
            }
        return data


class MappingService:
    """
    Owns one mapping session: the global map, the running pose and the
    reference frame the next frame is registered against.

    Args:
        config: MappingConfig, dict, JSON path or None (see load_config)
        viewer: Optional MapViewer, fed in the background after every
            map update
    """

    def __init__(
        self,
        config: Union[MappingConfig, Dict[str, Any], str, None] = None,
        viewer: Optional[MapViewer] = None,
    ):
        self.config = load_config(config)
        self._build_operations()
        self.icp = ICPEngine(self.config.icp)
        self.fuser = MapFuser(
            self.config.fusion.merge_voxel_size,
            self.config.fusion.map_voxel_size,
        )
        self.accumulator = PoseAccumulator()
        self.viewer_bridge = ViewerBridge(viewer) if viewer is not None else None

        self.global_map = GlobalMap()
        self.reports: List[FrameReport] = []
        self._reference: Optional[PointSet] = None
        self._motion = RigidTransform.identity()
        self._next_index = 0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    def _build_operations(self) -> None:
        # Fresh operations also restart their seeded random generators
        self.preprocessor = build_preprocessing_pipeline(self.config)
        self.downsampler = build_downsampler(self.config.downsample)

    @property
    def pose(self) -> RigidTransform:
        """Pose of the latest published map."""
        return self.global_map.pose

    def stop(self) -> None:
        """Stop ``run`` before its next frame."""
        self._stop_event.set()

    def reset(self) -> None:
        """Discard the map and pose and start a new session."""
        with self._lock:
            self._build_operations()
            self.accumulator.reset()
            self.global_map = GlobalMap()
            self.reports = []
            self._reference = None
            self._motion = RigidTransform.identity()
            self._next_index = 0
            self._stop_event.clear()
        logger.info("Mapping session reset")

    def close(self) -> None:
        if self.viewer_bridge is not None:
            self.viewer_bridge.close()

    async def process_frame_async(self, frame: Union[PointSet, np.ndarray]) -> FrameReport:
        return await asyncio.to_thread(self.process_frame, frame)

    def process_frame(self, frame: Union[PointSet, np.ndarray]) -> FrameReport:
        """
        Process one raw frame and fold it into the map.

        PoseCorruptionError is reported as a failed frame; other errors
        propagate to the caller.
        """
        with self._lock:
            index = self._next_index
            self._next_index += 1
            start = time.monotonic_ns()
            try:
                report = self._process(index, frame)
            except PoseCorruptionError as e:
                logger.error(f"Frame {index}: {e}")
                report = FrameReport(index=index, status=FRAME_FAILED, error=str(e))
            report.elapsed_ms = (time.monotonic_ns() - start) / 1e6
            self.reports.append(report)

        logger.info(
            f"Frame {index} {report.status}: map={len(self.global_map)} points, "
            f"pose={self.global_map.pose}, {report.elapsed_ms:.1f} ms"
        )
        return report

    def _process(self, index: int, frame: Union[PointSet, np.ndarray]) -> FrameReport:
        if not isinstance(frame, PointSet):
            frame = PointSet.from_array(np.asarray(frame))

        processed, meta = self.preprocessor.process(frame)
        reduced = self.downsampler(processed)
        counts = {
            "input": meta["original_count"],
            "finite": meta["finite_count"],
            "preprocessed": len(processed),
            "downsampled": len(reduced),
        }

        if len(reduced) < 3:
            logger.warning(f"Frame {index}: only {len(reduced)} points left after preprocessing, skipping")
            return FrameReport(index=index, status=FRAME_SKIPPED, counts=counts,
                               error="not enough points after preprocessing")

        if self._reference is None:
            self._publish(self.fuser.fuse(GlobalMap(), processed, pose=self.accumulator.pose))
            self._reference = reduced
            counts["map"] = len(self.global_map)
            return FrameReport(index=index, status=FRAME_ANCHORED, counts=counts)

        initial = self._motion if self.config.use_motion_prior else None
        result = self.icp.register(reduced, self._reference, initial_transform=initial)

        if not self._accept(index, result):
            return FrameReport(index=index, status=FRAME_SKIPPED, counts=counts,
                               registration=result, error=f"registration {result.status}")

        pose = self.accumulator.propose(result.transform)
        new_map = self.fuser.fuse(self.global_map, processed.transformed(pose), pose=pose)
        self.accumulator.update(result.transform)
        self._publish(new_map)
        self._reference = reduced
        self._motion = result.transform
        counts["map"] = len(self.global_map)
        return FrameReport(index=index, status=FRAME_FUSED, counts=counts, registration=result)

    def _accept(self, index: int, result: RegistrationResult) -> bool:
        """Apply the failure policy to a registration result."""
        try:
            result.ensure_converged()
            return True
        except RegistrationDivergedError as e:
            if self.config.failure_policy == "accept" and result.status != STATUS_EMPTY \
                    and result.transform.is_finite():
                logger.warning(f"Frame {index}: {e}; accepting best-effort transform")
                return True
            logger.warning(f"Frame {index}: {e}; frame not fused, pose held")
            return False

    def _publish(self, new_map: GlobalMap) -> None:
        self.global_map = new_map
        if self.viewer_bridge is not None:
            self.viewer_bridge.publish(new_map.point_set, new_map.pose)

    def run(self, source: FrameSource, max_frames: Optional[int] = None) -> List[FrameReport]:
        """
        Pull frames from ``source`` until it is exhausted, ``max_frames``
        have been processed, or ``stop()`` is called.

        A LidarMapError raised by one frame is logged and reported as a
        failed frame; the session moves on to the next one.
        """
        self._stop_event.clear()
        reports: List[FrameReport] = []
        while not self._stop_event.is_set():
            if max_frames is not None and len(reports) >= max_frames:
                break
            frame = source.next_frame()
            if frame is None:
                break
            try:
                report = self.process_frame(frame)
            except LidarMapError as e:
                with self._lock:
                    report = FrameReport(index=self._next_index - 1, status=FRAME_FAILED, error=str(e))
                    self.reports.append(report)
                logger.error(f"Frame {report.index} failed: {e}")
            reports.append(report)

        fused = sum(1 for r in reports if r.ok)
        logger.info(
            f"Mapping run finished: {len(reports)} frames, {fused} in map, "
            f"{len(self.global_map)} map points"
        )
        return reports
