from .fuser import GlobalMap, MapFuser
from .interfaces import FrameSource, IterableFrameSource, MapViewer, ViewerBridge
from .pose import PoseAccumulator
from .service import FrameReport, MappingService

__all__ = [
    "GlobalMap",
    "MapFuser",
    "FrameSource",
    "IterableFrameSource",
    "MapViewer",
    "ViewerBridge",
    "PoseAccumulator",
    "FrameReport",
    "MappingService",
]
