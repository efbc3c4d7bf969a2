"""
Error types raised by the mapping core.

Parameter and bounds errors also derive from ValueError so callers that
only know the standard exceptions still catch them.
"""
from typing import Any, Optional


class LidarMapError(Exception):
    """Base class for every error raised by lidar_map."""


class InvalidBoundsError(LidarMapError, ValueError):
    """ROI box with min > max (or a non-finite bound) on some axis."""


class InvalidParameterError(LidarMapError, ValueError):
    """Malformed configuration value. Fatal to the call, not the session."""


class PlaneNotFoundError(LidarMapError):
    """No plane could be fitted. Recoverable: nothing gets removed."""


class RegistrationDivergedError(LidarMapError):
    """
    Registration did not converge.

    The best-effort result is attached so the caller can still decide to
    use it.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class PoseCorruptionError(LidarMapError):
    """An update would have put a non-finite value into the running pose."""
