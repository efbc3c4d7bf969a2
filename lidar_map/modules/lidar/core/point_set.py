"""
PointSet: the point container passed between every stage of the mapper.

Positions are float64 (N, 3). Colors (N, 3), intensity (N,) and normals
(N, 3) are optional per-point attributes. Operations never modify a
PointSet in place; they return a new one.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from lidar_map.core.errors import InvalidParameterError
from .transformations import RigidTransform

_ATTRIBUTES = ("colors", "intensity", "normals")


def _as_column_block(name: str, values: Optional[np.ndarray], n: int, width: int) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.asarray(values, dtype=np.float64)
    expected = (n, width) if width > 1 else (n,)
    if width == 1 and arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr.reshape(-1)
    if arr.shape != expected:
        raise InvalidParameterError(f"PointSet.{name} must have shape {expected}, got {arr.shape}")
    return arr


@dataclass(frozen=True, eq=False)
class PointSet:
    points: np.ndarray
    colors: Optional[np.ndarray] = None
    intensity: Optional[np.ndarray] = None
    normals: Optional[np.ndarray] = None

    def __post_init__(self):
        pts = np.asarray(self.points, dtype=np.float64)
        if pts.size == 0:
            pts = pts.reshape(0, 3)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise InvalidParameterError(f"PointSet.points must have shape (N, 3), got {pts.shape}")
        n = pts.shape[0]
        object.__setattr__(self, "points", pts)
        object.__setattr__(self, "colors", _as_column_block("colors", self.colors, n, 3))
        object.__setattr__(self, "intensity", _as_column_block("intensity", self.intensity, n, 1))
        object.__setattr__(self, "normals", _as_column_block("normals", self.normals, n, 3))

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    @classmethod
    def empty(cls) -> "PointSet":
        return cls(np.zeros((0, 3)))

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PointSet":
        """
        Build from an interleaved (N, M) array.

        Columns: x, y, z, then either intensity (M == 4) or r, g, b
        (M == 6) or r, g, b, intensity (M >= 7). Extra columns are ignored.
        """
        array = np.asarray(array, dtype=np.float64)
        if array.size == 0:
            return cls.empty()
        if array.ndim != 2 or array.shape[1] < 3:
            raise InvalidParameterError(f"Expected an (N, 3+) array, got shape {array.shape}")

        cols = array.shape[1]
        colors = intensity = None
        if cols == 4:
            intensity = array[:, 3]
        elif cols >= 6:
            colors = array[:, 3:6]
            if cols >= 7:
                intensity = array[:, 6]
        return cls(array[:, :3], colors=colors, intensity=intensity)

    @classmethod
    def concatenate(cls, sets: Iterable["PointSet"]) -> "PointSet":
        """
        Stack point sets in order.

        An optional attribute survives only if every non-empty input has it.
        """
        parts = [s for s in sets if len(s) > 0]
        if not parts:
            return cls.empty()
        if len(parts) == 1:
            return parts[0]

        kwargs = {}
        for name in _ATTRIBUTES:
            blocks = [getattr(s, name) for s in parts]
            if all(b is not None for b in blocks):
                kwargs[name] = np.concatenate(blocks, axis=0)
        return cls(np.concatenate([s.points for s in parts], axis=0), **kwargs)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def __len__(self) -> int:
        return int(self.points.shape[0])

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def has_colors(self) -> bool:
        return self.colors is not None

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    def finite_mask(self) -> np.ndarray:
        return np.all(np.isfinite(self.points), axis=1)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """(min, max) corners of the finite points. Raises on an empty set."""
        valid = self.points[self.finite_mask()]
        if len(valid) == 0:
            raise InvalidParameterError("Cannot compute bounds of an empty PointSet")
        return valid.min(axis=0), valid.max(axis=0)

    # ------------------------------------------------------------------ #
    # Producing operations
    # ------------------------------------------------------------------ #
    def select(self, index: Union[np.ndarray, Sequence[int]]) -> "PointSet":
        """Subset by boolean mask or integer indices, keeping order."""
        index = np.asarray(index)
        if index.dtype != bool:
            index = index.astype(np.int64, copy=False)
        kwargs = {}
        for name in _ATTRIBUTES:
            values = getattr(self, name)
            if values is not None:
                kwargs[name] = values[index]
        return PointSet(self.points[index], **kwargs)

    def valid(self) -> "PointSet":
        """Drop points with a non-finite coordinate."""
        mask = self.finite_mask()
        if mask.all():
            return self
        return self.select(mask)

    def transformed(self, transform: Union[RigidTransform, np.ndarray]) -> "PointSet":
        if not isinstance(transform, RigidTransform):
            transform = RigidTransform(transform)
        normals = None
        if self.normals is not None:
            normals = self.normals @ transform.matrix[:3, :3].T
        return PointSet(
            np.array(transform.apply(self.points), copy=True),
            colors=self.colors,
            intensity=self.intensity,
            normals=normals,
        )

    def with_normals(self, normals: Optional[np.ndarray]) -> "PointSet":
        return PointSet(self.points, colors=self.colors, intensity=self.intensity, normals=normals)

    def without_normals(self) -> "PointSet":
        if self.normals is None:
            return self
        return self.with_normals(None)

    def to_array(self) -> np.ndarray:
        """Flat (N, 3[+3][+1]) export: x, y, z[, r, g, b][, intensity]."""
        blocks: List[np.ndarray] = [self.points]
        if self.colors is not None:
            blocks.append(self.colors)
        if self.intensity is not None:
            blocks.append(self.intensity.reshape(-1, 1))
        return np.hstack(blocks) if len(blocks) > 1 else self.points.copy()

    def __repr__(self) -> str:
        extras = [name for name in _ATTRIBUTES if getattr(self, name) is not None]
        return f"PointSet(n={len(self)}, attributes={extras})"
