"""
Regions of interest and query batching.

build_rois() validates the caller's coordinate arrays before any tile is
touched. group_queries() puts every ROI resolving to the same set of tiles
into one QueryBatch so that each tile combination is read only once.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DuplicateROIName, InvalidGeometry


CIRCLE = "circle"
RECTANGLE = "rectangle"


@dataclass(frozen=True)
class Roi:
    """A named circular or rectangular plot."""

    name: str
    x: float
    y: float
    shape: str
    half_width: float
    half_height: float

    @classmethod
    def circle(cls, name: str, x: float, y: float, radius: float) -> "Roi":
        return cls(name, float(x), float(y), CIRCLE, float(radius), float(radius))

    @classmethod
    def rectangle(cls, name: str, x: float, y: float, half_width: float, half_height: float) -> "Roi":
        return cls(name, float(x), float(y), RECTANGLE, float(half_width), float(half_height))

    @property
    def radius(self) -> float:
        return self.half_width

    @property
    def envelope(self) -> Tuple[float, float, float, float]:
        """Axis-aligned bounding box (min_x, min_y, max_x, max_y)."""
        return (
            self.x - self.half_width,
            self.y - self.half_height,
            self.x + self.half_width,
            self.y + self.half_height,
        )


def _as_array(name: str, values, n: Optional[int]) -> np.ndarray:
    """Coerce to a 1-D float array, broadcasting scalars to length n."""
    arr = np.atleast_1d(np.asarray(values, dtype=np.float64))
    if arr.ndim != 1:
        raise InvalidGeometry(f"'{name}' must be a scalar or a 1-D sequence")
    if n is not None and arr.size == 1 and n != 1:
        arr = np.full(n, arr[0])
    if n is not None and arr.size != n:
        raise InvalidGeometry(f"'{name}' has {arr.size} values, expected {n}")
    return arr


def build_rois(x, y, r, r2=None, roinames: Optional[Sequence] = None) -> List[Roi]:
    """
    Validate query arrays and build the ROI list.

    Args:
        x, y: ROI centers
        r: radius (circles) or half width (rectangles); scalar or per ROI
        r2: half height; its presence turns every ROI into a rectangle
        roinames: unique names, default "ROI1", "ROI2", ...

    Returns:
        List of Roi in input order

    Raises:
        InvalidGeometry: mismatched lengths, non-finite centers or
            non-positive extents
        DuplicateROIName: repeated names
    """
    xs = np.atleast_1d(np.asarray(x, dtype=np.float64))
    if xs.ndim != 1:
        raise InvalidGeometry("'x' must be a 1-D sequence")
    n = xs.size
    ys = _as_array("y", y, None)
    if ys.size != n:
        raise InvalidGeometry(f"'x' and 'y' differ in length ({n} vs {ys.size})")
    if n == 0:
        return []

    rs = _as_array("r", r, n)
    r2s = _as_array("r2", r2, n) if r2 is not None else None

    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise InvalidGeometry("ROI centers must be finite")
    for label, extents in (("r", rs), ("r2", r2s)):
        if extents is None:
            continue
        bad = ~np.isfinite(extents) | (extents <= 0)
        if bad.any():
            first = int(np.flatnonzero(bad)[0])
            raise InvalidGeometry(
                f"'{label}' must be positive, got {extents[first]} at position {first + 1}"
            )

    if roinames is None:
        names = [f"ROI{i}" for i in range(1, n + 1)]
    else:
        names = [str(name) for name in roinames]
        if len(names) != n:
            raise InvalidGeometry(f"'roinames' has {len(names)} values, expected {n}")
        duplicates = [name for name, count in Counter(names).items() if count > 1]
        if duplicates:
            raise DuplicateROIName(duplicates)

    if r2s is None:
        return [Roi.circle(names[i], xs[i], ys[i], rs[i]) for i in range(n)]
    return [Roi.rectangle(names[i], xs[i], ys[i], rs[i], r2s[i]) for i in range(n)]


@dataclass(frozen=True)
class QueryBatch:
    """ROIs sharing one identical set of tiles, read together."""

    tiles: FrozenSet
    rois: Tuple[Roi, ...]

    @property
    def paths(self) -> List[str]:
        return sorted(tile.path for tile in self.tiles)

    @property
    def envelope(self) -> Optional[Tuple[float, float, float, float]]:
        if not self.rois:
            return None
        envelopes = np.array([roi.envelope for roi in self.rois])
        return (
            float(envelopes[:, 0].min()),
            float(envelopes[:, 1].min()),
            float(envelopes[:, 2].max()),
            float(envelopes[:, 3].max()),
        )


def group_queries(catalog, rois: Sequence[Roi]) -> List[QueryBatch]:
    """
    Group ROIs by the set of tiles they resolve to.

    ROIs keep their input order inside a batch. ROIs outside the catalog
    share one batch with an empty tile set.
    """
    groups: Dict[FrozenSet, List[Roi]] = {}
    for roi in rois:
        groups.setdefault(catalog.locate(roi), []).append(roi)
    return [QueryBatch(tiles, tuple(members)) for tiles, members in groups.items()]


def circle_contains(dx: np.ndarray, dy: np.ndarray, radius: float) -> np.ndarray:
    """Inclusive disc test on offsets from the center."""
    return (np.abs(dx) <= radius) & (np.abs(dy) <= radius) & (dx * dx + dy * dy <= radius * radius)


def rectangle_contains(dx: np.ndarray, dy: np.ndarray, half_width: float, half_height: float) -> np.ndarray:
    """Inclusive box test on offsets from the center."""
    return (np.abs(dx) <= half_width) & (np.abs(dy) <= half_height)


def roi_mask(roi: Roi, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Boolean mask of the points (x, y) that fall inside the ROI."""
    dx = x - roi.x
    dy = y - roi.y
    if roi.shape == CIRCLE:
        return circle_contains(dx, dy, roi.radius)
    return rectangle_contains(dx, dy, roi.half_width, roi.half_height)


def search_radius(roi: Roi) -> float:
    """Radius of the smallest disc around the center that covers the ROI."""
    if roi.shape == CIRCLE:
        return roi.radius
    return math.hypot(roi.half_width, roi.half_height)
