"""
Point cloud container, default tile reader and shape clipper.

LasTileReader loads a set of tiles into one merged PointCloud using chunked
laspy reads. ShapeClipper builds a KD-tree over the merged cloud once and
then clips every ROI of a batch against it.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import laspy
from scipy.spatial import cKDTree

from .catalog import _laz_kwargs
from .crs import UNDEFINED, ReferenceSystem, get_crs, set_crs
from .errors import TileReadFailure
from .roi import Roi, roi_mask, search_radius


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class PointCloud:
    """Container for point cloud data."""

    xyz: np.ndarray  # (N, 3) float64
    attributes: Dict[str, np.ndarray] = field(default_factory=dict)
    crs: ReferenceSystem = UNDEFINED

    def __len__(self) -> int:
        return len(self.xyz)

    def __repr__(self) -> str:
        dims = ", ".join(self.attributes) or "xyz only"
        return f"PointCloud({len(self):,} points, {dims}, crs={self.crs})"

    @property
    def x(self) -> np.ndarray:
        return self.xyz[:, 0]

    @property
    def y(self) -> np.ndarray:
        return self.xyz[:, 1]

    @property
    def z(self) -> np.ndarray:
        return self.xyz[:, 2]

    @classmethod
    def empty(cls, attributes: Optional[Dict[str, np.dtype]] = None, crs: ReferenceSystem = UNDEFINED) -> "PointCloud":
        attributes = attributes or {}
        return cls(
            xyz=np.empty((0, 3), dtype=np.float64),
            attributes={name: np.empty(0, dtype=dtype) for name, dtype in attributes.items()},
            crs=crs,
        )

    def subset(self, index) -> "PointCloud":
        """New cloud holding the points selected by a boolean mask or index array."""
        return PointCloud(
            xyz=self.xyz[index],
            attributes={name: values[index] for name, values in self.attributes.items()},
            crs=self.crs,
        )

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """(min_x, min_y, max_x, max_y), None when empty."""
        if len(self) == 0:
            return None
        mins = self.xyz[:, :2].min(axis=0)
        maxs = self.xyz[:, :2].max(axis=0)
        return float(mins[0]), float(mins[1]), float(maxs[0]), float(maxs[1])

    @classmethod
    def concatenate(cls, clouds: Sequence["PointCloud"]) -> "PointCloud":
        """Merge clouds; only attributes present in every cloud are kept."""
        if not clouds:
            return cls.empty()
        if len(clouds) == 1:
            return clouds[0]

        common = [name for name in clouds[0].attributes
                  if all(name in c.attributes for c in clouds[1:])]
        crs = next((c.crs for c in clouds if not c.crs.undefined), UNDEFINED)
        if any(not c.crs.undefined and not c.crs.same_as(crs) for c in clouds):
            print("  ⚠ Warning: merging tiles with different reference systems", file=sys.stderr)

        return cls(
            xyz=np.concatenate([c.xyz for c in clouds]),
            attributes={name: np.concatenate([c.attributes[name] for c in clouds]) for name in common},
            crs=crs,
        )

    def write_las(self, path, scale: float = 0.001) -> Path:
        """
        Write the cloud as a LAS 1.4 / point format 6 file.

        Attributes matching a point format dimension are stored there, the
        others as extra bytes. The reference system goes into a WKT record.
        """
        path = Path(path)
        header = laspy.LasHeader(point_format=6, version="1.4")
        header.scales = np.array([scale, scale, scale])
        if len(self):
            header.offsets = np.floor(self.xyz.min(axis=0))

        standard = set(header.point_format.dimension_names)
        extra = [name for name in self.attributes if name not in standard]
        for name in extra:
            dtype = self.attributes[name].dtype
            if dtype == np.bool_:
                dtype = np.dtype(np.uint8)
            header.add_extra_dim(laspy.ExtraBytesParams(name=name, type=dtype))

        if not self.crs.undefined:
            header.global_encoding.wkt = True
            set_crs(header, self.crs)

        las = laspy.LasData(header)
        las.x = self.xyz[:, 0]
        las.y = self.xyz[:, 1]
        las.z = self.xyz[:, 2]
        for name, values in self.attributes.items():
            las[name] = values

        path.parent.mkdir(parents=True, exist_ok=True)
        las.write(str(path))
        return path


@dataclass(frozen=True)
class ReaderOptions:
    """Options forwarded to the tile reader."""

    select: Tuple[str, ...] = ()  # extra dimensions to load, ("*",) for all
    chunk_size: int = 1_000_000


# =============================================================================
# Reader
# =============================================================================


def _selected_dimensions(header: laspy.LasHeader, select: Sequence[str]) -> List[str]:
    available = [name for name in header.point_format.dimension_names if name not in ("X", "Y", "Z")]
    if "*" in select:
        return available
    return [name for name in select if name in available]


def _dimension_dtype(point_format, name: str) -> np.dtype:
    try:
        return point_format.dtype()[name]
    except KeyError:
        # sub-fields packed into a byte (classification in formats 0-5, return_number, flags)
        return np.dtype(np.uint8)


class LasTileReader:
    """
    Reads LAS/LAZ tiles with laspy and merges them into one PointCloud.

    Picklable and stateless, so it can be shipped to pool workers.
    """

    parallel_safe = True

    def read(self, paths: Iterable, options: Optional[ReaderOptions] = None) -> PointCloud:
        options = options or ReaderOptions()
        clouds = [self.read_tile(Path(p), options) for p in paths]
        return PointCloud.concatenate(clouds)

    def read_tile(self, filepath: Path, options: ReaderOptions) -> PointCloud:
        """Load one tile using chunked reading for memory efficiency."""
        try:
            with laspy.open(str(filepath), **_laz_kwargs(filepath)) as f:
                n_points = f.header.point_count
                names = _selected_dimensions(f.header, options.select)
                crs = get_crs(f.header)
                dtypes = {name: _dimension_dtype(f.header.point_format, name) for name in names}

                # Pre-allocate coordinates, attributes are collected per chunk
                points = np.empty((n_points, 3), dtype=np.float64)
                chunks: Dict[str, List[np.ndarray]] = {name: [] for name in names}

                offset = 0
                for chunk in f.chunk_iterator(options.chunk_size):
                    end = offset + len(chunk)
                    points[offset:end, 0] = chunk.x
                    points[offset:end, 1] = chunk.y
                    points[offset:end, 2] = chunk.z
                    for name in names:
                        chunks[name].append(np.array(chunk[name]))
                    offset = end

        except (OSError, laspy.LaspyException, ValueError) as e:
            raise TileReadFailure(filepath, e) from e

        if offset != n_points:
            raise TileReadFailure(filepath, ValueError(f"header declares {n_points} points, read {offset}"))

        attributes = {
            name: np.concatenate(parts) if parts else np.empty(0, dtype=dtypes[name])
            for name, parts in chunks.items()
        }
        return PointCloud(xyz=points, attributes=attributes, crs=crs)


# =============================================================================
# Clipper
# =============================================================================


class PreparedClip:
    """KD-tree over one merged cloud, queried once per ROI."""

    # Relative widening of the KD-tree search, the exact shape test decides
    SEARCH_TOLERANCE = 1e-9

    def __init__(self, cloud: PointCloud):
        self.cloud = cloud
        self._tree = cKDTree(cloud.xyz[:, :2]) if len(cloud) else None

    def clip(self, roi: Roi) -> PointCloud:
        if self._tree is None:
            return self.cloud.subset(np.empty(0, dtype=np.intp))

        radius = search_radius(roi)
        radius += radius * self.SEARCH_TOLERANCE + self.SEARCH_TOLERANCE
        candidates = np.asarray(self._tree.query_ball_point([roi.x, roi.y], radius), dtype=np.intp)
        candidates.sort()

        xy = self.cloud.xyz[candidates, :2]
        mask = roi_mask(roi, xy[:, 0], xy[:, 1])
        return self.cloud.subset(candidates[mask])


class ShapeClipper:
    """Default clipper: circles by distance to center, rectangles by box test."""

    def prepare(self, cloud: PointCloud) -> PreparedClip:
        return PreparedClip(cloud)


def clip_roi(cloud: PointCloud, roi: Roi) -> PointCloud:
    """Clip a single ROI by brute force, without building an index."""
    return cloud.subset(roi_mask(roi, cloud.x, cloud.y))
