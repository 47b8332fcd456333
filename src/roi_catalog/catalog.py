"""
Tile catalog and spatial index.

A catalog is the set of LAS/LAZ tiles covering a survey, each described by
its file path, XY bounding box and reference system. It can be built from
tile headers (no points are loaded) or from a PDAL tile index (tindex).

locate() resolves a ROI to every tile whose bounding box intersects the
ROI envelope. The test is inclusive: an envelope touching a shared edge
resolves to both neighbours.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import laspy
from pyproj import CRS

from .crs import UNDEFINED, ReferenceSystem, get_crs
from .errors import TileReadFailure


TILE_EXTS = (".las", ".laz")


@dataclass(frozen=True)
class TileRef:
    """One tile file of the catalog."""

    path: str
    bbox: Tuple[float, float, float, float]  # min_x, min_y, max_x, max_y
    point_count: int = field(default=0, compare=False)
    crs: ReferenceSystem = field(default=UNDEFINED, compare=False)

    @property
    def name(self) -> str:
        return Path(self.path).name

    def intersects(self, envelope: Tuple[float, float, float, float]) -> bool:
        min_x, min_y, max_x, max_y = envelope
        return (self.bbox[0] <= max_x and self.bbox[2] >= min_x and
                self.bbox[1] <= max_y and self.bbox[3] >= min_y)


def _laz_kwargs(path: Path) -> dict:
    """Use the parallel lazrs backend for LAZ files when it is available."""
    if path.suffix.lower() != ".laz":
        return {}
    if hasattr(laspy.LazBackend, "LazrsParallel") and laspy.LazBackend.LazrsParallel.is_available():
        return {"laz_backend": laspy.LazBackend.LazrsParallel}
    return {}


def get_tile_ref_from_header(filepath: Path) -> TileRef:
    """
    Describe a tile from its header (without loading points).

    Args:
        filepath: Path to LAS/LAZ file

    Returns:
        TileRef with bounds, point count and reference system
    """
    filepath = Path(filepath)
    try:
        with laspy.open(str(filepath), **_laz_kwargs(filepath)) as las:
            header = las.header
            bbox = (float(header.x_min), float(header.y_min), float(header.x_max), float(header.y_max))
            return TileRef(
                path=str(filepath),
                bbox=bbox,
                point_count=int(header.point_count),
                crs=get_crs(header),
            )
    except (OSError, laspy.LaspyException) as e:
        raise TileReadFailure(filepath, e) from e


class Catalog:
    """Ordered collection of tiles with an inclusive bounding-box index."""

    def __init__(self, tiles: Iterable[TileRef]):
        self.tiles: Tuple[TileRef, ...] = tuple(tiles)
        self._bounds = np.array([t.bbox for t in self.tiles], dtype=np.float64).reshape(-1, 4)

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self) -> Iterator[TileRef]:
        return iter(self.tiles)

    def __getitem__(self, index) -> TileRef:
        return self.tiles[index]

    def __repr__(self) -> str:
        return f"Catalog({len(self.tiles)} tiles, crs={self.crs})"

    @property
    def extent(self) -> Optional[Tuple[float, float, float, float]]:
        """(min_x, min_y, max_x, max_y) of all tiles, None for an empty catalog."""
        if not self.tiles:
            return None
        return (
            float(self._bounds[:, 0].min()),
            float(self._bounds[:, 1].min()),
            float(self._bounds[:, 2].max()),
            float(self._bounds[:, 3].max()),
        )

    @property
    def crs_consistent(self) -> bool:
        if not self.tiles:
            return True
        first = self.tiles[0].crs
        return all(t.crs.same_as(first) for t in self.tiles[1:])

    @property
    def crs(self) -> ReferenceSystem:
        """Reference system shared by every tile, UNDEFINED when they disagree."""
        if not self.tiles or not self.crs_consistent:
            return UNDEFINED
        return self.tiles[0].crs

    def locate(self, roi) -> FrozenSet[TileRef]:
        """Return every tile whose bounding box intersects the ROI envelope."""
        if not self.tiles:
            return frozenset()
        min_x, min_y, max_x, max_y = roi.envelope
        b = self._bounds
        hit = (
            (b[:, 0] <= max_x) & (b[:, 2] >= min_x) &
            (b[:, 1] <= max_y) & (b[:, 3] >= min_y)
        )
        return frozenset(self.tiles[i] for i in np.flatnonzero(hit))

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_files(cls, paths: Sequence, verbose: bool = False) -> "Catalog":
        """Build a catalog from LAS/LAZ files, reading headers only."""
        tiles = []
        for path in sorted(Path(p) for p in paths):
            tile = get_tile_ref_from_header(path)
            if verbose:
                print(f"  ✓ {tile.name}: {tile.point_count:,} points, {tile.crs}")
            tiles.append(tile)
        return cls(tiles)

    @classmethod
    def from_directory(cls, directory, recursive: bool = False, verbose: bool = False) -> "Catalog":
        """Build a catalog from every LAS/LAZ file in a directory."""
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Catalog directory not found: {directory}")

        pattern = "**/*" if recursive else "*"
        files = [p for p in directory.glob(pattern) if p.is_file() and p.suffix.lower() in TILE_EXTS]
        if not files:
            raise ValueError(f"No LAS/LAZ files found in {directory}")

        if verbose:
            print(f"  Found {len(files)} tiles in {directory}")
        return cls.from_files(files, verbose=verbose)

    @classmethod
    def from_tindex(cls, tindex_path, location_field: str = "Location") -> "Catalog":
        """
        Build a catalog from a tile index (GeoPackage or shapefile) such as
        the one written by `pdal tindex create`.

        Each feature is one tile: its polygon gives the bounding box and the
        location attribute the file path. Relative paths are resolved
        against the tindex directory.
        """
        import fiona

        tindex_path = Path(tindex_path)
        tiles: List[TileRef] = []

        with fiona.open(tindex_path) as src:
            crs = UNDEFINED
            if src.crs:
                try:
                    crs = ReferenceSystem.from_crs(CRS.from_user_input(src.crs))
                except Exception as e:
                    print(f"  ⚠ Warning: could not interpret tindex CRS {src.crs}: {e}", file=sys.stderr)

            for feature in src:
                geom = feature.geometry
                if geom is None:
                    continue
                if geom.type == 'Polygon':
                    coords = geom.coordinates[0]
                elif geom.type == 'MultiPolygon':
                    coords = [c for poly in geom.coordinates for c in poly[0]]
                else:
                    continue

                location = feature.properties.get(location_field)
                if not location:
                    raise ValueError(
                        f"Feature without '{location_field}' attribute in tindex {tindex_path}"
                    )
                location = Path(location)
                if not location.is_absolute():
                    location = tindex_path.parent / location

                xs = [c[0] for c in coords]
                ys = [c[1] for c in coords]
                tiles.append(TileRef(
                    path=str(location),
                    bbox=(min(xs), min(ys), max(xs), max(ys)),
                    crs=crs,
                ))

        if not tiles:
            raise ValueError(f"No features found in tindex: {tindex_path}")

        return cls(tiles)
