"""Pytest fixtures: small synthetic LAS tiles written with laspy."""

import threading
from pathlib import Path

import laspy
import numpy as np
import pytest

from roi_catalog.catalog import Catalog
from roi_catalog.crs import set_crs
from roi_catalog.parameters import QueryConfig
from roi_catalog.pointcloud import LasTileReader


TILE_SIZE = 100.0
GRID_STEP = 2.0


def write_tile(path: Path, xmin: float, ymin: float, size: float = TILE_SIZE, step: float = GRID_STEP,
               epsg=26917, wkt_mode: bool = False) -> Path:
    """
    Write a regular grid tile covering [xmin, xmin + size] x [ymin, ymin + size],
    edges included. WKT-mode tiles are LAS 1.4 / point format 6.
    """
    coords = np.arange(0.0, size + step / 2, step)
    gx, gy = np.meshgrid(xmin + coords, ymin + coords)
    x = gx.ravel()
    y = gy.ravel()

    if wkt_mode:
        header = laspy.LasHeader(point_format=6, version="1.4")
        header.global_encoding.wkt = True
    else:
        header = laspy.LasHeader(point_format=3, version="1.2")
    header.scales = np.array([0.01, 0.01, 0.01])
    header.offsets = np.array([xmin, ymin, 0.0])

    las = laspy.LasData(header)
    las.x = x
    las.y = y
    las.z = (x + y) / 10.0
    las.intensity = (np.arange(len(x)) % 1000).astype(np.uint16)
    las.classification = np.full(len(x), 2, dtype=np.uint8)

    if epsg is not None:
        set_crs(las, epsg)

    path.parent.mkdir(parents=True, exist_ok=True)
    las.write(str(path))
    return path


def tile_name(col: int, row: int) -> str:
    return f"tile_{col}_{row}.las"


class CountingReader:
    """Reader double that records every call and delegates to LasTileReader."""

    parallel_safe = True

    def __init__(self):
        self.calls = []
        self.threads = []
        self._lock = threading.Lock()
        self._inner = LasTileReader()

    def read(self, paths, options=None):
        paths = list(paths)
        with self._lock:
            self.calls.append(tuple(Path(p).name for p in paths))
            self.threads.append(threading.get_ident())
        return self._inner.read(paths, options)


@pytest.fixture
def tile_dir(tmp_path):
    """2x2 grid of 100 x 100 tiles over [0, 200] x [0, 200], EPSG:26917."""
    directory = tmp_path / "tiles"
    for col in range(2):
        for row in range(2):
            write_tile(directory / tile_name(col, row), col * TILE_SIZE, row * TILE_SIZE)
    return directory


@pytest.fixture
def catalog(tile_dir):
    return Catalog.from_directory(tile_dir)


@pytest.fixture
def counting_reader():
    return CountingReader()


@pytest.fixture
def quiet_config():
    return QueryConfig(progress=False, verbose=False)


@pytest.fixture
def epsg_tile(tmp_path):
    """LAS 1.2 tile without georeferencing (GeoKey storage mode)."""
    return write_tile(tmp_path / "epsg_mode.las", 0.0, 0.0, size=10.0, epsg=None)


@pytest.fixture
def wkt_tile(tmp_path):
    """LAS 1.4 tile with the WKT global encoding bit set."""
    return write_tile(tmp_path / "wkt_mode.las", 0.0, 0.0, size=10.0, epsg=None, wkt_mode=True)
