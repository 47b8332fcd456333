"""
roi_catalog: extract circular or rectangular plots from tiled LAS/LAZ
catalogs, and read or write the reference system stored in tile headers.
"""

from .catalog import Catalog, TileRef
from .crs import ReferenceSystem, UNDEFINED, get_crs, get_epsg, get_wkt, set_crs, set_epsg, set_wkt
from .errors import (
    DuplicateROIName,
    InvalidGeometry,
    InvalidReferenceSystem,
    RoiCatalogError,
    TileReadFailure,
    WorkerCrash,
)
from .parameters import QueryConfig
from .pointcloud import LasTileReader, PointCloud, ReaderOptions, ShapeClipper, clip_roi
from .roi import QueryBatch, Roi, build_rois, group_queries
from .roi_query import RoiResult, roi_query

__version__ = "0.1.0"
