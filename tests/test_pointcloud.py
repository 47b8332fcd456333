"""Tests for the point cloud container, LAS reader and clipper."""

import laspy
import numpy as np
import pytest

from roi_catalog.crs import ReferenceSystem, get_crs
from roi_catalog.errors import TileReadFailure
from roi_catalog.pointcloud import (
    LasTileReader,
    PointCloud,
    PreparedClip,
    ReaderOptions,
    ShapeClipper,
    clip_roi,
)
from roi_catalog.roi import Roi

from conftest import tile_name


def _cloud(n=100, seed=0):
    rng = np.random.default_rng(seed)
    xyz = rng.uniform(0, 50, (n, 3))
    return PointCloud(xyz=xyz, attributes={"intensity": np.arange(n, dtype=np.uint16)},
                      crs=ReferenceSystem.from_epsg(26917))


class TestPointCloud:
    """Container operations."""

    def test_subset_keeps_attributes(self):
        cloud = _cloud()
        sub = cloud.subset(cloud.x < 25)
        assert len(sub) == int((cloud.x < 25).sum())
        assert len(sub.attributes["intensity"]) == len(sub)
        assert sub.crs == cloud.crs

    def test_empty(self):
        cloud = PointCloud.empty()
        assert len(cloud) == 0
        assert cloud.bounds() is None

    def test_concatenate_common_attributes(self):
        a = _cloud(10)
        b = PointCloud(xyz=np.zeros((5, 3)), attributes={"classification": np.ones(5, dtype=np.uint8)})
        merged = PointCloud.concatenate([a, b])
        assert len(merged) == 15
        assert merged.attributes == {}
        assert merged.crs.epsg == 26917

    def test_bounds(self):
        cloud = PointCloud(xyz=np.array([[1.0, 2.0, 0.0], [3.0, -1.0, 5.0]]))
        assert cloud.bounds() == (1.0, -1.0, 3.0, 2.0)

    def test_write_las(self, tmp_path):
        cloud = _cloud()
        cloud.attributes["height_above_ground"] = np.linspace(0, 1, len(cloud)).astype(np.float32)
        path = cloud.write_las(tmp_path / "out" / "cloud.las")

        las = laspy.read(str(path))
        assert len(las.points) == len(cloud)
        np.testing.assert_allclose(las.x, cloud.x, atol=1e-3)
        np.testing.assert_array_equal(np.asarray(las.intensity), cloud.attributes["intensity"])
        assert "height_above_ground" in las.point_format.extra_dimension_names
        assert get_crs(path).epsg == 26917


class TestLasTileReader:
    """Chunked laspy reads."""

    def test_read_single_tile(self, tile_dir):
        cloud = LasTileReader().read([tile_dir / tile_name(0, 0)])
        assert len(cloud) == 51 * 51
        assert cloud.bounds() == pytest.approx((0.0, 0.0, 100.0, 100.0))
        assert cloud.crs.epsg == 26917
        assert cloud.attributes == {}

    def test_read_merges_tiles(self, tile_dir):
        paths = [tile_dir / tile_name(0, 0), tile_dir / tile_name(1, 0)]
        cloud = LasTileReader().read(paths)
        assert len(cloud) == 2 * 51 * 51
        assert cloud.bounds() == pytest.approx((0.0, 0.0, 200.0, 100.0))

    def test_small_chunks(self, tile_dir):
        path = tile_dir / tile_name(0, 0)
        whole = LasTileReader().read([path], ReaderOptions(select=("intensity",)))
        chunked = LasTileReader().read([path], ReaderOptions(select=("intensity",), chunk_size=100))
        np.testing.assert_array_equal(whole.xyz, chunked.xyz)
        np.testing.assert_array_equal(whole.attributes["intensity"], chunked.attributes["intensity"])

    def test_select_all(self, tile_dir):
        cloud = LasTileReader().read([tile_dir / tile_name(0, 0)], ReaderOptions(select=("*",)))
        assert "intensity" in cloud.attributes
        assert "classification" in cloud.attributes
        assert (cloud.attributes["classification"] == 2).all()

    def test_unknown_dimension_ignored(self, tile_dir):
        cloud = LasTileReader().read([tile_dir / tile_name(0, 0)], ReaderOptions(select=("nope",)))
        assert cloud.attributes == {}

    def test_empty_tile_keeps_dimension_dtypes(self, tile_dir, tmp_path):
        empty = tmp_path / "empty.las"
        header = laspy.LasHeader(point_format=3, version="1.2")
        with laspy.open(str(empty), mode="w", header=header):
            pass

        options = ReaderOptions(select=("intensity", "classification"))
        cloud = LasTileReader().read([empty], options)
        assert len(cloud) == 0
        assert cloud.attributes["intensity"].dtype == np.uint16
        assert cloud.attributes["classification"].dtype == np.uint8

        merged = LasTileReader().read([empty, tile_dir / tile_name(0, 0)], options)
        assert len(merged) == 51 * 51
        assert merged.attributes["intensity"].dtype == np.uint16
        assert not np.issubdtype(merged.attributes["classification"].dtype, np.floating)

    def test_corrupt_tile(self, tmp_path):
        bad = tmp_path / "bad.las"
        bad.write_bytes(b"garbage")
        with pytest.raises(TileReadFailure) as excinfo:
            LasTileReader().read([bad])
        assert excinfo.value.path == str(bad)

    def test_missing_tile(self, tmp_path):
        with pytest.raises(TileReadFailure):
            LasTileReader().read([tmp_path / "missing.las"])


class TestClipper:
    """KD-tree clip matches the brute force shape test."""

    @pytest.mark.parametrize("roi", [
        Roi.circle("c", 20, 20, 7.5),
        Roi.rectangle("r", 20, 20, 10, 3),
        Roi.circle("edge", 0, 0, 5),
    ])
    def test_prepared_matches_brute_force(self, roi):
        cloud = _cloud(2000, seed=3)
        prepared = ShapeClipper().prepare(cloud)
        fast = prepared.clip(roi)
        slow = clip_roi(cloud, roi)
        np.testing.assert_array_equal(np.sort(fast.attributes["intensity"]),
                                      np.sort(slow.attributes["intensity"]))

    def test_grid_boundary_points_included(self):
        coords = np.arange(0.0, 11.0, 1.0)
        gx, gy = np.meshgrid(coords, coords)
        cloud = PointCloud(xyz=np.column_stack([gx.ravel(), gy.ravel(), np.zeros(gx.size)]))
        clipped = PreparedClip(cloud).clip(Roi.circle("c", 5, 5, 3))
        # lattice points with dx^2 + dy^2 <= 9
        assert len(clipped) == 29

    def test_empty_cloud(self):
        clipped = PreparedClip(PointCloud.empty()).clip(Roi.circle("c", 0, 0, 1))
        assert len(clipped) == 0
