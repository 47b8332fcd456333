"""Tests for the tile header reference system codec."""

import laspy
import pytest
from laspy.vlrs.known import GeoKeyDirectoryVlr, WktCoordinateSystemVlr
from pyproj import CRS

from roi_catalog.crs import (
    GEO_KEY_DIRECTORY_RECORD,
    GEOGRAPHIC_TYPE_KEY,
    PROJECTED_CS_TYPE_KEY,
    UNDEFINED,
    WKT_COORDINATE_SYSTEM_RECORD,
    ReferenceSystem,
    describe,
    geo_key_directory,
    geo_key_values,
    get_crs,
    get_epsg,
    get_wkt,
    set_crs,
    set_epsg,
    set_wkt,
)
from roi_catalog.errors import InvalidReferenceSystem, TileReadFailure


ESRI_WKT_WITH_VERTCS = (
    'PROJCS["NAD_1983_UTM_Zone_17N",GEOGCS["GCS_North_American_1983",'
    'DATUM["D_North_American_1983",SPHEROID["GRS_1980",6378137.0,298.257222101]],'
    'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]],'
    'PROJECTION["Transverse_Mercator"],PARAMETER["False_Easting",500000.0],'
    'PARAMETER["False_Northing",0.0],PARAMETER["Central_Meridian",-81.0],'
    'PARAMETER["Scale_Factor",0.9996],PARAMETER["Latitude_Of_Origin",0.0],UNIT["Meter",1.0]],'
    'VERTCS["NAVD_1988",VDATUM["North_American_Vertical_Datum_1988"],'
    'PARAMETER["Vertical_Shift",0.0],PARAMETER["Direction",1.0],UNIT["Meter",1.0]]'
)


def _projection_record_ids(path):
    with laspy.open(str(path)) as f:
        return sorted(v.record_id for v in f.header.vlrs if v.user_id.rstrip("\x00") == "LASF_Projection")


class TestReferenceSystem:
    """Registry lookups and descriptor conversions."""

    def test_known_epsg(self):
        rs = ReferenceSystem.from_epsg(2008)
        assert rs.epsg == 2008
        assert not rs.undefined

    def test_epsg_derives_wkt1(self):
        rs = ReferenceSystem.from_epsg(26917)
        assert rs.wkt.startswith("PROJCS[")

    def test_unknown_epsg_permissive_is_undefined(self):
        assert ReferenceSystem.from_epsg(200800) is UNDEFINED
        assert ReferenceSystem.from_epsg(200800).undefined

    def test_unknown_epsg_strict_raises(self):
        with pytest.raises(InvalidReferenceSystem, match="200800"):
            ReferenceSystem.from_epsg(200800, strict=True)

    def test_invalid_wkt_permissive_is_undefined(self):
        assert ReferenceSystem.from_wkt("INVALID").undefined

    def test_invalid_wkt_strict_raises(self):
        with pytest.raises(InvalidReferenceSystem):
            ReferenceSystem.from_wkt("INVALID", strict=True)

    def test_esri_wkt_does_not_raise(self):
        rs = ReferenceSystem.from_wkt(ESRI_WKT_WITH_VERTCS)
        assert isinstance(rs, ReferenceSystem)

    def test_wkt_derives_epsg(self):
        wkt = CRS.from_epsg(26917).to_wkt()
        assert ReferenceSystem.from_wkt(wkt).epsg == 26917

    @pytest.mark.parametrize("value", [26917, "EPSG:26917", "epsg:26917", "26917", CRS.from_epsg(26917)])
    def test_from_user_input(self, value):
        assert ReferenceSystem.from_user_input(value).epsg == 26917

    def test_from_user_input_rejects_bool(self):
        with pytest.raises(TypeError):
            ReferenceSystem.from_user_input(True)

    def test_same_as_compares_epsg(self):
        a = ReferenceSystem.from_epsg(26917)
        b = ReferenceSystem(epsg=26917)
        assert a.same_as(b)
        assert not a.same_as(ReferenceSystem.from_epsg(4326))

    def test_str_and_describe(self):
        rs = ReferenceSystem.from_epsg(26917)
        assert str(rs) == "EPSG:26917"
        label, name = describe(rs)
        assert label == "EPSG:26917"
        assert "UTM zone 17N" in name
        assert describe(UNDEFINED) == ("undefined", "-")


class TestGeoKeys:
    """GeoKey directory records."""

    def _reparsed(self, record):
        parsed = GeoKeyDirectoryVlr()
        parsed.parse_record_data(bytearray(record.record_data_bytes()))
        return parsed

    def test_projected_code_in_projected_slot(self):
        record = geo_key_directory({PROJECTED_CS_TYPE_KEY: 26917, 1024: 1, 1025: 1})
        parsed = self._reparsed(record)
        assert geo_key_values(parsed) == {1024: 1, 1025: 1, PROJECTED_CS_TYPE_KEY: 26917}
        assert [entry.id for entry in parsed.geo_keys] == [1024, 1025, PROJECTED_CS_TYPE_KEY]

    def test_directory_header_fields(self):
        record = geo_key_directory({1024: 1})
        assert record.record_data_bytes()[:8] == b"\x01\x00\x01\x00\x00\x00\x01\x00"
        assert self._reparsed(record).geo_keys_header.number_of_keys == 1

    def test_laspy_reads_written_directory(self, epsg_tile):
        set_crs(epsg_tile, 26917)
        with laspy.open(str(epsg_tile)) as f:
            (record,) = [v for v in f.header.vlrs if isinstance(v, GeoKeyDirectoryVlr)]
            assert geo_key_values(record)[PROJECTED_CS_TYPE_KEY] == 26917
            assert f.header.parse_crs(prefer_wkt=False).to_epsg() == 26917

    def test_geographic_code_in_geographic_slot(self, epsg_tile):
        set_crs(epsg_tile, 4326)
        with laspy.open(str(epsg_tile)) as f:
            (record,) = [v for v in f.header.vlrs if isinstance(v, GeoKeyDirectoryVlr)]
        keys = geo_key_values(record)
        assert keys[GEOGRAPHIC_TYPE_KEY] == 4326
        assert PROJECTED_CS_TYPE_KEY not in keys

    def test_wkt_record_is_laspy_wkt_vlr(self, wkt_tile):
        set_crs(wkt_tile, 26917)
        with laspy.open(str(wkt_tile)) as f:
            (record,) = [v for v in f.header.vlrs if isinstance(v, WktCoordinateSystemVlr)]
        assert record.string.strip("\x00").startswith("PROJCS[")


class TestRoundTrip:
    """set then get, in both storage modes."""

    def test_epsg_mode(self, epsg_tile):
        assert set_crs(epsg_tile, 26917) is True
        assert get_epsg(epsg_tile) == 26917
        assert _projection_record_ids(epsg_tile) == [GEO_KEY_DIRECTORY_RECORD]

    def test_wkt_mode(self, wkt_tile):
        assert set_crs(wkt_tile, 26917) is True
        assert get_epsg(wkt_tile) == 26917
        assert get_wkt(wkt_tile).startswith("PROJCS[")
        assert _projection_record_ids(wkt_tile) == [WKT_COORDINATE_SYSTEM_RECORD]

    def test_wkt_mode_geographic(self, wkt_tile):
        set_crs(wkt_tile, 4326)
        assert get_wkt(wkt_tile).startswith("GEOGCS[")
        assert get_epsg(wkt_tile) == 4326

    def test_epsg_mode_geographic(self, epsg_tile):
        set_epsg(epsg_tile, 4326)
        assert get_epsg(epsg_tile) == 4326

    def test_wkt_descriptor_in_epsg_mode(self, epsg_tile):
        set_wkt(epsg_tile, CRS.from_epsg(26917).to_wkt())
        assert get_epsg(epsg_tile) == 26917

    def test_rewrite_replaces_record(self, epsg_tile):
        set_crs(epsg_tile, 26917)
        set_crs(epsg_tile, 32632)
        assert get_epsg(epsg_tile) == 32632
        assert _projection_record_ids(epsg_tile) == [GEO_KEY_DIRECTORY_RECORD]

    def test_in_memory_header(self):
        header = laspy.LasHeader(point_format=3, version="1.2")
        assert set_crs(header, "EPSG:26917")
        assert get_crs(header).epsg == 26917

    def test_points_untouched(self, epsg_tile):
        before = laspy.read(str(epsg_tile))
        set_crs(epsg_tile, 26917)
        after = laspy.read(str(epsg_tile))
        assert len(after.points) == len(before.points)
        assert (after.x == before.x).all()


class TestPermissiveAndStrict:
    """Descriptors that cannot be stored."""

    def test_tile_without_records_is_undefined(self, epsg_tile):
        assert get_crs(epsg_tile) is UNDEFINED

    def test_unknown_epsg_permissive_leaves_header(self, epsg_tile, capsys):
        assert set_epsg(epsg_tile, 200800) is False
        assert get_crs(epsg_tile).undefined
        assert "Warning" in capsys.readouterr().err

    def test_unknown_epsg_strict_raises(self, epsg_tile):
        with pytest.raises(InvalidReferenceSystem):
            set_epsg(epsg_tile, 200800, strict=True)

    def test_undefined_descriptor_strict_raises(self, epsg_tile):
        with pytest.raises(InvalidReferenceSystem):
            set_crs(epsg_tile, UNDEFINED, strict=True)

    def test_invalid_wkt_strict_raises(self, wkt_tile):
        with pytest.raises(InvalidReferenceSystem):
            set_wkt(wkt_tile, "INVALID", strict=True)

    def test_missing_file(self, tmp_path):
        with pytest.raises(TileReadFailure):
            get_crs(tmp_path / "missing.las")


def _store_record(path, record):
    las = laspy.read(str(path))
    las.header.vlrs.append(record)
    las.write(str(path))


class TestStoredUnknownRecords:
    """Reading tiles whose stored georeferencing is unknown to the registry."""

    def test_unregistered_geo_key_permissive_is_undefined(self, epsg_tile):
        _store_record(epsg_tile, geo_key_directory({1024: 1, PROJECTED_CS_TYPE_KEY: 60000}))
        assert get_crs(epsg_tile).undefined
        assert get_epsg(epsg_tile) is None

    def test_unregistered_geo_key_strict_raises(self, epsg_tile):
        _store_record(epsg_tile, geo_key_directory({1024: 1, PROJECTED_CS_TYPE_KEY: 60000}))
        with pytest.raises(InvalidReferenceSystem, match="60000"):
            get_crs(epsg_tile, strict=True)

    def test_invalid_stored_wkt_permissive_is_undefined(self, wkt_tile):
        _store_record(wkt_tile, WktCoordinateSystemVlr("INVALID"))
        assert get_crs(wkt_tile).undefined
        assert get_wkt(wkt_tile) is None

    def test_invalid_stored_wkt_strict_raises(self, wkt_tile):
        _store_record(wkt_tile, WktCoordinateSystemVlr("INVALID"))
        with pytest.raises(InvalidReferenceSystem, match="INVALID"):
            get_crs(wkt_tile, strict=True)

    def test_valid_geo_key_used_when_wkt_record_is_broken(self, wkt_tile):
        _store_record(wkt_tile, WktCoordinateSystemVlr("INVALID"))
        _store_record(wkt_tile, geo_key_directory({1024: 1, PROJECTED_CS_TYPE_KEY: 26917}))
        assert get_epsg(wkt_tile, strict=True) == 26917
