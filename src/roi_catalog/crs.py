"""
Coordinate reference system codec for LAS/LAZ tile headers.

A tile header stores its georeferencing in one of two kinds of
LASF_Projection records:

- a GeoTIFF GeoKey directory (record 34735), where the EPSG code sits in a
  fixed 16-bit key slot (ProjectedCSTypeGeoKey or GeographicTypeGeoKey);
- an OGC coordinate system WKT record (record 2112), free text starting with
  PROJCS[ or GEOGCS[.

Both are handled as laspy known VLRs. Which one a tile uses is decided by
the WKT bit of the header global encoding. EPSG <-> WKT conversions are
lookups in the pyproj database.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import laspy
from laspy.vlrs.known import (
    GeoKeyDirectoryVlr,
    GeoKeyEntryStruct,
    GeoKeysHeaderStructs,
    WktCoordinateSystemVlr,
    WktMathTransformVlr,
)
from pyproj import CRS
from pyproj.enums import WktVersion
from pyproj.exceptions import CRSError

from .errors import InvalidReferenceSystem, TileReadFailure


PROJECTION_USER_ID = "LASF_Projection"
GEO_KEY_DIRECTORY_RECORD = 34735
GEO_DOUBLE_PARAMS_RECORD = 34736
GEO_ASCII_PARAMS_RECORD = 34737
WKT_MATH_TRANSFORM_RECORD = 2111
WKT_COORDINATE_SYSTEM_RECORD = 2112

GEOREFERENCE_RECORDS = {
    GEO_KEY_DIRECTORY_RECORD,
    GEO_DOUBLE_PARAMS_RECORD,
    GEO_ASCII_PARAMS_RECORD,
    WKT_MATH_TRANSFORM_RECORD,
    WKT_COORDINATE_SYSTEM_RECORD,
}

# GeoTIFF keys
GT_MODEL_TYPE_KEY = 1024
GT_RASTER_TYPE_KEY = 1025
GEOGRAPHIC_TYPE_KEY = 2048
GEOG_ANGULAR_UNITS_KEY = 2054
PROJECTED_CS_TYPE_KEY = 3072
PROJ_LINEAR_UNITS_KEY = 3076

MODEL_TYPE_PROJECTED = 1
MODEL_TYPE_GEOGRAPHIC = 2
RASTER_PIXEL_IS_AREA = 1
USER_DEFINED = 32767
MAX_GEO_KEY_VALUE = 0xFFFF

WKT1_PREFIXES = ("PROJCS[", "GEOGCS[")


@dataclass(frozen=True)
class ReferenceSystem:
    """
    Reference system descriptor: an EPSG code, a WKT string, both, or neither.

    A descriptor with neither is "undefined". EPSG and WKT are filled in from
    each other whenever the registry allows it.
    """

    epsg: Optional[int] = None
    wkt: Optional[str] = None

    @property
    def undefined(self) -> bool:
        return self.epsg is None and not self.wkt

    @classmethod
    def from_epsg(cls, code, strict: bool = False) -> "ReferenceSystem":
        """Look up an EPSG code. Unknown codes give UNDEFINED or raise in strict mode."""
        try:
            code = int(code)
            crs = CRS.from_epsg(code)
        except (CRSError, TypeError, ValueError) as e:
            if strict:
                raise InvalidReferenceSystem(f"Invalid epsg code: {code}") from e
            return UNDEFINED
        return cls(epsg=code, wkt=_to_wkt1(crs))

    @classmethod
    def from_wkt(cls, text, strict: bool = False) -> "ReferenceSystem":
        """Parse WKT text. Unparsable text gives UNDEFINED or raises in strict mode."""
        text = (text or "").strip().strip("\x00").strip()
        try:
            crs = CRS.from_wkt(text)
        except (CRSError, TypeError) as e:
            if strict:
                raise InvalidReferenceSystem(f"Invalid WKT: {_shorten(text)}") from e
            return UNDEFINED
        return cls(epsg=crs.to_epsg(), wkt=text)

    @classmethod
    def from_crs(cls, crs: CRS) -> "ReferenceSystem":
        return cls(epsg=crs.to_epsg(), wkt=_to_wkt1(crs))

    @classmethod
    def from_user_input(cls, value, strict: bool = False) -> "ReferenceSystem":
        """
        Build a descriptor from an int, "EPSG:n", a WKT string, a pyproj CRS
        or another descriptor.
        """
        if isinstance(value, ReferenceSystem):
            return value
        if value is None:
            if strict:
                raise InvalidReferenceSystem("No reference system given")
            return UNDEFINED
        if isinstance(value, CRS):
            return cls.from_crs(value)
        if isinstance(value, bool):
            raise TypeError(f"Cannot build a reference system from {value!r}")
        if isinstance(value, int):
            return cls.from_epsg(value, strict=strict)
        if isinstance(value, str):
            text = value.strip()
            if text.upper().startswith("EPSG:"):
                return cls.from_epsg(text[5:].strip(), strict=strict)
            if text.isdigit():
                return cls.from_epsg(text, strict=strict)
            return cls.from_wkt(text, strict=strict)
        raise TypeError(f"Cannot build a reference system from {type(value).__name__}")

    def to_crs(self) -> Optional[CRS]:
        if self.epsg is not None:
            return CRS.from_epsg(self.epsg)
        if self.wkt:
            return CRS.from_wkt(self.wkt)
        return None

    def same_as(self, other: "ReferenceSystem") -> bool:
        """Compare by EPSG code when both have one, by WKT text otherwise."""
        if self.epsg is not None and other.epsg is not None:
            return self.epsg == other.epsg
        return self.epsg == other.epsg and self.wkt == other.wkt

    def __str__(self) -> str:
        if self.epsg is not None:
            return f"EPSG:{self.epsg}"
        if self.wkt:
            return f"WKT({_shorten(self.wkt)})"
        return "undefined"


UNDEFINED = ReferenceSystem()


def _horizontal(crs: CRS) -> CRS:
    if crs.is_compound:
        for sub in crs.sub_crs_list:
            if sub.is_projected or sub.is_geographic:
                return sub
    return crs


def _to_wkt1(crs: CRS) -> Optional[str]:
    return _horizontal(crs).to_wkt(WktVersion.WKT1_GDAL)


def _shorten(text: str, width: int = 60) -> str:
    return text if len(text) <= width else text[:width - 3] + "..."


# =============================================================================
# GeoKey directory records
# =============================================================================


def geo_key_directory(keys: Dict[int, int]) -> GeoKeyDirectoryVlr:
    """
    Build a GeoKey directory record from inline key values.

    Entries are sorted by key id as GeoTIFF requires, and all of them are
    stored inline (tiff_tag_location == 0, count == 1).

    Args:
        keys: Dictionary {key_id: value}, values must fit 16 bits

    Returns:
        laspy GeoKeyDirectoryVlr
    """
    entries = []
    for key_id, value in sorted(keys.items()):
        entry = GeoKeyEntryStruct()
        entry.id = key_id
        entry.tiff_tag_location = 0
        entry.count = 1
        entry.value_offset = value
        entries.append(entry)

    directory_header = GeoKeysHeaderStructs()
    directory_header.key_directory_version = 1
    directory_header.key_revision = 1
    directory_header.minor_revision = 0
    directory_header.number_of_keys = len(entries)

    record = GeoKeyDirectoryVlr()
    record.geo_keys_header = directory_header
    record.geo_keys = entries
    return record


def geo_key_values(record: GeoKeyDirectoryVlr) -> Dict[int, int]:
    """Inline entries of a GeoKey directory record as {key_id: value}."""
    return {
        entry.id: entry.value_offset
        for entry in record.geo_keys
        if entry.tiff_tag_location == 0
    }


def _geo_key_code(record: GeoKeyDirectoryVlr) -> Optional[int]:
    keys = geo_key_values(record)
    for key_id in (PROJECTED_CS_TYPE_KEY, GEOGRAPHIC_TYPE_KEY):
        code = keys.get(key_id)
        if code and code != USER_DEFINED:
            return code
    return None


def _geo_keys_for(descriptor: ReferenceSystem) -> Dict[int, int]:
    code = descriptor.epsg
    crs = descriptor.to_crs()
    keys = {GT_RASTER_TYPE_KEY: RASTER_PIXEL_IS_AREA}

    if crs is not None and crs.is_geographic:
        keys[GT_MODEL_TYPE_KEY] = MODEL_TYPE_GEOGRAPHIC
        keys[GEOGRAPHIC_TYPE_KEY] = code
        unit = _unit_code(crs)
        if unit is not None:
            keys[GEOG_ANGULAR_UNITS_KEY] = unit
    else:
        keys[GT_MODEL_TYPE_KEY] = MODEL_TYPE_PROJECTED
        keys[PROJECTED_CS_TYPE_KEY] = code
        unit = _unit_code(crs) if crs is not None else None
        if unit is not None:
            keys[PROJ_LINEAR_UNITS_KEY] = unit
    return keys


def _unit_code(crs: CRS) -> Optional[int]:
    axes = _horizontal(crs).axis_info
    if not axes:
        return None
    code = axes[0].unit_code
    if code and str(code).isdigit() and int(code) <= MAX_GEO_KEY_VALUE:
        return int(code)
    return None


# =============================================================================
# Header access
# =============================================================================


def _header_of(tile) -> laspy.LasHeader:
    """Return the header of a LasHeader, LasData, TileRef or file path."""
    if isinstance(tile, laspy.LasHeader):
        return tile
    if isinstance(tile, laspy.LasData):
        return tile.header
    path = getattr(tile, "path", tile)
    try:
        with laspy.open(str(path)) as reader:
            return reader.header
    except (OSError, laspy.LaspyException) as e:
        raise TileReadFailure(path, e) from e


def _projection_records(header: laspy.LasHeader) -> List:
    records = list(header.vlrs)
    evlrs = getattr(header, "evlrs", None)
    if evlrs:
        records.extend(evlrs)
    return [
        r for r in records
        if isinstance(r, (GeoKeyDirectoryVlr, WktCoordinateSystemVlr, WktMathTransformVlr))
    ]


def _is_wkt_mode(header: laspy.LasHeader) -> bool:
    return bool(header.global_encoding.wkt)


def _wkt_text(record) -> str:
    return (record.string or "").strip("\x00").strip()


def _parse_records(header: laspy.LasHeader) -> Optional[CRS]:
    """
    Parse the header's georeferencing with laspy, preferring the record
    that matches the storage mode.

    laspy gives up on the whole header when one record fails to parse, so
    in that case each record is parsed on its own and the first usable one
    is kept.
    """
    try:
        return header.parse_crs(prefer_wkt=_is_wkt_mode(header))
    except CRSError:
        pass

    records = [r for r in _projection_records(header) if not isinstance(r, WktMathTransformVlr)]
    if _is_wkt_mode(header):
        records.sort(key=lambda r: not isinstance(r, WktCoordinateSystemVlr))
    for record in records:
        try:
            crs = record.parse_crs()
        except CRSError:
            continue
        if crs is not None:
            return crs
    return None


def _stored_georeference(header: laspy.LasHeader) -> Optional[str]:
    """Describe what the header stores when none of it parses, for error messages."""
    for record in _projection_records(header):
        if isinstance(record, GeoKeyDirectoryVlr):
            code = _geo_key_code(record)
            if code is not None:
                return f"epsg code: {code}"
        elif _wkt_text(record):
            return f"WKT: {_shorten(_wkt_text(record))}"
    return None


# =============================================================================
# Public API
# =============================================================================


def get_crs(tile, strict: bool = False) -> ReferenceSystem:
    """
    Read the reference system of a tile.

    The record matching the header's storage mode is preferred (WKT record
    when the global encoding WKT bit is set, GeoKey directory otherwise);
    the other record is used when the preferred one is missing or broken.
    WKT text that laspy cannot hand to pyproj as stored (trailing nulls,
    legacy math transform record 2111) is cleaned up and parsed last.

    Args:
        tile: Path, TileRef, laspy.LasHeader or laspy.LasData
        strict: Raise InvalidReferenceSystem when the stored EPSG code or
            WKT text is unknown to the registry

    Returns:
        ReferenceSystem (UNDEFINED when the header carries no usable record)
    """
    header = _header_of(tile)

    crs = _parse_records(header)
    if crs is not None:
        return ReferenceSystem.from_crs(crs)

    for record in _projection_records(header):
        if not isinstance(record, GeoKeyDirectoryVlr) and _wkt_text(record):
            descriptor = ReferenceSystem.from_wkt(record.string)
            if not descriptor.undefined:
                return descriptor

    stored = _stored_georeference(header)
    if stored is not None and strict:
        raise InvalidReferenceSystem(f"Invalid {stored}")
    return UNDEFINED


def get_epsg(tile, strict: bool = False) -> Optional[int]:
    return get_crs(tile, strict=strict).epsg


def get_wkt(tile, strict: bool = False) -> Optional[str]:
    return get_crs(tile, strict=strict).wkt


def _reject(message: str, strict: bool) -> bool:
    if strict:
        raise InvalidReferenceSystem(message)
    print(f"  ⚠ Warning: {message}; header left unchanged", file=sys.stderr)
    return False


def _remove_georeference_records(header: laspy.LasHeader) -> None:
    for records in (header.vlrs, getattr(header, "evlrs", None)):
        if not records:
            continue
        for i in reversed(range(len(records))):
            record = records[i]
            if (record.user_id.rstrip("\x00") == PROJECTION_USER_ID
                    and record.record_id in GEOREFERENCE_RECORDS):
                del records[i]


def _write_records(header: laspy.LasHeader, descriptor: ReferenceSystem, strict: bool) -> bool:
    if descriptor.undefined:
        return _reject("Reference system is undefined", strict)

    if _is_wkt_mode(header):
        wkt = descriptor.wkt
        if not wkt or not wkt.startswith(WKT1_PREFIXES):
            crs = descriptor.to_crs()
            wkt = _to_wkt1(crs) if crs is not None else None
        if not wkt or not wkt.startswith(WKT1_PREFIXES):
            return _reject(f"{descriptor} has no PROJCS/GEOGCS WKT form", strict)
        record = WktCoordinateSystemVlr(wkt)
    else:
        if descriptor.epsg is None:
            return _reject(f"{descriptor} has no EPSG code to store in a GeoKey directory", strict)
        if descriptor.epsg > MAX_GEO_KEY_VALUE:
            return _reject(f"EPSG code {descriptor.epsg} does not fit a 16-bit GeoKey slot", strict)
        record = geo_key_directory(_geo_keys_for(descriptor))

    _remove_georeference_records(header)
    header.vlrs.append(record)
    return True


def set_crs(tile, descriptor, strict: bool = False) -> bool:
    """
    Write a reference system into a tile header, in the tile's storage mode.

    WKT-mode tiles get an OGC WKT record (PROJCS[...] or GEOGCS[...]); other
    tiles get a GeoKey directory holding the EPSG code. Existing
    georeferencing records are replaced. Paths are rewritten in place.

    Args:
        tile: Path, TileRef, laspy.LasHeader or laspy.LasData
        descriptor: ReferenceSystem, EPSG int, "EPSG:n", WKT text or pyproj CRS
        strict: Raise InvalidReferenceSystem instead of warning when the
            descriptor is undefined or cannot be stored in this mode

    Returns:
        True if the header was modified
    """
    descriptor = ReferenceSystem.from_user_input(descriptor, strict=strict)

    if isinstance(tile, (laspy.LasHeader, laspy.LasData)):
        return _write_records(_header_of(tile), descriptor, strict)

    path = Path(getattr(tile, "path", tile))
    try:
        las = laspy.read(str(path))
    except (OSError, laspy.LaspyException) as e:
        raise TileReadFailure(path, e) from e

    if not _write_records(las.header, descriptor, strict):
        return False
    las.write(str(path))
    return True


def set_epsg(tile, code, strict: bool = False) -> bool:
    return set_crs(tile, ReferenceSystem.from_epsg(code, strict=strict), strict=strict)


def set_wkt(tile, text: str, strict: bool = False) -> bool:
    return set_crs(tile, ReferenceSystem.from_wkt(text, strict=strict), strict=strict)


def describe(descriptor: ReferenceSystem) -> Tuple[str, str]:
    """Return (label, name) for printing, e.g. ("EPSG:26917", "NAD83 / UTM zone 17N")."""
    crs = descriptor.to_crs() if not descriptor.undefined else None
    return str(descriptor), (crs.name if crs is not None else "-")
