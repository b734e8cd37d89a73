"""trial_ingest.gis

Geospatial Layer Normalizer: GeoJSON / KML / KMZ / shapefile -> sanitized
GeoJSON layers. Pure transform; callers persist layers themselves.

File type is decided by extension alone. Every path ends in
sanitize_features(), which drops features a renderer would choke on.

A zipped shapefile bundle may hold several .shp members; each becomes its
own layer named "<upload stem> - <member path without extension>", so same-named
members in different folders stay distinct.
"""

from __future__ import annotations

import codecs
import io
import json
import logging
import math
import struct
import zipfile
import zlib
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import PurePosixPath
from typing import Any, Union

import shapefile

from trial_ingest.kml import kml_to_geojson
from trial_ingest.shared import GISFormatError

log = logging.getLogger(__name__)

FILE_GEOJSON = "geojson"
FILE_KML = "kml"
FILE_KMZ = "kmz"
FILE_SHAPEFILE = "shapefile"

GIS_EXTENSIONS: dict[str, str] = {
    ".geojson": FILE_GEOJSON,
    ".kml": FILE_KML,
    ".kmz": FILE_KMZ,
    ".shp": FILE_SHAPEFILE,
    ".zip": FILE_SHAPEFILE,
}

VALID_GEOMETRY_TYPES = frozenset({
    "Point",
    "MultiPoint",
    "LineString",
    "MultiLineString",
    "Polygon",
    "MultiPolygon",
    "GeometryCollection",
})

SHAPEFILE_PARTS = frozenset({".shp", ".shx", ".dbf", ".prj", ".cpg"})


@dataclass(frozen=True)
class GISLayer:
    name: str
    file_type: str
    feature_collection: dict[str, Any]
    features_in: int
    feature_count: int
    source_filename: str
    crs_wkt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "file_type": self.file_type,
            "features_in": self.features_in,
            "feature_count": self.feature_count,
            "source_filename": self.source_filename,
            "crs_wkt": self.crs_wkt,
        }


def detect_gis_file_type(filename: str) -> str | None:
    """Return the GIS file type for filename's extension, or None."""
    return GIS_EXTENSIONS.get(PurePosixPath(filename.lower()).suffix)


# ---------------------------------------------------------------------------
# Geometry validation + sanitization
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_position(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= 2
        and all(_is_number(c) for c in value)
    )


def _is_positions(value: Any, min_len: int) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= min_len
        and all(_is_position(p) for p in value)
    )


def _is_polygon(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= 1
        and all(_is_positions(ring, 4) for ring in value)
    )


def _is_non_empty_of(value: Any, check) -> bool:
    return isinstance(value, (list, tuple)) and len(value) >= 1 and all(check(v) for v in value)


_COORDINATE_CHECKS = {
    "Point": _is_position,
    "MultiPoint": lambda c: _is_non_empty_of(c, _is_position),
    "LineString": lambda c: _is_positions(c, 2),
    "MultiLineString": lambda c: _is_non_empty_of(c, lambda line: _is_positions(line, 2)),
    "Polygon": _is_polygon,
    "MultiPolygon": lambda c: _is_non_empty_of(c, _is_polygon),
}


def is_valid_geometry(geometry: Any) -> bool:
    """True if geometry is a supported, well-formed GeoJSON geometry.

    GeometryCollections must be non-empty and every member must be valid.
    """
    if not isinstance(geometry, dict):
        return False
    gtype = geometry.get("type")
    if gtype not in VALID_GEOMETRY_TYPES:
        return False
    if gtype == "GeometryCollection":
        members = geometry.get("geometries")
        return _is_non_empty_of(members, is_valid_geometry)
    return _COORDINATE_CHECKS[gtype](geometry.get("coordinates"))


def sanitize_features(collection: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of collection keeping only Features with valid geometry."""
    features = collection.get("features") or []
    clean = [
        f for f in features
        if isinstance(f, dict) and f.get("type") == "Feature" and is_valid_geometry(f.get("geometry"))
    ]
    return {**collection, "type": "FeatureCollection", "features": clean}


# ---------------------------------------------------------------------------
# GeoJSON / KML / KMZ
# ---------------------------------------------------------------------------

def _decode(content: bytes | str) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise GISFormatError(f"File is not valid UTF-8 text: {exc}") from exc


def parse_geojson(content: bytes | str) -> dict[str, Any]:
    """Parse GeoJSON text; wrap a bare Feature or geometry in a collection."""
    try:
        parsed = json.loads(_decode(content))
    except json.JSONDecodeError as exc:
        raise GISFormatError(f"File is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise GISFormatError("File does not contain a valid GeoJSON object.")

    gtype = parsed.get("type")
    if gtype == "FeatureCollection":
        if not isinstance(parsed.get("features"), list):
            raise GISFormatError("FeatureCollection has no 'features' array.")
        return parsed
    if gtype == "Feature":
        return {"type": "FeatureCollection", "features": [parsed]}
    if gtype not in VALID_GEOMETRY_TYPES:
        raise GISFormatError(
            f"Unsupported or invalid GeoJSON geometry type '{gtype or 'unknown'}'."
        )
    return {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": parsed, "properties": {}}],
    }


def _open_zip(content: bytes, label: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise GISFormatError(f"{label} is not a valid zip archive: {exc}") from exc


def _zip_members(archive: zipfile.ZipFile) -> list[str]:
    return [
        n for n in archive.namelist()
        if not n.endswith("/") and not n.startswith("__MACOSX/")
    ]


def _read_member(archive: zipfile.ZipFile, name: str) -> bytes:
    # A readable central directory says nothing about the member data itself.
    try:
        return archive.read(name)
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as exc:
        raise GISFormatError(f"Archive member {name} is corrupt: {exc}") from exc


def parse_kmz(content: bytes) -> dict[str, Any]:
    """Unzip and convert the first .kml member."""
    with _open_zip(content, "KMZ") as archive:
        member = next((n for n in _zip_members(archive) if n.lower().endswith(".kml")), None)
        if member is None:
            raise GISFormatError("No .kml file found inside KMZ archive")
        return kml_to_geojson(_read_member(archive, member))


# ---------------------------------------------------------------------------
# Shapefile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DecodedShapefile:
    member: str
    feature_collection: dict[str, Any]
    crs_wkt: str | None = None


@dataclass(frozen=True)
class OneLayer:
    shapefile: DecodedShapefile


@dataclass(frozen=True)
class ManyLayers:
    shapefiles: list[DecodedShapefile]


ShapefileResult = Union[OneLayer, ManyLayers]


def _json_value(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _as_lists(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_as_lists(v) for v in value]
    if isinstance(value, dict):
        return {k: _as_lists(v) for k, v in value.items()}
    return value


def _shape_geometry(shape: shapefile.Shape) -> dict[str, Any] | None:
    if shape.shapeType == shapefile.NULL:
        return None
    try:
        return _as_lists(shape.__geo_interface__)
    except Exception as exc:  # noqa: BLE001  pyshp raises bare Exception for unsupported shapes
        log.debug("Dropping shape that has no GeoJSON form: %s", exc)
        return None


def _bundle_encoding(parts: dict[str, bytes]) -> str:
    declared = parts.get(".cpg", b"").decode("ascii", errors="ignore").strip()
    if not declared:
        return "utf-8"
    try:
        return codecs.lookup(declared).name
    except LookupError:
        log.warning("Unknown .cpg encoding %r; reading attributes as utf-8", declared)
        return "utf-8"


def decode_shapefile(member: str, parts: dict[str, bytes]) -> DecodedShapefile:
    """Decode one .shp (+ optional .shx/.dbf/.prj/.cpg) bundle.

    parts is keyed by lower-case extension.
    """
    streams = {
        ext.lstrip("."): io.BytesIO(parts[ext])
        for ext in (".shp", ".shx", ".dbf")
        if ext in parts
    }
    try:
        with shapefile.Reader(
            **streams,
            encoding=_bundle_encoding(parts),
            encodingErrors="replace",
        ) as reader:
            if "dbf" in streams:
                features = [
                    {
                        "type": "Feature",
                        "geometry": _shape_geometry(sr.shape),
                        "properties": {k: _json_value(v) for k, v in sr.record.as_dict().items()},
                    }
                    for sr in reader.iterShapeRecords()
                ]
            else:
                features = [
                    {"type": "Feature", "geometry": _shape_geometry(shape), "properties": {}}
                    for shape in reader.iterShapes()
                ]
    except (shapefile.ShapefileException, struct.error, ValueError, IndexError, OSError) as exc:
        raise GISFormatError(f"Could not decode shapefile {member}: {exc}") from exc

    crs_wkt = parts[".prj"].decode("utf-8", errors="replace").strip() if ".prj" in parts else None
    return DecodedShapefile(
        member=member,
        feature_collection={"type": "FeatureCollection", "features": features},
        crs_wkt=crs_wkt or None,
    )


def _group_bundles(archive: zipfile.ZipFile) -> dict[str, dict[str, bytes]]:
    """Group archive members by path stem: {stem: {ext: bytes}}."""
    bundles: dict[str, dict[str, bytes]] = {}
    for name in _zip_members(archive):
        path = PurePosixPath(name)
        ext = path.suffix.lower()
        if ext not in SHAPEFILE_PARTS:
            continue
        stem = str(path.with_suffix(""))
        bundles.setdefault(stem, {})[ext] = _read_member(archive, name)
    return {stem: parts for stem, parts in sorted(bundles.items()) if ".shp" in parts}


def parse_shapefile(filename: str, content: bytes) -> ShapefileResult:
    """Decode a bare .shp or a zipped bundle of one or more shapefiles."""
    if PurePosixPath(filename.lower()).suffix == ".shp":
        return OneLayer(decode_shapefile(PurePosixPath(filename).stem, {".shp": content}))

    with _open_zip(content, "Shapefile archive") as archive:
        bundles = _group_bundles(archive)
    if not bundles:
        raise GISFormatError("No .shp file found in archive")

    decoded = [decode_shapefile(stem, parts) for stem, parts in bundles.items()]
    if len(decoded) == 1:
        return OneLayer(decoded[0])
    return ManyLayers(decoded)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _layer(
    name: str,
    file_type: str,
    collection: dict[str, Any],
    filename: str,
    crs_wkt: str | None = None,
) -> GISLayer:
    features_in = len(collection.get("features") or [])
    clean = sanitize_features(collection)
    kept = len(clean["features"])
    if kept < features_in:
        log.info("%s: dropped %d of %d features with invalid geometry",
                 name, features_in - kept, features_in)
    return GISLayer(
        name=name,
        file_type=file_type,
        feature_collection=clean,
        features_in=features_in,
        feature_count=kept,
        source_filename=filename,
        crs_wkt=crs_wkt,
    )


def normalize_gis_file(filename: str, content: bytes | str) -> list[GISLayer]:
    """Parse and sanitize a GIS upload into one or more named layers.

    Raises:
        GISFormatError: Unsupported extension or unparseable content.
    """
    file_type = detect_gis_file_type(filename)
    if file_type is None:
        raise GISFormatError(
            f"Unsupported GIS file type: {filename}. "
            f"Accepted: {', '.join(sorted(GIS_EXTENSIONS))}"
        )
    stem = PurePosixPath(filename).stem

    if file_type == FILE_GEOJSON:
        return [_layer(stem, file_type, parse_geojson(content), filename)]
    if file_type == FILE_KML:
        return [_layer(stem, file_type, kml_to_geojson(content), filename)]

    if isinstance(content, str):
        raise GISFormatError(f"{file_type} content must be bytes")
    if file_type == FILE_KMZ:
        return [_layer(stem, file_type, parse_kmz(content), filename)]

    result = parse_shapefile(filename, content)
    if isinstance(result, OneLayer):
        shp = result.shapefile
        return [_layer(stem, file_type, shp.feature_collection, filename, shp.crs_wkt)]
    # member is the archive path minus extension, unique per bundle
    return [
        _layer(
            f"{stem} - {shp.member}",
            file_type, shp.feature_collection, filename, shp.crs_wkt,
        )
        for shp in result.shapefiles
    ]
