"""trial_ingest.kml

KML document -> GeoJSON FeatureCollection.

Every Placemark at any Folder/Document depth becomes one Feature. Supported
geometry: Point, LineString, LinearRing (as LineString), Polygon with inner
rings, MultiGeometry. Placemarks without a supported geometry come back with
geometry None and are left for the sanitizer to drop.

Namespaces are ignored so KML 2.1, 2.2 and un-namespaced files all work.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any

from trial_ingest.shared import GISFormatError

log = logging.getLogger(__name__)

_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>")


def _local(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _children(el: ET.Element, name: str) -> list[ET.Element]:
    return [c for c in el if _local(c.tag) == name]


def _child(el: ET.Element, name: str) -> ET.Element | None:
    for c in el:
        if _local(c.tag) == name:
            return c
    return None


def _text(el: ET.Element | None) -> str | None:
    if el is None or el.text is None:
        return None
    return el.text.strip() or None


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------

def parse_coordinates(text: str | None) -> list[list[float]]:
    """'lon,lat[,alt] lon,lat[,alt] ...' -> [[lon, lat(, alt)], ...].

    Tuples that do not parse are skipped.
    """
    positions: list[list[float]] = []
    for chunk in (text or "").split():
        try:
            position = [float(p) for p in chunk.split(",") if p != ""]
        except ValueError:
            continue
        if len(position) >= 2:
            positions.append(position)
    return positions


def _coords_of(el: ET.Element) -> list[list[float]]:
    return parse_coordinates(_text(_child(el, "coordinates")))


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def _polygon(el: ET.Element) -> dict[str, Any] | None:
    rings: list[list[list[float]]] = []
    outer = _child(el, "outerBoundaryIs")
    if outer is None:
        return None
    ring = _child(outer, "LinearRing")
    if ring is None:
        return None
    rings.append(_coords_of(ring))
    for inner in _children(el, "innerBoundaryIs"):
        for ring in _children(inner, "LinearRing"):
            rings.append(_coords_of(ring))
    return {"type": "Polygon", "coordinates": rings}


def convert_geometry(el: ET.Element) -> dict[str, Any] | None:
    kind = _local(el.tag)
    if kind == "Point":
        coords = _coords_of(el)
        return {"type": "Point", "coordinates": coords[0] if coords else []}
    if kind in ("LineString", "LinearRing"):
        return {"type": "LineString", "coordinates": _coords_of(el)}
    if kind == "Polygon":
        return _polygon(el)
    if kind == "MultiGeometry":
        members = [g for g in (convert_geometry(c) for c in el) if g is not None]
        if len(members) == 1:
            return members[0]
        return {"type": "GeometryCollection", "geometries": members}
    return None


_GEOMETRY_TAGS = frozenset({"Point", "LineString", "LinearRing", "Polygon", "MultiGeometry"})


def _placemark_geometry(placemark: ET.Element) -> dict[str, Any] | None:
    for c in placemark:
        if _local(c.tag) in _GEOMETRY_TAGS:
            return convert_geometry(c)
    return None


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

def _properties(placemark: ET.Element) -> dict[str, Any]:
    props: dict[str, Any] = {}
    for key in ("name", "description"):
        value = _text(_child(placemark, key))
        if value is not None:
            props[key] = value

    extended = _child(placemark, "ExtendedData")
    if extended is not None:
        for el in extended.iter():
            kind = _local(el.tag)
            name = el.get("name")
            if not name:
                continue
            if kind == "Data":
                props[name] = _text(_child(el, "value"))
            elif kind == "SimpleData":
                props[name] = _text(el)
    return props


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def kml_to_geojson(content: bytes | str) -> dict[str, Any]:
    """Convert a KML document to a FeatureCollection.

    Raises:
        GISFormatError: On malformed XML.
    """
    if isinstance(content, str):
        # Already decoded; a declared encoding no longer describes these characters.
        content = _XML_DECL_RE.sub("", content.lstrip("\ufeff"), count=1)
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise GISFormatError(f"The KML file contains invalid XML and could not be parsed: {exc}") from exc

    features = [
        {
            "type": "Feature",
            "geometry": _placemark_geometry(pm),
            "properties": _properties(pm),
        }
        for pm in root.iter()
        if _local(pm.tag) == "Placemark"
    ]
    log.debug("KML: %d placemarks", len(features))
    return {"type": "FeatureCollection", "features": features}
