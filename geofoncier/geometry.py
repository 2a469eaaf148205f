"""Geometry codec: GeoJSON and (latitude, longitude) input <-> WKT storage literals.

Axis order is the one thing every caller must get right:
- Parcel input from the map client is [latitude, longitude]
- WKT literals and GeoJSON are (longitude, latitude)

``to_storage_literal`` performs that swap; nothing else in the code base should.
"""

import json
import math
from collections.abc import Sequence
from numbers import Real
from typing import Any

import shapely
from shapely import wkt
from shapely.errors import ShapelyError
from shapely.geometry import Polygon, shape
from shapely.geometry.base import BaseGeometry

from .errors import InvalidGeometry, UnsupportedGeometryType


EXCHANGE_INPUT_TYPES = ("Point", "LineString", "Polygon", "MultiPolygon")
EXCHANGE_OUTPUT_TYPES = ("Point", "Polygon", "MultiPolygon")
POLYGONAL_TYPES = ("Polygon", "MultiPolygon")


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def validate_coordinates(points: Any) -> None:
    """Raise InvalidGeometry unless ``points`` is a usable parcel boundary.

    Expects at least three [latitude, longitude] pairs in range, with at least
    three distinct vertices.
    """
    if not isinstance(points, Sequence) or isinstance(points, str):
        raise InvalidGeometry("Coordinates must be a list of [latitude, longitude] pairs")
    if len(points) < 3:
        raise InvalidGeometry("A boundary needs at least 3 points")

    distinct = set()
    for index, point in enumerate(points):
        if (
            not isinstance(point, Sequence)
            or isinstance(point, str)
            or len(point) != 2
            or not all(_is_number(v) for v in point)
        ):
            raise InvalidGeometry(f"Point {index} must be a [latitude, longitude] pair of numbers")
        lat, lng = point
        if not -90 <= lat <= 90:
            raise InvalidGeometry(f"Point {index}: latitude {lat} is outside [-90, 90]")
        if not -180 <= lng <= 180:
            raise InvalidGeometry(f"Point {index}: longitude {lng} is outside [-180, 180]")
        distinct.add((float(lat), float(lng)))

    if len(distinct) < 3:
        raise InvalidGeometry("A boundary needs at least 3 distinct points")


def to_storage_literal(points: Sequence[Sequence[float]]) -> str:
    """Closed-ring POLYGON WKT from [latitude, longitude] pairs."""
    validate_coordinates(points)
    ring = [(float(lng), float(lat)) for lat, lng in points]
    if ring[0] != ring[-1]:
        ring.append(ring[0])
    return Polygon(ring).wkt


def _check_ranges(geom: BaseGeometry) -> None:
    minx, miny, maxx, maxy = geom.bounds
    if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
        raise InvalidGeometry("Coordinates are outside the valid longitude/latitude range")


def from_exchange_format(geometry: Any) -> str:
    """WKT literal for a GeoJSON Point, LineString, Polygon or MultiPolygon."""
    if not isinstance(geometry, dict):
        raise InvalidGeometry("Geometry must be a GeoJSON object")
    geom_type = geometry.get("type")
    if geom_type not in EXCHANGE_INPUT_TYPES:
        raise UnsupportedGeometryType(f"Unsupported geometry type: {geom_type}")
    try:
        geom = shape(geometry)
    except (ShapelyError, ValueError, TypeError, IndexError, KeyError, AttributeError) as e:
        raise InvalidGeometry(f"Malformed {geom_type} coordinates: {e}") from e
    if geom.is_empty:
        raise InvalidGeometry(f"Empty {geom_type}")
    _check_ranges(geom)
    return geom.wkt


def require_polygonal(geometry: Any) -> str:
    """Like ``from_exchange_format`` but only for division boundaries."""
    if isinstance(geometry, dict) and geometry.get("type") not in POLYGONAL_TYPES:
        raise UnsupportedGeometryType(
            f"Division boundaries must be Polygon or MultiPolygon, got {geometry.get('type')}"
        )
    return from_exchange_format(geometry)


def load_literal(literal: Any) -> BaseGeometry | None:
    """Parse a WKT (or EWKT) literal, returning None when it cannot be read."""
    if not isinstance(literal, str) or not literal.strip():
        return None
    text = literal.strip()
    if text.upper().startswith("SRID="):
        _, _, text = text.partition(";")
    try:
        geom = wkt.loads(text)
    except (ShapelyError, ValueError, TypeError):
        return None
    if geom.is_empty:
        return None
    return geom


def to_exchange_format(literal: Any) -> dict | None:
    """GeoJSON for a Point/Polygon/MultiPolygon literal, or None.

    Never raises: malformed or unrecognised literals are the caller's to count.
    """
    geom = load_literal(literal)
    if geom is None or geom.geom_type not in EXCHANGE_OUTPUT_TYPES:
        return None
    return json.loads(shapely.to_geojson(geom))


def centroid_of(literal: str) -> tuple[float, float] | None:
    """(longitude, latitude) of a literal's centroid."""
    geom = load_literal(literal)
    if geom is None:
        return None
    point = geom.centroid
    return point.x, point.y


def to_feature(geometry: dict | None, properties: dict) -> dict:
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def feature_collection(features: list[dict], metadata: dict | None = None) -> dict:
    collection = {"type": "FeatureCollection", "features": features}
    if metadata is not None:
        collection["metadata"] = metadata
    return collection
