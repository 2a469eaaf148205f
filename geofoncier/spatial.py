"""Spatial query engine.

Owns the query contracts and result shaping; the geometry math itself runs in
a SpatialBackend (PostGIS stored functions or the in-process fallback).

Degraded mode: any row whose geometry cannot be parsed back to GeoJSON is
dropped from the response and counted in ``dropped``, so callers can tell
"nothing here" apart from "some rows lost to malformed geometry".
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import numpy as np
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .backends import BackendResult, SpatialBackend
from .config import Settings
from .errors import (
    DivisionNotFound,
    InvalidBounds,
    MissingName,
    NoContainingDivision,
    NotFound,
    ParcelNotFound,
    ValidationError,
)
from .geometry import feature_collection, require_polygonal, to_exchange_format, to_feature
from .hierarchy import HierarchyStore
from .integrity import IntegrityIssue, region_comparison, validate_integrity
from .models import Parcel, Region, RegionStatistics, utcnow
from .schemas import DivisionUpdate, RegionCreate

logger = logging.getLogger(__name__)

DEFAULT_NEAREST_DISTANCE_M = 50_000


def plain(value: Any) -> Any:
    """JSON-friendly scalar for values coming out of the database."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, np.generic):
        return value.item()
    return value


@dataclass
class SpatialResult:
    """Shaped rows plus how many were dropped and which path produced them."""

    items: list[dict[str, Any]] = field(default_factory=list)
    dropped: int = 0
    source: str = "procedure"

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "count": len(self.items),
            "dropped": self.dropped,
            "source": self.source,
        }


def shape_rows(
    result: BackendResult,
    wkt_key: str = "boundary_wkt",
    geometry_key: str = "boundary",
    operation: str = "query",
) -> SpatialResult:
    """Turn backend rows into GeoJSON-bearing items, dropping unparseable ones.

    Rows the backend already skipped for unreadable geometry count as dropped too.
    """
    items = []
    dropped = result.skipped
    for row in result.rows:
        row = dict(row)
        literal = row.pop(wkt_key, None)
        # Stored functions may also return the raw geometry column
        row.pop(geometry_key, None)
        geometry = to_exchange_format(literal)
        if geometry is None:
            dropped += 1
            continue
        item = {key: plain(value) for key, value in row.items()}
        item[geometry_key] = geometry
        items.append(item)
    if dropped:
        logger.warning("%s: dropped %d row(s) with unreadable geometry", operation, dropped)
    return SpatialResult(items=items, dropped=dropped, source=result.source)


class SpatialQueryEngine:
    def __init__(self, session: Session, backend: SpatialBackend, settings: Settings):
        self.session = session
        self.backend = backend
        self.settings = settings
        self.hierarchy = HierarchyStore(session)

    @property
    def maintenance_timeout(self) -> float:
        return self.settings.maintenance_timeout_seconds

    # -------------------------------------------------------------------------
    # Point queries
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_point(longitude: float, latitude: float) -> None:
        if longitude is None or latitude is None:
            raise ValidationError("Both longitude and latitude are required")
        if not -180 <= longitude <= 180 or not -90 <= latitude <= 90:
            raise ValidationError("Point is outside the valid longitude/latitude range")

    def locate_by_point(self, longitude: float, latitude: float) -> dict[str, Any]:
        """Region, department and arrondissement containing the point (finest match wins)."""
        self._check_point(longitude, latitude)
        result = self.backend.locate(self.session, longitude, latitude)
        if not result.rows:
            raise NoContainingDivision(f"No division contains point ({longitude}, {latitude})")

        row = result.rows[0]

        def level(prefix: str) -> dict | None:
            if row.get(f"{prefix}_id") is None:
                return None
            return {"id": row[f"{prefix}_id"], "name": row[f"{prefix}_name"]}

        return {
            "region": level("region"),
            "department": level("department"),
            "arrondissement": level("arrondissement"),
            "source": result.source,
        }

    def nearest_division(
        self, longitude: float, latitude: float, max_distance: float = DEFAULT_NEAREST_DISTANCE_M
    ) -> dict[str, Any]:
        """Closest region centre within ``max_distance`` metres, geodesically."""
        self._check_point(longitude, latitude)
        if max_distance is None or max_distance <= 0:
            raise ValidationError("max_distance must be a positive number of metres")
        result = self.backend.nearest_region(self.session, longitude, latitude, max_distance)
        if not result.rows:
            raise NotFound(f"No region centre within {max_distance:g} m of ({longitude}, {latitude})")

        row = result.rows[0]
        distance = float(row["distance_m"])
        return {
            "id": row["id"],
            "name": row["name"],
            "level": "region",
            "center": to_exchange_format(row.get("center_wkt")),
            "distance_m": round(distance, 2),
            "distance_km": round(distance / 1000, 3),
            "source": result.source,
        }

    # -------------------------------------------------------------------------
    # Parcel searches
    # -------------------------------------------------------------------------

    def parcels_in_bounds(
        self,
        north: float | None,
        south: float | None,
        east: float | None,
        west: float | None,
    ) -> SpatialResult:
        """Active parcels intersecting the box. Boxes crossing the antimeridian are rejected."""
        bounds = {"north": north, "south": south, "east": east, "west": west}
        missing = [name for name, value in bounds.items() if value is None]
        if missing:
            raise InvalidBounds(f"Missing bounds: {', '.join(missing)}")
        for name in ("north", "south"):
            if not -90 <= bounds[name] <= 90:
                raise InvalidBounds(f"{name} must be within [-90, 90]")
        for name in ("east", "west"):
            if not -180 <= bounds[name] <= 180:
                raise InvalidBounds(f"{name} must be within [-180, 180]")
        if north <= south:
            raise InvalidBounds("north must be greater than south")
        if west >= east:
            raise InvalidBounds("west must be less than east; boxes crossing the antimeridian are not supported")

        result = self.backend.parcels_in_bounds(self.session, north, south, east, west)
        return shape_rows(result, operation="parcels_in_bounds")

    def parcels_in_region(self, region_name: str) -> tuple[Region, SpatialResult]:
        region = self.hierarchy.get_region_by_name(region_name)
        result = self.backend.parcels_in_region(self.session, region.id)
        return region, shape_rows(result, operation="parcels_in_region")

    def detect_overlaps(self, parcel_id) -> SpatialResult:
        """Other active parcels overlapping this one. Reported only, never resolved here."""
        if self.session.get(Parcel, parcel_id) is None:
            raise ParcelNotFound(f"Parcel {parcel_id} not found")
        result = self.backend.parcel_overlaps(self.session, parcel_id)
        return shape_rows(result, operation="detect_overlaps")

    def multi_region_parcels(self) -> SpatialResult:
        return shape_rows(self.backend.multi_region_parcels(self.session), operation="multi_region_parcels")

    def border_parcels(self, distance_m: float) -> SpatialResult:
        if distance_m is None or distance_m <= 0:
            raise ValidationError("distance must be a positive number of metres")
        return shape_rows(self.backend.border_parcels(self.session, distance_m), operation="border_parcels")

    # -------------------------------------------------------------------------
    # Region measurements
    # -------------------------------------------------------------------------

    def region_area(self, region_id: int) -> dict[str, Any]:
        result = self.backend.region_area(self.session, region_id)
        if not result.rows:
            raise DivisionNotFound(f"Region {region_id} not found")
        row = result.rows[0]
        area_m2 = float(row["area_m2"]) if row.get("area_m2") is not None else None
        return {
            "id": row["id"],
            "name": row["name"],
            "area_m2": round(area_m2, 2) if area_m2 is not None else None,
            "area_km2": round(area_m2 / 1_000_000, 4) if area_m2 is not None else None,
            "source": result.source,
        }

    def region_centers(self) -> SpatialResult:
        return shape_rows(
            self.backend.region_centers(self.session),
            wkt_key="center_wkt",
            geometry_key="center",
            operation="region_centers",
        )

    def distances_between_regions(self) -> SpatialResult:
        result = self.backend.distances_between_regions(self.session)
        items = []
        for row in result.rows:
            item = {key: plain(value) for key, value in row.items()}
            distance = float(row["distance_m"])
            item["distance_m"] = round(distance, 2)
            item["distance_km"] = round(distance / 1000, 3)
            items.append(item)
        return SpatialResult(items=items, dropped=result.skipped, source=result.source)

    def regions_near_point(
        self, longitude: float, latitude: float, radius_km: float = DEFAULT_NEAREST_DISTANCE_M / 1000
    ) -> SpatialResult:
        """Regions whose boundary comes within ``radius_km`` of the point. Containing regions are at 0 km."""
        self._check_point(longitude, latitude)
        if radius_km is None or radius_km <= 0:
            raise ValidationError("radius_km must be a positive number of kilometres")
        result = self.backend.regions_near_point(self.session, longitude, latitude, radius_km * 1000)
        items = []
        for row in result.rows:
            distance = float(row["distance_m"])
            items.append({
                "id": row["id"],
                "name": row["name"],
                "distance_m": round(distance, 2),
                "distance_km": round(distance / 1000, 3),
            })
        if result.skipped:
            logger.warning("regions_near_point: skipped %d region(s) with unreadable geometry", result.skipped)
        return SpatialResult(items=items, dropped=result.skipped, source=result.source)

    def compare_regions(self, region_ids: list[int]) -> list[dict[str, Any]]:
        """Side-by-side statistics for two or more regions, in the order asked."""
        unique_ids = list(dict.fromkeys(region_ids))
        if len(unique_ids) < 2:
            raise ValidationError("At least two distinct region ids are required")
        return region_comparison(self.session, self.backend, unique_ids)

    # -------------------------------------------------------------------------
    # GeoJSON import / export
    # -------------------------------------------------------------------------

    def export_regions(self) -> dict[str, Any]:
        """FeatureCollection of every region with a readable boundary."""
        features = []
        dropped = 0
        regions = self.session.scalars(
            select(Region).where(Region.boundary.is_not(None)).order_by(Region.name)
        )
        for region in regions:
            geometry = to_exchange_format(region.boundary)
            if geometry is None:
                dropped += 1
                continue
            features.append(to_feature(geometry, {"id": region.id, "name": region.name}))
        if dropped:
            logger.warning("export_regions: dropped %d region(s) with unreadable geometry", dropped)
        return feature_collection(
            features,
            metadata={
                "total_features": len(features),
                "dropped": dropped,
                "exported_at": utcnow().isoformat(),
            },
        )

    def import_region(self, feature: dict[str, Any]) -> tuple[Region, bool]:
        """Create a region from a Feature, or replace the boundary of the one with that name.

        Returns the region and whether it was created.
        """
        if not isinstance(feature, dict):
            raise ValidationError("Expected a GeoJSON Feature")
        properties = feature.get("properties") or {}
        name = properties.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MissingName("Feature properties must include a non-empty 'name'")
        # Validate before touching the database
        require_polygonal(feature.get("geometry"))

        existing = self.session.scalar(
            select(Region).where(func.lower(Region.name) == name.strip().lower())
        )
        if existing is not None:
            region = self.hierarchy.update_region(
                existing.id, DivisionUpdate(boundary=feature["geometry"])
            )
            logger.info("Import replaced boundary of region %s (%s)", region.id, region.name)
            return region, False

        region = self.hierarchy.create_region(RegionCreate(name=name, boundary=feature["geometry"]))
        return region, True

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def refresh_cache(self) -> dict[str, Any]:
        """Rebuild region statistics in one transaction. Safe to repeat."""
        result = self.backend.refresh_statistics(self.session, self.maintenance_timeout)
        self.session.commit()
        count = self.session.scalar(select(func.count()).select_from(RegionStatistics))
        logger.info("Region statistics refreshed: %d region(s) via %s", count, result.source)
        return {"regions": count, "source": result.source}

    def optimize_geometries(self, tolerance: float = 0.001) -> SpatialResult:
        """Simplify region boundaries, keeping topology. Safe to repeat."""
        if tolerance is None or tolerance <= 0:
            raise ValidationError("tolerance must be positive")
        result = self.backend.simplify_regions(self.session, tolerance, self.maintenance_timeout)
        self.session.commit()
        items = [{key: plain(value) for key, value in row.items()} for row in result.rows]
        simplified = sum(1 for i in items if i["vertices_after"] < i["vertices_before"])
        logger.info("Simplified %d of %d region boundaries (tolerance=%s)", simplified, len(items), tolerance)
        return SpatialResult(items=items, dropped=0, source=result.source)

    def validate_integrity(self) -> list[IntegrityIssue]:
        return validate_integrity(self.session, self.backend, self.maintenance_timeout)
