"""Spatial backends: where the geometry math actually runs.

Two implementations of the same contracts:
- PostGISBackend: named stored functions in the database, with a direct
  PostGIS query as the degraded path when a function is missing or fails.
- ShapelyBackend: the same predicates evaluated in process with shapely and
  pyproj, for SQLite deployments and the test suite.

Every method returns plain dict rows; geometry columns come back as WKT under
a ``*_wkt`` key and are shaped into GeoJSON by the query engine, not here.
Distances and areas are geodesic (WGS84) in both backends.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import shapely
from pyproj import Geod, Transformer
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .errors import UpstreamFailure, UpstreamTimeout
from .geometry import load_literal
from .models import Arrondissement, Department, Parcel, Region, RegionStatistics, utcnow

logger = logging.getLogger(__name__)

QUERY_CANCELED = "57014"


@dataclass
class BackendResult:
    """Rows produced by a backend and how they were obtained.

    ``source`` is "procedure" (stored function), "fallback" (direct query after
    the function failed) or "in_process" (shapely). ``skipped`` counts rows the
    backend could not evaluate because their stored geometry does not parse.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    source: str = "procedure"
    skipped: int = 0


class SpatialBackend(ABC):
    """Capability interface every spatial backend implements."""

    name: str = "abstract"

    @abstractmethod
    def locate(self, session: Session, longitude: float, latitude: float) -> BackendResult:
        """At most one row: region/department/arrondissement ids and names containing the point."""

    @abstractmethod
    def nearest_region(
        self, session: Session, longitude: float, latitude: float, max_distance: float
    ) -> BackendResult:
        """At most one row: the region whose centre is closest, within ``max_distance`` metres."""

    @abstractmethod
    def parcels_in_bounds(
        self, session: Session, north: float, south: float, east: float, west: float
    ) -> BackendResult:
        """Active parcels whose boundary intersects the box."""

    @abstractmethod
    def parcels_in_region(self, session: Session, region_id: int) -> BackendResult:
        """Active parcels whose interior intersects the region."""

    @abstractmethod
    def parcel_overlaps(self, session: Session, parcel_id) -> BackendResult:
        """Other active parcels whose interior intersects the given parcel's."""

    @abstractmethod
    def multi_region_parcels(self, session: Session) -> BackendResult:
        """Active parcels spanning the interiors of more than one region."""

    @abstractmethod
    def border_parcels(self, session: Session, distance_m: float) -> BackendResult:
        """Active parcels within ``distance_m`` of a region border, closest region first."""

    @abstractmethod
    def regions_near_point(
        self, session: Session, longitude: float, latitude: float, radius_m: float
    ) -> BackendResult:
        """Regions whose boundary lies within ``radius_m`` of the point, closest first."""

    @abstractmethod
    def region_area(self, session: Session, region_id: int) -> BackendResult:
        """At most one row: ``id``, ``name``, ``area_m2``."""

    @abstractmethod
    def region_centers(self, session: Session) -> BackendResult:
        """One row per region with a boundary: ``id``, ``name``, ``center_wkt``."""

    @abstractmethod
    def distances_between_regions(self, session: Session) -> BackendResult:
        """Centre-to-centre distance for every unordered pair of regions."""

    @abstractmethod
    def refresh_statistics(self, session: Session, timeout_seconds: float) -> BackendResult:
        """Rebuild the region statistics table. Does not commit."""

    @abstractmethod
    def invalid_boundaries(self, session: Session, timeout_seconds: float) -> BackendResult:
        """Rows ``entity``, ``entity_id``, ``name``, ``reason`` for unusable boundaries."""

    @abstractmethod
    def simplify_regions(
        self, session: Session, tolerance: float, timeout_seconds: float
    ) -> BackendResult:
        """Simplify region boundaries in place. Does not commit."""


# =============================================================================
# POSTGIS
# =============================================================================

PARCEL_COLUMNS = """
    p.id, p.matricule, p.owner_id, p.arrondissement_id, p.activity,
    p.is_titled, p.price_per_m2, ST_AsText(p.boundary) AS boundary_wkt
"""

POINT = "ST_SetSRID(ST_MakePoint(:lng, :lat), 4326)"


def _rows(result) -> list[dict[str, Any]]:
    return [dict(row._mapping) for row in result]


def _sqlstate(error: DBAPIError) -> str | None:
    orig = error.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


class PostGISBackend(SpatialBackend):
    """Stored functions first, direct PostGIS queries when they are unavailable."""

    name = "postgis"

    def _call(
        self,
        session: Session,
        function: str,
        procedure_sql: str,
        fallback: Callable[[], list[dict[str, Any]]],
        params: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> BackendResult:
        if timeout_seconds:
            # Scoped to the current transaction
            session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))
        try:
            with session.begin_nested():
                rows = _rows(session.execute(text(procedure_sql), params or {}))
            return BackendResult(rows=rows, source="procedure")
        except DBAPIError as e:
            if _sqlstate(e) == QUERY_CANCELED:
                raise UpstreamTimeout(f"{function} exceeded its time limit") from e
            logger.warning("Stored function %s unavailable, using direct query: %s", function, e.orig)

        try:
            return BackendResult(rows=fallback(), source="fallback")
        except DBAPIError as e:
            if _sqlstate(e) == QUERY_CANCELED:
                raise UpstreamTimeout(f"{function} exceeded its time limit") from e
            logger.error("Direct query for %s failed: %s", function, e.orig)
            raise UpstreamFailure(f"Spatial query {function} failed") from e

    def locate(self, session, longitude, latitude):
        params = {"lng": longitude, "lat": latitude}

        def fallback():
            levels = [
                f"""
                SELECT r.id AS region_id, r.name AS region_name,
                       d.id AS department_id, d.name AS department_name,
                       a.id AS arrondissement_id, a.name AS arrondissement_name
                FROM arrondissements a
                LEFT JOIN departments d ON d.id = a.department_id
                LEFT JOIN regions r ON r.id = d.region_id
                WHERE ST_Intersects(a.boundary, {POINT})
                ORDER BY a.id LIMIT 1
                """,
                f"""
                SELECT r.id AS region_id, r.name AS region_name,
                       d.id AS department_id, d.name AS department_name,
                       NULL AS arrondissement_id, NULL AS arrondissement_name
                FROM departments d
                LEFT JOIN regions r ON r.id = d.region_id
                WHERE ST_Intersects(d.boundary, {POINT})
                ORDER BY d.id LIMIT 1
                """,
                f"""
                SELECT r.id AS region_id, r.name AS region_name,
                       NULL AS department_id, NULL AS department_name,
                       NULL AS arrondissement_id, NULL AS arrondissement_name
                FROM regions r
                WHERE ST_Intersects(r.boundary, {POINT})
                ORDER BY r.id LIMIT 1
                """,
            ]
            for sql in levels:
                rows = _rows(session.execute(text(sql), params))
                if rows:
                    return rows
            return []

        return self._call(
            session,
            "get_location_hierarchy",
            "SELECT * FROM get_location_hierarchy(:lng, :lat)",
            fallback,
            params,
        )

    def nearest_region(self, session, longitude, latitude, max_distance):
        params = {"lng": longitude, "lat": latitude, "max_distance": max_distance}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT r.id, r.name,
                       ST_AsText(ST_Centroid(r.boundary)) AS center_wkt,
                       ST_Distance(ST_Centroid(r.boundary)::geography, {POINT}::geography) AS distance_m
                FROM regions r
                WHERE r.boundary IS NOT NULL
                  AND ST_DWithin(ST_Centroid(r.boundary)::geography, {POINT}::geography, :max_distance)
                ORDER BY distance_m
                LIMIT 1
            """), params))

        return self._call(
            session,
            "find_nearest_region",
            """
            SELECT n.id, n.name, ST_AsText(n.center) AS center_wkt, n.distance_m
            FROM find_nearest_region(:lng, :lat, :max_distance) n
            """,
            fallback,
            params,
        )

    def parcels_in_bounds(self, session, north, south, east, west):
        params = {"north": north, "south": south, "east": east, "west": west}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT {PARCEL_COLUMNS}
                FROM parcels p
                WHERE p.is_active
                  AND ST_Intersects(p.boundary, ST_MakeEnvelope(:west, :south, :east, :north, 4326))
                ORDER BY p.created_at DESC
            """), params))

        return self._call(
            session,
            "parcels_in_bounds",
            """
            SELECT b.*, ST_AsText(b.boundary) AS boundary_wkt
            FROM parcels_in_bounds(:north, :south, :east, :west) b
            """,
            fallback,
            params,
        )

    def parcels_in_region(self, session, region_id):
        params = {"region_id": region_id}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT {PARCEL_COLUMNS}
                FROM parcels p
                JOIN regions r ON r.id = :region_id
                WHERE p.is_active
                  AND ST_Intersects(r.boundary, p.boundary)
                  AND NOT ST_Touches(r.boundary, p.boundary)
                ORDER BY p.created_at DESC
            """), params))

        return self._call(
            session,
            "parcels_in_region",
            """
            SELECT g.*, ST_AsText(g.boundary) AS boundary_wkt
            FROM parcels_in_region(:region_id) g
            """,
            fallback,
            params,
        )

    def parcel_overlaps(self, session, parcel_id):
        params = {"parcel_id": parcel_id}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT {PARCEL_COLUMNS},
                       ST_Area(ST_Intersection(p.boundary, t.boundary)::geography) AS overlap_area_m2
                FROM parcels p
                JOIN parcels t ON t.id = :parcel_id
                WHERE p.is_active
                  AND p.id <> t.id
                  AND ST_Intersects(p.boundary, t.boundary)
                  AND NOT ST_Touches(p.boundary, t.boundary)
                ORDER BY overlap_area_m2 DESC
            """), params))

        return self._call(
            session,
            "detect_parcel_overlaps",
            """
            SELECT o.*, ST_AsText(o.boundary) AS boundary_wkt
            FROM detect_parcel_overlaps(:parcel_id) o
            """,
            fallback,
            params,
        )

    def multi_region_parcels(self, session):
        def fallback():
            return _rows(session.execute(text(f"""
                SELECT {PARCEL_COLUMNS},
                       COUNT(r.id) AS region_count,
                       array_agg(r.name ORDER BY r.name) AS region_names
                FROM parcels p
                JOIN regions r
                  ON ST_Intersects(r.boundary, p.boundary)
                 AND NOT ST_Touches(r.boundary, p.boundary)
                WHERE p.is_active
                GROUP BY p.id
                HAVING COUNT(r.id) > 1
                ORDER BY region_count DESC, p.matricule
            """)))

        return self._call(
            session,
            "multi_region_parcels",
            "SELECT m.*, ST_AsText(m.boundary) AS boundary_wkt FROM multi_region_parcels() m",
            fallback,
        )

    def border_parcels(self, session, distance_m):
        params = {"distance": distance_m}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT DISTINCT ON (p.id)
                       {PARCEL_COLUMNS},
                       r.id AS region_id, r.name AS region_name,
                       ST_Distance(p.boundary::geography, ST_Boundary(r.boundary)::geography) AS distance_m
                FROM parcels p
                JOIN regions r
                  ON r.boundary IS NOT NULL
                 AND ST_DWithin(p.boundary::geography, ST_Boundary(r.boundary)::geography, :distance)
                WHERE p.is_active
                ORDER BY p.id, distance_m
            """), params))

        return self._call(
            session,
            "border_parcels",
            "SELECT b.*, ST_AsText(b.boundary) AS boundary_wkt FROM border_parcels(:distance) b",
            fallback,
            params,
        )

    def regions_near_point(self, session, longitude, latitude, radius_m):
        params = {"lng": longitude, "lat": latitude, "radius_m": radius_m}

        def fallback():
            return _rows(session.execute(text(f"""
                SELECT r.id, r.name,
                       ST_Distance(r.boundary::geography, {POINT}::geography) AS distance_m
                FROM regions r
                WHERE r.boundary IS NOT NULL
                  AND ST_DWithin(r.boundary::geography, {POINT}::geography, :radius_m)
                ORDER BY distance_m, r.name
            """), params))

        return self._call(
            session,
            "find_regions_near_point",
            "SELECT n.id, n.name, n.distance_m FROM find_regions_near_point(:lng, :lat, :radius_m) n",
            fallback,
            params,
        )

    def region_area(self, session, region_id):
        params = {"region_id": region_id}

        def fallback():
            return _rows(session.execute(text("""
                SELECT r.id, r.name, ST_Area(r.boundary::geography) AS area_m2
                FROM regions r
                WHERE r.id = :region_id
            """), params))

        return self._call(
            session,
            "calculate_region_area",
            "SELECT * FROM calculate_region_area(:region_id)",
            fallback,
            params,
        )

    def region_centers(self, session):
        def fallback():
            return _rows(session.execute(text("""
                SELECT r.id, r.name, ST_AsText(ST_Centroid(r.boundary)) AS center_wkt
                FROM regions r
                WHERE r.boundary IS NOT NULL
                ORDER BY r.name
            """)))

        return self._call(
            session,
            "region_centers",
            "SELECT c.id, c.name, ST_AsText(c.center) AS center_wkt FROM region_centers() c",
            fallback,
        )

    def distances_between_regions(self, session):
        def fallback():
            return _rows(session.execute(text("""
                SELECT a.id AS from_id, a.name AS from_name,
                       b.id AS to_id, b.name AS to_name,
                       ST_Distance(ST_Centroid(a.boundary)::geography,
                                   ST_Centroid(b.boundary)::geography) AS distance_m
                FROM regions a
                JOIN regions b ON a.id < b.id
                WHERE a.boundary IS NOT NULL AND b.boundary IS NOT NULL
                ORDER BY distance_m
            """)))

        return self._call(
            session,
            "distances_between_regions",
            "SELECT * FROM distances_between_regions()",
            fallback,
        )

    def refresh_statistics(self, session, timeout_seconds):
        def fallback():
            session.execute(text("DELETE FROM region_statistics"))
            session.execute(text("""
                INSERT INTO region_statistics
                    (region_id, region_name, department_count, arrondissement_count,
                     parcel_count, area_m2, refreshed_at)
                SELECT r.id, r.name,
                       (SELECT COUNT(*) FROM departments d WHERE d.region_id = r.id),
                       (SELECT COUNT(*) FROM arrondissements a
                          JOIN departments d ON d.id = a.department_id
                         WHERE d.region_id = r.id),
                       (SELECT COUNT(*) FROM parcels p
                          JOIN arrondissements a ON a.id = p.arrondissement_id
                          JOIN departments d ON d.id = a.department_id
                         WHERE d.region_id = r.id AND p.is_active),
                       ST_Area(r.boundary::geography),
                       now()
                FROM regions r
            """))
            return []

        return self._call(
            session,
            "refresh_region_statistics",
            "SELECT refresh_region_statistics() AS refreshed",
            fallback,
            timeout_seconds=timeout_seconds,
        )

    def invalid_boundaries(self, session, timeout_seconds):
        def fallback():
            checks = [
                ("region", "regions"),
                ("department", "departments"),
                ("arrondissement", "arrondissements"),
                ("parcel", "parcels"),
            ]
            rows = []
            for entity, table in checks:
                label = "matricule" if table == "parcels" else "name"
                rows.extend(_rows(session.execute(text(f"""
                    SELECT '{entity}' AS entity, t.id AS entity_id, t.{label} AS name,
                           ST_IsValidReason(t.boundary) AS reason
                    FROM {table} t
                    WHERE t.boundary IS NOT NULL AND NOT ST_IsValid(t.boundary)
                    ORDER BY t.id
                """))))
            return rows

        return self._call(
            session,
            "find_invalid_geometries",
            "SELECT * FROM find_invalid_geometries()",
            fallback,
            timeout_seconds=timeout_seconds,
        )

    def simplify_regions(self, session, tolerance, timeout_seconds):
        params = {"tolerance": tolerance}

        def fallback():
            return _rows(session.execute(text("""
                WITH simplified AS (
                    SELECT r.id, r.name,
                           ST_NPoints(r.boundary) AS vertices_before,
                           ST_SimplifyPreserveTopology(r.boundary, :tolerance) AS geom
                    FROM regions r
                    WHERE r.boundary IS NOT NULL
                ),
                updated AS (
                    UPDATE regions r
                       SET boundary = s.geom, updated_at = now()
                      FROM simplified s
                     WHERE r.id = s.id
                       AND ST_IsValid(s.geom)
                       AND NOT ST_IsEmpty(s.geom)
                       AND ST_NPoints(s.geom) < s.vertices_before
                    RETURNING r.id
                )
                SELECT s.id, s.name, s.vertices_before,
                       CASE WHEN u.id IS NULL THEN s.vertices_before ELSE ST_NPoints(s.geom) END
                           AS vertices_after
                FROM simplified s
                LEFT JOIN updated u ON u.id = s.id
                ORDER BY s.name
            """), params))

        return self._call(
            session,
            "optimize_region_geometries",
            "SELECT * FROM optimize_region_geometries(:tolerance)",
            fallback,
            params,
            timeout_seconds=timeout_seconds,
        )


# =============================================================================
# IN PROCESS (shapely + pyproj)
# =============================================================================

GEOD = Geod(ellps="WGS84")


def geodesic_area_m2(geom: BaseGeometry) -> float:
    area, _ = GEOD.geometry_area_perimeter(geom)
    return abs(area)


def geodesic_distance_m(a: Point, b: Point) -> float:
    _, _, distance = GEOD.inv(a.x, a.y, b.x, b.y)
    return distance


def metric_distance_m(geom: BaseGeometry, other: BaseGeometry) -> float:
    """Distance in metres, measured in an azimuthal projection centred on ``geom``."""
    center = geom.centroid
    to_local = Transformer.from_crs(
        "EPSG:4326",
        f"+proj=aeqd +lat_0={center.y} +lon_0={center.x} +datum=WGS84 +units=m",
        always_xy=True,
    )
    return transform(to_local.transform, geom).distance(transform(to_local.transform, other))


def _interiors_intersect(a: BaseGeometry, b: BaseGeometry) -> bool:
    return a.intersects(b) and not a.touches(b)


def _parcel_row(parcel: Parcel) -> dict[str, Any]:
    return {
        "id": parcel.id,
        "matricule": parcel.matricule,
        "owner_id": parcel.owner_id,
        "arrondissement_id": parcel.arrondissement_id,
        "activity": parcel.activity,
        "is_titled": parcel.is_titled,
        "price_per_m2": parcel.price_per_m2,
        "boundary_wkt": parcel.boundary,
    }


class ShapelyBackend(SpatialBackend):
    """Evaluates every contract in process. No stored functions, no fallbacks."""

    name = "shapely"

    def _result(self, rows: list[dict[str, Any]], skipped: int = 0) -> BackendResult:
        return BackendResult(rows=rows, source="in_process", skipped=skipped)

    def _load(self, session: Session, stmt) -> tuple[list[tuple[Any, BaseGeometry]], int]:
        """(row, geometry) pairs for rows whose boundary parses, and how many did not."""
        shaped = []
        skipped = 0
        for row in session.scalars(stmt):
            geom = load_literal(row.boundary)
            if geom is None:
                logger.debug("Skipping unreadable boundary on %s %s", row.__tablename__, row.id)
                skipped += 1
                continue
            shaped.append((row, geom))
        return shaped, skipped

    def _shapes(self, session: Session, model) -> tuple[list[tuple[Any, BaseGeometry]], int]:
        stmt = select(model).where(model.boundary.is_not(None)).order_by(model.id)
        return self._load(session, stmt)

    def _active_parcels(self, session: Session) -> tuple[list[tuple[Parcel, BaseGeometry]], int]:
        stmt = (
            select(Parcel)
            .where(Parcel.is_active.is_(True))
            .order_by(Parcel.created_at.desc())
        )
        return self._load(session, stmt)

    def locate(self, session, longitude, latitude):
        point = Point(longitude, latitude)
        empty = {
            "region_id": None, "region_name": None,
            "department_id": None, "department_name": None,
            "arrondissement_id": None, "arrondissement_name": None,
        }

        for arrondissement, geom in self._shapes(session, Arrondissement)[0]:
            if geom.intersects(point):
                department = arrondissement.department
                region = department.region if department else None
                return self._result([{
                    **empty,
                    "arrondissement_id": arrondissement.id,
                    "arrondissement_name": arrondissement.name,
                    "department_id": department.id if department else None,
                    "department_name": department.name if department else None,
                    "region_id": region.id if region else None,
                    "region_name": region.name if region else None,
                }])

        for department, geom in self._shapes(session, Department)[0]:
            if geom.intersects(point):
                region = department.region
                return self._result([{
                    **empty,
                    "department_id": department.id,
                    "department_name": department.name,
                    "region_id": region.id if region else None,
                    "region_name": region.name if region else None,
                }])

        for region, geom in self._shapes(session, Region)[0]:
            if geom.intersects(point):
                return self._result([{**empty, "region_id": region.id, "region_name": region.name}])

        return self._result([])

    def nearest_region(self, session, longitude, latitude, max_distance):
        point = Point(longitude, latitude)
        best = None
        for region, geom in self._shapes(session, Region)[0]:
            center = geom.centroid
            distance = geodesic_distance_m(point, center)
            if distance <= max_distance and (best is None or distance < best["distance_m"]):
                best = {"id": region.id, "name": region.name, "center_wkt": center.wkt, "distance_m": distance}
        return self._result([best] if best else [])

    def parcels_in_bounds(self, session, north, south, east, west):
        envelope = box(west, south, east, north)
        parcels, skipped = self._active_parcels(session)
        return self._result(
            [_parcel_row(parcel) for parcel, geom in parcels if geom.intersects(envelope)],
            skipped,
        )

    def parcels_in_region(self, session, region_id):
        region = session.get(Region, region_id)
        region_geom = load_literal(region.boundary) if region else None
        if region_geom is None:
            return self._result([])
        parcels, skipped = self._active_parcels(session)
        return self._result(
            [_parcel_row(parcel) for parcel, geom in parcels if _interiors_intersect(region_geom, geom)],
            skipped,
        )

    def parcel_overlaps(self, session, parcel_id):
        target = session.get(Parcel, parcel_id)
        target_geom = load_literal(target.boundary) if target else None
        if target_geom is None:
            return self._result([])
        parcels, skipped = self._active_parcels(session)
        rows = []
        for parcel, geom in parcels:
            if parcel.id == target.id or not _interiors_intersect(target_geom, geom):
                continue
            row = _parcel_row(parcel)
            row["overlap_area_m2"] = geodesic_area_m2(target_geom.intersection(geom))
            rows.append(row)
        rows.sort(key=lambda r: r["overlap_area_m2"], reverse=True)
        return self._result(rows, skipped)

    def multi_region_parcels(self, session):
        regions, _ = self._shapes(session, Region)
        parcels, skipped = self._active_parcels(session)
        rows = []
        for parcel, geom in parcels:
            names = sorted(r.name for r, region_geom in regions if _interiors_intersect(region_geom, geom))
            if len(names) > 1:
                row = _parcel_row(parcel)
                row.update(region_count=len(names), region_names=names)
                rows.append(row)
        rows.sort(key=lambda r: (-r["region_count"], r["matricule"]))
        return self._result(rows, skipped)

    def border_parcels(self, session, distance_m):
        regions, _ = self._shapes(session, Region)
        parcels, skipped = self._active_parcels(session)
        rows = []
        for parcel, geom in parcels:
            closest = None
            for region, region_geom in regions:
                distance = metric_distance_m(geom, region_geom.boundary)
                if distance <= distance_m and (closest is None or distance < closest[1]):
                    closest = (region, distance)
            if closest:
                row = _parcel_row(parcel)
                row.update(region_id=closest[0].id, region_name=closest[0].name, distance_m=closest[1])
                rows.append(row)
        return self._result(rows, skipped)

    def regions_near_point(self, session, longitude, latitude, radius_m):
        point = Point(longitude, latitude)
        regions, skipped = self._shapes(session, Region)
        rows = []
        for region, geom in regions:
            distance = 0.0 if geom.intersects(point) else metric_distance_m(point, geom)
            if distance <= radius_m:
                rows.append({"id": region.id, "name": region.name, "distance_m": distance})
        rows.sort(key=lambda r: (r["distance_m"], r["name"]))
        return self._result(rows, skipped)

    def region_area(self, session, region_id):
        region = session.get(Region, region_id)
        if region is None:
            return self._result([])
        geom = load_literal(region.boundary)
        area = geodesic_area_m2(geom) if geom is not None else None
        return self._result([{"id": region.id, "name": region.name, "area_m2": area}])

    def region_centers(self, session):
        regions, skipped = self._shapes(session, Region)
        rows = [
            {"id": region.id, "name": region.name, "center_wkt": geom.centroid.wkt}
            for region, geom in regions
        ]
        rows.sort(key=lambda r: r["name"])
        return self._result(rows, skipped)

    def distances_between_regions(self, session):
        regions, skipped = self._shapes(session, Region)
        centers = [(region, geom.centroid) for region, geom in regions]
        rows = []
        for i, (a, a_center) in enumerate(centers):
            for b, b_center in centers[i + 1:]:
                rows.append({
                    "from_id": a.id, "from_name": a.name,
                    "to_id": b.id, "to_name": b.name,
                    "distance_m": geodesic_distance_m(a_center, b_center),
                })
        rows.sort(key=lambda r: r["distance_m"])
        return self._result(rows, skipped)

    def refresh_statistics(self, session, timeout_seconds):
        department_counts = dict(
            session.execute(select(Department.region_id, func.count()).group_by(Department.region_id)).all()
        )
        arrondissement_counts = dict(
            session.execute(
                select(Department.region_id, func.count())
                .select_from(Arrondissement)
                .join(Department, Department.id == Arrondissement.department_id)
                .group_by(Department.region_id)
            ).all()
        )
        parcel_counts = dict(
            session.execute(
                select(Department.region_id, func.count())
                .select_from(Parcel)
                .join(Arrondissement, Arrondissement.id == Parcel.arrondissement_id)
                .join(Department, Department.id == Arrondissement.department_id)
                .where(Parcel.is_active.is_(True))
                .group_by(Department.region_id)
            ).all()
        )

        now = utcnow()
        session.execute(delete(RegionStatistics))
        for region in session.scalars(select(Region).order_by(Region.id)):
            geom = load_literal(region.boundary)
            session.add(RegionStatistics(
                region_id=region.id,
                region_name=region.name,
                department_count=department_counts.get(region.id, 0),
                arrondissement_count=arrondissement_counts.get(region.id, 0),
                parcel_count=parcel_counts.get(region.id, 0),
                area_m2=geodesic_area_m2(geom) if geom is not None else None,
                refreshed_at=now,
            ))
        session.flush()
        return self._result([])

    def invalid_boundaries(self, session, timeout_seconds):
        rows = []
        for entity, model in (
            ("region", Region),
            ("department", Department),
            ("arrondissement", Arrondissement),
            ("parcel", Parcel),
        ):
            stmt = select(model).where(model.boundary.is_not(None)).order_by(model.id)
            for row in session.scalars(stmt):
                name = row.matricule if model is Parcel else row.name
                geom = load_literal(row.boundary)
                if geom is None:
                    reason = "Unreadable geometry"
                elif not geom.is_valid:
                    reason = shapely.is_valid_reason(geom)
                else:
                    continue
                rows.append({"entity": entity, "entity_id": row.id, "name": name, "reason": reason})
        return self._result(rows)

    def simplify_regions(self, session, tolerance, timeout_seconds):
        rows = []
        for region, geom in self._shapes(session, Region)[0]:
            before = int(shapely.get_num_coordinates(geom))
            simplified = geom.simplify(tolerance, preserve_topology=True)
            after = int(shapely.get_num_coordinates(simplified))
            if simplified.is_valid and not simplified.is_empty and after < before:
                region.boundary = simplified.wkt
            else:
                after = before
            rows.append({"id": region.id, "name": region.name, "vertices_before": before, "vertices_after": after})
        session.flush()
        rows.sort(key=lambda r: r["name"])
        return self._result(rows)


def build_backend(name: str) -> SpatialBackend:
    backends = {"postgis": PostGISBackend, "shapely": ShapelyBackend}
    if name not in backends:
        raise ValueError(f"Unknown spatial backend: {name!r} (expected one of {sorted(backends)})")
    return backends[name]()
