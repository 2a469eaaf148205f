"""Data integrity sweep and consolidated reports.

Nothing here mutates data. Defects are returned as IntegrityIssue records for
an administrator to act on; they are never raised.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .backends import SpatialBackend
from .errors import DivisionNotFound
from .models import (
    Arrondissement,
    Contact,
    Department,
    Parcel,
    Region,
    RegionStatistics,
    Subscription,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class IntegrityIssue:
    """One defect found by the sweep.

    kind: ``orphaned`` (no parent set), ``dangling_reference`` (parent id points
    nowhere) or ``invalid_boundary``.
    """

    kind: str
    entity: str
    entity_id: Any
    detail: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["entity_id"] = str(self.entity_id) if self.entity == "parcel" else self.entity_id
        return data


def _orphaned_departments(session: Session) -> list[Department]:
    return list(session.scalars(
        select(Department).where(Department.region_id.is_(None)).order_by(Department.id)
    ))


def _dangling_departments(session: Session) -> list[Department]:
    return list(session.scalars(
        select(Department)
        .outerjoin(Region, Region.id == Department.region_id)
        .where(Department.region_id.is_not(None), Region.id.is_(None))
        .order_by(Department.id)
    ))


def _orphaned_arrondissements(session: Session) -> list[Arrondissement]:
    return list(session.scalars(
        select(Arrondissement).where(Arrondissement.department_id.is_(None)).order_by(Arrondissement.id)
    ))


def _dangling_arrondissements(session: Session) -> list[Arrondissement]:
    return list(session.scalars(
        select(Arrondissement)
        .outerjoin(Department, Department.id == Arrondissement.department_id)
        .where(Arrondissement.department_id.is_not(None), Department.id.is_(None))
        .order_by(Arrondissement.id)
    ))


def _dangling_parcels(session: Session) -> list[Parcel]:
    return list(session.scalars(
        select(Parcel)
        .outerjoin(Arrondissement, Arrondissement.id == Parcel.arrondissement_id)
        .where(Parcel.arrondissement_id.is_not(None), Arrondissement.id.is_(None))
        .order_by(Parcel.created_at)
    ))


def validate_integrity(
    session: Session, backend: SpatialBackend, timeout_seconds: float
) -> list[IntegrityIssue]:
    """Run the full consistency sweep over the hierarchy and parcel boundaries."""
    issues: list[IntegrityIssue] = []

    for department in _orphaned_departments(session):
        issues.append(IntegrityIssue(
            "orphaned", "department", department.id, f"Department '{department.name}' has no region"
        ))
    for department in _dangling_departments(session):
        issues.append(IntegrityIssue(
            "dangling_reference", "department", department.id,
            f"Department '{department.name}' references missing region {department.region_id}",
        ))
    for arrondissement in _orphaned_arrondissements(session):
        issues.append(IntegrityIssue(
            "orphaned", "arrondissement", arrondissement.id,
            f"Arrondissement '{arrondissement.name}' has no department",
        ))
    for arrondissement in _dangling_arrondissements(session):
        issues.append(IntegrityIssue(
            "dangling_reference", "arrondissement", arrondissement.id,
            f"Arrondissement '{arrondissement.name}' references missing department "
            f"{arrondissement.department_id}",
        ))
    for parcel in _dangling_parcels(session):
        issues.append(IntegrityIssue(
            "dangling_reference", "parcel", parcel.id,
            f"Parcel {parcel.matricule} references missing arrondissement {parcel.arrondissement_id}",
        ))

    invalid = backend.invalid_boundaries(session, timeout_seconds)
    for row in invalid.rows:
        issues.append(IntegrityIssue(
            "invalid_boundary", row["entity"], row["entity_id"],
            f"{row['entity'].capitalize()} '{row['name']}': {row['reason']}",
        ))

    if issues:
        logger.warning("Integrity sweep found %d issue(s)", len(issues))
    return issues


def cleanup_report(session: Session) -> dict[str, Any]:
    """Departments and arrondissements that lost their parent, for manual cleanup."""
    departments = _orphaned_departments(session) + _dangling_departments(session)
    arrondissements = _orphaned_arrondissements(session) + _dangling_arrondissements(session)
    return {
        "orphaned_departments": [
            {"id": d.id, "name": d.name, "region_id": d.region_id} for d in departments
        ],
        "orphaned_arrondissements": [
            {"id": a.id, "name": a.name, "department_id": a.department_id} for a in arrondissements
        ],
        "total_issues": len(departments) + len(arrondissements),
    }


def _pairs(session: Session, stmt) -> dict[Any, Any]:
    return {key: value for key, value in session.execute(stmt)}


def _region_counts(session: Session) -> tuple[dict, dict, dict]:
    """Departments, arrondissements and active parcels per region id."""
    departments = _pairs(
        session, select(Department.region_id, func.count()).group_by(Department.region_id)
    )
    arrondissements = _pairs(
        session,
        select(Department.region_id, func.count())
        .select_from(Arrondissement)
        .join(Department, Department.id == Arrondissement.department_id)
        .group_by(Department.region_id),
    )
    parcels = _pairs(
        session,
        select(Department.region_id, func.count())
        .select_from(Parcel)
        .join(Arrondissement, Arrondissement.id == Parcel.arrondissement_id)
        .join(Department, Department.id == Arrondissement.department_id)
        .where(Parcel.is_active.is_(True))
        .group_by(Department.region_id),
    )
    return departments, arrondissements, parcels


def region_comparison(
    session: Session, backend: SpatialBackend, region_ids: list[int]
) -> list[dict[str, Any]]:
    """Detailed statistics for each region, in the order given. Areas are measured live."""
    regions = {r.id: r for r in session.scalars(select(Region).where(Region.id.in_(region_ids)))}
    missing = [region_id for region_id in region_ids if region_id not in regions]
    if missing:
        raise DivisionNotFound(f"Unknown region id(s): {', '.join(str(i) for i in missing)}")

    departments, arrondissements, parcels = _region_counts(session)
    comparison = []
    for region_id in region_ids:
        region = regions[region_id]
        rows = backend.region_area(session, region_id).rows
        area = rows[0]["area_m2"] if rows and rows[0].get("area_m2") is not None else None
        active = parcels.get(region_id, 0)
        area_km2 = round(float(area) / 1_000_000, 4) if area is not None else None
        comparison.append({
            "id": region.id,
            "name": region.name,
            "department_count": departments.get(region_id, 0),
            "arrondissement_count": arrondissements.get(region_id, 0),
            "active_parcel_count": active,
            "area_km2": area_km2,
            "parcels_per_1000_km2": round(active / area_km2 * 1000, 4) if area_km2 else None,
        })
    return comparison


def geographic_report(
    session: Session, backend: SpatialBackend, timeout_seconds: float
) -> dict[str, Any]:
    """Per-region breakdown plus platform-wide totals and the integrity issue count."""
    departments, arrondissements, parcels = _region_counts(session)
    cached_area = _pairs(session, select(RegionStatistics.region_id, RegionStatistics.area_m2))

    regions = []
    for region in session.scalars(select(Region).order_by(Region.name)):
        area = cached_area.get(region.id)
        regions.append({
            "id": region.id,
            "name": region.name,
            "department_count": departments.get(region.id, 0),
            "arrondissement_count": arrondissements.get(region.id, 0),
            "active_parcel_count": parcels.get(region.id, 0),
            "area_km2": round(area / 1_000_000, 4) if area is not None else None,
        })

    parcel_states = _pairs(session, select(Parcel.is_active, func.count()).group_by(Parcel.is_active))
    unlocated = session.scalar(
        select(func.count()).select_from(Parcel)
        .where(Parcel.is_active.is_(True), Parcel.arrondissement_id.is_(None))
    )
    issues = validate_integrity(session, backend, timeout_seconds)

    return {
        "generated_at": utcnow().isoformat(),
        "regions": regions,
        "totals": {
            "regions": len(regions),
            "departments": session.scalar(select(func.count()).select_from(Department)),
            "arrondissements": session.scalar(select(func.count()).select_from(Arrondissement)),
            "active_parcels": parcel_states.get(True, 0),
            "inactive_parcels": parcel_states.get(False, 0),
            "unlocated_parcels": unlocated,
        },
        "integrity_issue_count": len(issues),
        "statistics_cached": bool(cached_area),
    }


def platform_stats(session: Session) -> dict[str, Any]:
    """Headline numbers for the admin dashboard."""
    return {
        "users_by_type": _pairs(session, select(User.user_type, func.count()).group_by(User.user_type)),
        "active_parcels_by_activity": _pairs(
            session,
            select(Parcel.activity, func.count())
            .where(Parcel.is_active.is_(True))
            .group_by(Parcel.activity),
        ),
        "contacts_by_status": _pairs(
            session, select(Contact.status, func.count()).group_by(Contact.status)
        ),
        "subscriptions_by_status": _pairs(
            session, select(Subscription.status, func.count()).group_by(Subscription.status)
        ),
        "divisions": {
            "regions": session.scalar(select(func.count()).select_from(Region)),
            "departments": session.scalar(select(func.count()).select_from(Department)),
            "arrondissements": session.scalar(select(func.count()).select_from(Arrondissement)),
        },
    }
