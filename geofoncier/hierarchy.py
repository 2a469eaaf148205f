"""Geographic hierarchy store: Region ⊃ Department ⊃ Arrondissement.

Writes check parents and names up front and refuse deletes that would strand
children. Legacy rows that already break those rules are left alone here and
reported by the integrity sweep instead.
"""

import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import DivisionNotFound, DuplicateName, HasDependents, MissingName, ValidationError
from .geometry import require_polygonal, to_exchange_format
from .models import Arrondissement, Department, Parcel, Region, RegionStatistics
from .schemas import ArrondissementCreate, DepartmentCreate, DivisionUpdate, RegionCreate

logger = logging.getLogger(__name__)


def _clean_name(name: str | None) -> str:
    name = (name or "").strip()
    if not name:
        raise MissingName("Division name must not be empty")
    return name


def _boundary_literal(boundary: dict | None) -> str | None:
    return require_polygonal(boundary) if boundary is not None else None


def _reject_foreign_parents(changes: dict[str, Any], level: str, allowed: str | None) -> None:
    """Refuse parent ids that belong to another level of the hierarchy."""
    for key in ("region_id", "department_id"):
        if key != allowed and key in changes:
            raise ValidationError(f"{key} cannot be set on a {level}")


def region_to_dict(region: Region, nested: bool = False) -> dict[str, Any]:
    data = {
        "id": region.id,
        "name": region.name,
        "boundary": to_exchange_format(region.boundary),
        "created_at": region.created_at.isoformat() if region.created_at else None,
        "updated_at": region.updated_at.isoformat() if region.updated_at else None,
    }
    if nested:
        data["departments"] = [department_to_dict(d, nested=True) for d in region.departments]
    return data


def department_to_dict(department: Department, nested: bool = False) -> dict[str, Any]:
    data = {
        "id": department.id,
        "name": department.name,
        "region_id": department.region_id,
        "region_name": department.region.name if department.region else None,
        "boundary": to_exchange_format(department.boundary),
    }
    if nested:
        data["arrondissements"] = [arrondissement_to_dict(a) for a in department.arrondissements]
    return data


def arrondissement_to_dict(arrondissement: Arrondissement) -> dict[str, Any]:
    department = arrondissement.department
    return {
        "id": arrondissement.id,
        "name": arrondissement.name,
        "department_id": arrondissement.department_id,
        "department_name": department.name if department else None,
        "region_id": department.region_id if department else None,
        "boundary": to_exchange_format(arrondissement.boundary),
    }


class HierarchyStore:
    """CRUD over the three division levels for one database session."""

    def __init__(self, session: Session):
        self.session = session

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            # Only the case-insensitive region name index can trip here
            raise DuplicateName() from e

    # -------------------------------------------------------------------------
    # Regions
    # -------------------------------------------------------------------------

    def list_regions(self) -> list[Region]:
        return list(self.session.scalars(select(Region).order_by(Region.name)))

    def get_region(self, region_id: int) -> Region:
        region = self.session.get(Region, region_id)
        if region is None:
            raise DivisionNotFound(f"Region {region_id} not found")
        return region

    def get_region_by_name(self, name: str) -> Region:
        """Case-insensitive lookup."""
        region = self.session.scalar(
            select(Region).where(func.lower(Region.name) == name.strip().lower())
        )
        if region is None:
            raise DivisionNotFound(f"Region '{name}' not found")
        return region

    def _check_region_name(self, name: str, exclude_id: int | None = None) -> None:
        stmt = select(Region.id).where(func.lower(Region.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Region.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName(f"Region '{name}' already exists")

    def create_region(self, data: RegionCreate) -> Region:
        name = _clean_name(data.name)
        self._check_region_name(name)
        region = Region(name=name, boundary=_boundary_literal(data.boundary))
        self.session.add(region)
        self._commit()
        logger.info("Created region %s (%s)", region.id, region.name)
        return region

    def update_region(self, region_id: int, data: DivisionUpdate) -> Region:
        region = self.get_region(region_id)
        changes = data.model_dump(exclude_unset=True)
        _reject_foreign_parents(changes, "region", None)
        if "name" in changes:
            name = _clean_name(changes["name"])
            self._check_region_name(name, exclude_id=region.id)
            region.name = name
        if "boundary" in changes:
            region.boundary = _boundary_literal(changes["boundary"])
        self._commit()
        return region

    def delete_region(self, region_id: int) -> None:
        region = self.get_region(region_id)
        dependents = self.session.scalar(
            select(func.count()).select_from(Department).where(Department.region_id == region.id)
        )
        if dependents:
            raise HasDependents(f"Region '{region.name}' still has {dependents} department(s)")
        self.session.execute(
            delete(RegionStatistics).where(RegionStatistics.region_id == region.id)
        )
        name = region.name
        self.session.delete(region)
        self.session.commit()
        logger.info("Deleted region %s (%s)", region_id, name)

    def cached_regions(self) -> tuple[list[dict[str, Any]], str]:
        """Region statistics from the cache, or the live region list when it is empty."""
        cached = list(self.session.scalars(select(RegionStatistics).order_by(RegionStatistics.region_name)))
        if cached:
            return [
                {
                    "id": s.region_id,
                    "name": s.region_name,
                    "department_count": s.department_count,
                    "arrondissement_count": s.arrondissement_count,
                    "parcel_count": s.parcel_count,
                    "area_m2": s.area_m2,
                    "area_km2": s.area_m2 / 1_000_000 if s.area_m2 is not None else None,
                    "refreshed_at": s.refreshed_at.isoformat() if s.refreshed_at else None,
                }
                for s in cached
            ], "cache"

        logger.warning("Region statistics cache is empty, serving live region list")
        return [{"id": r.id, "name": r.name} for r in self.list_regions()], "live"

    # -------------------------------------------------------------------------
    # Departments
    # -------------------------------------------------------------------------

    def list_departments(self, region_id: int | None = None) -> list[Department]:
        stmt = select(Department).order_by(Department.name)
        if region_id is not None:
            stmt = stmt.where(Department.region_id == region_id)
        return list(self.session.scalars(stmt))

    def get_department(self, department_id: int) -> Department:
        department = self.session.get(Department, department_id)
        if department is None:
            raise DivisionNotFound(f"Department {department_id} not found")
        return department

    def create_department(self, data: DepartmentCreate) -> Department:
        name = _clean_name(data.name)
        self.get_region(data.region_id)
        department = Department(
            name=name, region_id=data.region_id, boundary=_boundary_literal(data.boundary)
        )
        self.session.add(department)
        self._commit()
        logger.info("Created department %s (%s) in region %s", department.id, name, data.region_id)
        return department

    def update_department(self, department_id: int, data: DivisionUpdate) -> Department:
        department = self.get_department(department_id)
        changes = data.model_dump(exclude_unset=True)
        _reject_foreign_parents(changes, "department", "region_id")
        if "name" in changes:
            department.name = _clean_name(changes["name"])
        if "region_id" in changes:
            if changes["region_id"] is None:
                raise ValidationError("A department must belong to a region")
            department.region_id = self.get_region(changes["region_id"]).id
        if "boundary" in changes:
            department.boundary = _boundary_literal(changes["boundary"])
        self._commit()
        return department

    def delete_department(self, department_id: int) -> None:
        department = self.get_department(department_id)
        dependents = self.session.scalar(
            select(func.count())
            .select_from(Arrondissement)
            .where(Arrondissement.department_id == department.id)
        )
        if dependents:
            raise HasDependents(
                f"Department '{department.name}' still has {dependents} arrondissement(s)"
            )
        name = department.name
        self.session.delete(department)
        self.session.commit()
        logger.info("Deleted department %s (%s)", department_id, name)

    # -------------------------------------------------------------------------
    # Arrondissements
    # -------------------------------------------------------------------------

    def list_arrondissements(
        self, region_id: int | None = None, department_id: int | None = None
    ) -> list[Arrondissement]:
        stmt = select(Arrondissement).order_by(Arrondissement.name)
        if department_id is not None:
            stmt = stmt.where(Arrondissement.department_id == department_id)
        if region_id is not None:
            stmt = stmt.join(Department, Department.id == Arrondissement.department_id).where(
                Department.region_id == region_id
            )
        return list(self.session.scalars(stmt))

    def get_arrondissement(self, arrondissement_id: int) -> Arrondissement:
        arrondissement = self.session.get(Arrondissement, arrondissement_id)
        if arrondissement is None:
            raise DivisionNotFound(f"Arrondissement {arrondissement_id} not found")
        return arrondissement

    def create_arrondissement(self, data: ArrondissementCreate) -> Arrondissement:
        name = _clean_name(data.name)
        self.get_department(data.department_id)
        arrondissement = Arrondissement(
            name=name, department_id=data.department_id, boundary=_boundary_literal(data.boundary)
        )
        self.session.add(arrondissement)
        self._commit()
        logger.info(
            "Created arrondissement %s (%s) in department %s", arrondissement.id, name, data.department_id
        )
        return arrondissement

    def update_arrondissement(self, arrondissement_id: int, data: DivisionUpdate) -> Arrondissement:
        arrondissement = self.get_arrondissement(arrondissement_id)
        changes = data.model_dump(exclude_unset=True)
        _reject_foreign_parents(changes, "arrondissement", "department_id")
        if "name" in changes:
            arrondissement.name = _clean_name(changes["name"])
        if "department_id" in changes:
            if changes["department_id"] is None:
                raise ValidationError("An arrondissement must belong to a department")
            arrondissement.department_id = self.get_department(changes["department_id"]).id
        if "boundary" in changes:
            arrondissement.boundary = _boundary_literal(changes["boundary"])
        self._commit()
        return arrondissement

    def delete_arrondissement(self, arrondissement_id: int) -> None:
        arrondissement = self.get_arrondissement(arrondissement_id)
        dependents = self.session.scalar(
            select(func.count()).select_from(Parcel).where(Parcel.arrondissement_id == arrondissement.id)
        )
        if dependents:
            raise HasDependents(
                f"Arrondissement '{arrondissement.name}' is referenced by {dependents} parcel(s)"
            )
        name = arrondissement.name
        self.session.delete(arrondissement)
        self.session.commit()
        logger.info("Deleted arrondissement %s (%s)", arrondissement_id, name)

    # -------------------------------------------------------------------------
    # Flattened view
    # -------------------------------------------------------------------------

    def list_divisions(self) -> list[dict[str, Any]]:
        """One row per region/department/arrondissement path, regions without children included."""
        stmt = (
            select(
                Region.id, Region.name,
                Department.id, Department.name,
                Arrondissement.id, Arrondissement.name,
            )
            .select_from(Region)
            .outerjoin(Department, Department.region_id == Region.id)
            .outerjoin(Arrondissement, Arrondissement.department_id == Department.id)
            .order_by(Region.name, Department.name, Arrondissement.name)
        )
        return [
            {
                "region_id": region_id,
                "region_name": region_name,
                "department_id": department_id,
                "department_name": department_name,
                "arrondissement_id": arrondissement_id,
                "arrondissement_name": arrondissement_name,
            }
            for (
                region_id, region_name,
                department_id, department_name,
                arrondissement_id, arrondissement_name,
            ) in self.session.execute(stmt)
        ]

    def arrondissements_under(self, name: str) -> list[int]:
        """Arrondissement ids under any division whose name matches, case-insensitively."""
        key = name.strip().lower()
        stmt = (
            select(Arrondissement.id)
            .select_from(Arrondissement)
            .outerjoin(Department, Department.id == Arrondissement.department_id)
            .outerjoin(Region, Region.id == Department.region_id)
            .where(
                (func.lower(Arrondissement.name) == key)
                | (func.lower(Department.name) == key)
                | (func.lower(Region.name) == key)
            )
        )
        return list(self.session.scalars(stmt))
