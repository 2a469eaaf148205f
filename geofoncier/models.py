"""SQLAlchemy models for the GéoFoncier registry.

Data Architecture Overview:
- Geographic hierarchy: Region ⊃ Department ⊃ Arrondissement (reference data, integer ids)
- Parcel is the CENTRAL ENTITY: owned by a User, optionally located in an Arrondissement
- Contact records a brokerage request between a client and the parcel owner at request time
- Subscription mirrors the state the payment gateway reports; it gates owner listings

Key Concepts:
- Boundaries are stored as PostGIS geometry (SRID 4326) and surface in Python as WKT text
- Parcels are never physically deleted: ``is_active`` flips to False
- Status columns only move forward; transitions are conditional UPDATEs (see brokerage, payments)

References:
- See geofoncier/schemas.py for the enum value sets stored in status columns
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from geoalchemy2 import Geometry, WKBElement, WKTElement
from geoalchemy2.shape import to_shape
from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import ContactStatus, DocumentStatus, SubscriptionStatus

SRID = 4326


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Boundary(TypeDecorator):
    """Geometry column: PostGIS ``geometry`` on PostgreSQL, WKT text elsewhere.

    The Python-side value is always a WKT string, whichever dialect stores it.
    """

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Geometry(geometry_type="GEOMETRY", srid=SRID))
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != "postgresql":
            return value
        return WKTElement(value, srid=SRID)

    def process_result_value(self, value, dialect):
        if value is None or dialect.name != "postgresql":
            return value
        if not isinstance(value, WKBElement):
            # Raw hex EWKB when no column expression was applied
            value = WKBElement(value if isinstance(value, str) else bytes(value))
        return to_shape(value).wkt


class User(Base):
    """Local profile of an account managed by the identity provider."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(30))
    user_type: Mapped[str] = mapped_column(String(20), default="client")  # owner, client, admin
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.full_name} ({self.user_type})>"


# =============================================================================
# GEOGRAPHIC HIERARCHY
# =============================================================================


class Region(Base):
    """Top-level administrative division. Names are unique ignoring case."""

    __tablename__ = "regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    boundary: Mapped[str | None] = mapped_column(Boundary)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    departments: Mapped[list["Department"]] = relationship(
        "Department", back_populates="region", order_by="Department.name"
    )

    def __repr__(self) -> str:
        return f"<Region {self.id}: {self.name}>"


Index("uq_regions_name_lower", func.lower(Region.name), unique=True)


class Department(Base):
    """Second-level division.

    ``region_id`` is required by the API but nullable in the table: legacy rows
    without a parent are reported by the integrity sweep, not rejected on load.
    """

    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    region_id: Mapped[int | None] = mapped_column(ForeignKey("regions.id"), index=True)
    boundary: Mapped[str | None] = mapped_column(Boundary)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    region: Mapped["Region | None"] = relationship("Region", back_populates="departments")
    arrondissements: Mapped[list["Arrondissement"]] = relationship(
        "Arrondissement", back_populates="department", order_by="Arrondissement.name"
    )

    def __repr__(self) -> str:
        return f"<Department {self.id}: {self.name}>"


class Arrondissement(Base):
    """Third-level division, the finest unit parcels are attached to."""

    __tablename__ = "arrondissements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id"), index=True)
    boundary: Mapped[str | None] = mapped_column(Boundary)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    department: Mapped["Department | None"] = relationship(
        "Department", back_populates="arrondissements"
    )

    def __repr__(self) -> str:
        return f"<Arrondissement {self.id}: {self.name}>"


class RegionStatistics(Base):
    """Precomputed per-region aggregates.

    Rebuilt as a whole by ``SpatialQueryEngine.refresh_cache``; readers may see
    the previous snapshot until a refresh commits.
    """

    __tablename__ = "region_statistics"

    region_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    region_name: Mapped[str] = mapped_column(String(150), nullable=False)
    department_count: Mapped[int] = mapped_column(Integer, default=0)
    arrondissement_count: Mapped[int] = mapped_column(Integer, default=0)
    parcel_count: Mapped[int] = mapped_column(Integer, default=0)
    area_m2: Mapped[float | None] = mapped_column(Float)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# PARCELS
# =============================================================================


class Parcel(Base):
    """A registered land parcel."""

    __tablename__ = "parcels"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    matricule: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        doc="Registry code assigned by the land office. Not guaranteed unique."
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    boundary: Mapped[str] = mapped_column(Boundary, nullable=False)
    arrondissement_id: Mapped[int | None] = mapped_column(
        ForeignKey("arrondissements.id"), index=True,
        doc="Resolved from the boundary centroid at creation; null when outside every division."
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_titled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    title_issued_on: Mapped[date | None] = mapped_column(Date)
    developed_on: Mapped[date | None] = mapped_column(Date)
    neighborhood: Mapped[str | None] = mapped_column(String(150))
    activity: Mapped[str] = mapped_column(String(30), default="private_property")
    activity_description: Mapped[str | None] = mapped_column(Text)
    price_per_m2: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    declared_area_m2: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    owner: Mapped["User"] = relationship("User")
    arrondissement: Mapped["Arrondissement | None"] = relationship("Arrondissement")
    images: Mapped[list["ParcelImage"]] = relationship(
        "ParcelImage", back_populates="parcel", order_by="ParcelImage.position"
    )

    def __repr__(self) -> str:
        return f"<Parcel {self.matricule} active={self.is_active}>"


class ParcelImage(Base):
    """Image attached to a parcel. ``position`` is assignment order, starting at 1."""

    __tablename__ = "parcel_images"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    parcel_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("parcels.id"), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    parcel: Mapped["Parcel"] = relationship("Parcel", back_populates="images")


# =============================================================================
# BROKERAGE
# =============================================================================


class Contact(Base):
    """An introduction request from a client to a parcel owner.

    ``owner_id`` is copied from the parcel when the request is made and is never
    re-derived, even if the parcel changes hands afterwards.
    """

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    parcel_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("parcels.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ContactStatus.PENDING.value, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    client: Mapped["User"] = relationship("User", foreign_keys=[client_id])
    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id])
    parcel: Mapped["Parcel"] = relationship("Parcel")

    def __repr__(self) -> str:
        return f"<Contact {self.id} {self.status}>"


# =============================================================================
# SUBSCRIPTIONS & DOCUMENTS
# =============================================================================


class Subscription(Base):
    """Paid plan. State follows what the payment gateway reports."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    plan_type: Mapped[str] = mapped_column(String(40), nullable=False)
    period: Mapped[str] = mapped_column(String(10), default="monthly")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="XAF")
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.PENDING.value, nullable=False
    )
    gateway_reference: Mapped[str] = mapped_column(
        String(80), unique=True, nullable=False,
        doc="Our transaction reference (tx_ref) echoed back by the gateway."
    )
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(80))
    declared_area_m2: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    pricing_tier: Mapped[str | None] = mapped_column(String(80))
    starts_on: Mapped[date | None] = mapped_column(Date)
    ends_on: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<Subscription {self.gateway_reference} {self.status}>"


class Document(Base):
    """Supporting document (title deed, ID card...) awaiting verification."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    target: Mapped[str] = mapped_column(String(20), nullable=False)  # parcel, subscription
    target_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    document_type: Mapped[str] = mapped_column(String(40), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DocumentStatus.PENDING.value, nullable=False)
    review_notes: Mapped[str | None] = mapped_column(Text)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
