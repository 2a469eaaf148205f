"""Pydantic validation schemas for GéoFoncier.

Schema Engineering Philosophy:
- Field descriptions document the API contract for clients and reviewers alike
- Enums are the canonical value sets stored in the database
- Geometry arrives as GeoJSON (divisions) or as (latitude, longitude) pairs (parcels)

Coordinate conventions:
- Parcel ``coordinates`` are [latitude, longitude] pairs, as drawn on the map client
- GeoJSON geometry is [longitude, latitude], as the GeoJSON standard requires
- Storage literals (WKT) are "longitude latitude"
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class ContactStatus(str, Enum):
    """Lifecycle of an introduction request. Moves forward only."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    """Terminal. The client has received the owner's contact details."""

    REJECTED = "rejected"
    """Terminal. The introduction was declined by an administrator."""


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle as reported by the payment gateway.

    pending -> active | failed, active -> expired. A failed or expired
    subscription is never reactivated; the user starts a new one.
    """

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    EXPIRED = "expired"


class PlanType(str, Enum):
    """Subscription plans."""

    OWNER_AREA = "owner_area"
    """Owner listing plan priced from the declared area (see pricing tiers)."""

    CLIENT_MONTHLY_AFRICA = "client_monthly_africa"
    CLIENT_ANNUAL_AFRICA = "client_annual_africa"
    CLIENT_MONTHLY_WORLD = "client_monthly_world"
    CLIENT_ANNUAL_WORLD = "client_annual_world"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class ParcelActivity(str, Enum):
    """What the owner offers on the parcel."""

    LAND_SALE = "land_sale"
    CONSTRUCTION_LEASE = "construction_lease"
    PRIVATE_PROPERTY = "private_property"


class UserType(str, Enum):
    OWNER = "owner"
    CLIENT = "client"
    ADMIN = "admin"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DocumentTarget(str, Enum):
    PARCEL = "parcel"
    SUBSCRIPTION = "subscription"


# =============================================================================
# USERS
# =============================================================================


class UserProfile(BaseModel):
    """Profile details mirrored from the identity provider."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=30)
    user_type: UserType = UserType.CLIENT


# =============================================================================
# GEOGRAPHIC HIERARCHY
# =============================================================================


class DivisionBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=150, description="Division name. Must not be blank.")
    boundary: dict[str, Any] | None = Field(
        default=None,
        description="GeoJSON Polygon or MultiPolygon in longitude/latitude order.",
    )


class RegionCreate(DivisionBase):
    pass


class DepartmentCreate(DivisionBase):
    region_id: int = Field(description="Owning region. Must exist at creation time.")


class ArrondissementCreate(DivisionBase):
    department_id: int = Field(description="Owning department. Must exist at creation time.")


class DivisionUpdate(BaseModel):
    """Partial update. Fields left out of the payload are not touched."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=150)
    boundary: dict[str, Any] | None = None
    region_id: int | None = Field(default=None, description="Departments only.")
    department_id: int | None = Field(default=None, description="Arrondissements only.")


class PointQuery(BaseModel):
    longitude: float = Field(ge=-180, le=180)
    latitude: float = Field(ge=-90, le=90)


class RegionsNearPoint(PointQuery):
    radius_km: float = Field(
        default=50, gt=0, description="Distance from the point to a region boundary, in kilometres."
    )


class RegionComparison(BaseModel):
    region_ids: list[int] = Field(min_length=2, description="Two or more region ids to compare.")


class OptimizeRequest(BaseModel):
    tolerance: float = Field(default=0.001, gt=0, le=1, description="Simplification tolerance in degrees.")


# =============================================================================
# PARCELS
# =============================================================================


class ParcelBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    is_titled: bool = Field(default=False, description="True when the parcel holds a land title.")
    title_issued_on: date | None = Field(default=None, description="Date the title was issued.")
    developed_on: date | None = Field(default=None, description="Date the parcel was put to use.")
    neighborhood: str | None = Field(default=None, max_length=150, description="Quarter or village.")
    activity: ParcelActivity = Field(default=ParcelActivity.PRIVATE_PROPERTY)
    activity_description: str | None = Field(default=None, description="Free-text description.")
    price_per_m2: Decimal = Field(default=Decimal("0"), ge=0, description="Asking price per square metre (XAF).")
    declared_area_m2: Decimal | None = Field(default=None, gt=0, description="Area declared by the owner.")


class ParcelCreate(ParcelBase):
    matricule: str = Field(min_length=1, max_length=50, description="Registry code, e.g. 'TF-001234'.")
    coordinates: list[list[float]] = Field(
        description="Boundary vertices as [latitude, longitude] pairs. At least 3 distinct points.",
        examples=[[[4.0511, 9.7679], [4.0511, 9.7690], [4.0520, 9.7690]]],
    )


class ParcelUpdate(BaseModel):
    """Partial update. Ownership is checked by the caller, not the registry."""

    model_config = ConfigDict(str_strip_whitespace=True)

    matricule: str | None = Field(default=None, min_length=1, max_length=50)
    coordinates: list[list[float]] | None = None
    is_titled: bool | None = None
    title_issued_on: date | None = None
    developed_on: date | None = None
    neighborhood: str | None = Field(default=None, max_length=150)
    activity: ParcelActivity | None = None
    activity_description: str | None = None
    price_per_m2: Decimal | None = Field(default=None, ge=0)
    declared_area_m2: Decimal | None = Field(default=None, gt=0)


class ParcelFilters(BaseModel):
    division: str | None = Field(default=None, description="Region, department or arrondissement name.")
    activity: ParcelActivity | None = None
    is_titled: bool | None = None
    price_min: Decimal | None = Field(default=None, ge=0)
    price_max: Decimal | None = Field(default=None, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


# =============================================================================
# BROKERAGE
# =============================================================================


class ContactRequest(BaseModel):
    parcel_id: UUID = Field(description="Parcel the client wants an introduction for.")


# =============================================================================
# PAYMENTS & PRICING
# =============================================================================


class Customer(BaseModel):
    email: str
    name: str
    phone: str | None = None


class PaymentInitiate(BaseModel):
    plan_type: PlanType
    period: BillingPeriod = BillingPeriod.MONTHLY
    customer: Customer
    declared_area_m2: Decimal | None = Field(
        default=None, gt=0, description="Required for the owner_area plan."
    )
    currency: str = Field(default="XAF", min_length=3, max_length=3)


class PricingSimulation(BaseModel):
    user_type: Literal["owner", "client"]
    period: BillingPeriod = BillingPeriod.MONTHLY
    area_m2: Decimal | None = Field(default=None, gt=0)
    zone: Literal["africa", "world"] = "africa"


# =============================================================================
# DOCUMENTS
# =============================================================================


class DocumentReview(BaseModel):
    notes: str | None = Field(default=None, description="Reviewer notes, shown to the owner.")
