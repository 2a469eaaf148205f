"""Parcel registry.

Parcels are soft-deleted: ``is_active`` goes False and the row stays, so
history, contacts and integrity reports keep pointing at something real.
Every listing path filters on ``is_active`` explicitly; only direct lookup by
id returns inactive parcels.

Authorization (who may edit which parcel) is decided at the API boundary;
the registry trusts its caller.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import Settings
from .errors import NoContainingDivision, ParcelNotFound, SubscriptionRequired, ValidationError
from .geometry import centroid_of, to_exchange_format, to_storage_literal
from .models import Parcel, ParcelImage
from .payments import has_active_subscription
from .schemas import ParcelCreate, ParcelFilters, ParcelUpdate
from .spatial import SpatialQueryEngine, SpatialResult
from .storage import ObjectStore
from .users import get_user

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
MAX_IMAGES_PER_UPLOAD = 3
MAX_IMAGE_BYTES = 5 * 1024 * 1024


@dataclass
class ImageUpload:
    file_name: str
    content_type: str
    data: bytes


def parcel_to_dict(parcel: Parcel) -> dict[str, Any]:
    arrondissement = parcel.arrondissement
    return {
        "id": str(parcel.id),
        "matricule": parcel.matricule,
        "owner_id": str(parcel.owner_id),
        "boundary": to_exchange_format(parcel.boundary),
        "arrondissement_id": parcel.arrondissement_id,
        "arrondissement_name": arrondissement.name if arrondissement else None,
        "is_active": parcel.is_active,
        "is_titled": parcel.is_titled,
        "title_issued_on": parcel.title_issued_on.isoformat() if parcel.title_issued_on else None,
        "developed_on": parcel.developed_on.isoformat() if parcel.developed_on else None,
        "neighborhood": parcel.neighborhood,
        "activity": parcel.activity,
        "activity_description": parcel.activity_description,
        "price_per_m2": float(parcel.price_per_m2) if parcel.price_per_m2 is not None else None,
        "declared_area_m2": float(parcel.declared_area_m2) if parcel.declared_area_m2 is not None else None,
        "images": [{"url": image.url, "position": image.position} for image in parcel.images],
        "created_at": parcel.created_at.isoformat() if parcel.created_at else None,
        "updated_at": parcel.updated_at.isoformat() if parcel.updated_at else None,
    }


class ParcelRegistry:
    def __init__(
        self,
        session: Session,
        engine: SpatialQueryEngine,
        store: ObjectStore,
        settings: Settings,
    ):
        self.session = session
        self.engine = engine
        self.store = store
        self.settings = settings

    def _locate(self, literal: str) -> int | None:
        """Arrondissement containing the boundary's centroid, if any."""
        center = centroid_of(literal)
        if center is None:
            return None
        try:
            location = self.engine.locate_by_point(*center)
        except NoContainingDivision:
            return None
        arrondissement = location["arrondissement"]
        return arrondissement["id"] if arrondissement else None

    def create(self, owner_id: uuid.UUID, data: ParcelCreate) -> Parcel:
        """Validate the boundary and register an active parcel for ``owner_id``."""
        literal = to_storage_literal(data.coordinates)
        get_user(self.session, owner_id)
        if self.settings.require_subscription_for_listing and not has_active_subscription(
            self.session, owner_id
        ):
            raise SubscriptionRequired("Listing a parcel requires an active owner subscription")

        fields = data.model_dump(exclude={"coordinates"})
        fields["activity"] = data.activity.value
        parcel = Parcel(
            owner_id=owner_id,
            boundary=literal,
            arrondissement_id=self._locate(literal),
            is_active=True,
            **fields,
        )
        self.session.add(parcel)
        self.session.commit()
        logger.info(
            "Registered parcel %s (%s) for owner %s in arrondissement %s",
            parcel.id, parcel.matricule, owner_id, parcel.arrondissement_id,
        )
        return parcel

    def list_parcels(self, filters: ParcelFilters) -> list[Parcel]:
        stmt = select(Parcel).where(Parcel.is_active.is_(True))
        if filters.division:
            arrondissement_ids = self.engine.hierarchy.arrondissements_under(filters.division)
            if not arrondissement_ids:
                return []
            stmt = stmt.where(Parcel.arrondissement_id.in_(arrondissement_ids))
        if filters.activity is not None:
            stmt = stmt.where(Parcel.activity == filters.activity.value)
        if filters.is_titled is not None:
            stmt = stmt.where(Parcel.is_titled.is_(filters.is_titled))
        if filters.price_min is not None:
            stmt = stmt.where(Parcel.price_per_m2 >= filters.price_min)
        if filters.price_max is not None:
            stmt = stmt.where(Parcel.price_per_m2 <= filters.price_max)
        stmt = stmt.order_by(Parcel.created_at.desc()).limit(filters.limit)
        return list(self.session.scalars(stmt))

    def get_by_id(self, parcel_id: uuid.UUID) -> Parcel:
        """Direct lookup. Inactive parcels are returned too."""
        parcel = self.session.get(Parcel, parcel_id)
        if parcel is None:
            raise ParcelNotFound(f"Parcel {parcel_id} not found")
        return parcel

    def _get_active(self, parcel_id: uuid.UUID) -> Parcel:
        parcel = self.get_by_id(parcel_id)
        if not parcel.is_active:
            raise ParcelNotFound(f"Parcel {parcel_id} has been removed")
        return parcel

    def search_by_matricule(self, fragment: str, limit: int = 50) -> list[Parcel]:
        """Active parcels whose matricule contains ``fragment``, ignoring case."""
        fragment = (fragment or "").strip()
        if not fragment:
            raise ValidationError("Search text must not be empty")
        stmt = (
            select(Parcel)
            .where(
                Parcel.is_active.is_(True),
                func.lower(Parcel.matricule).contains(fragment.lower(), autoescape=True),
            )
            .order_by(Parcel.matricule)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def update(self, parcel_id: uuid.UUID, data: ParcelUpdate) -> Parcel:
        """Apply the fields present in ``data``; everything else is left as is."""
        parcel = self._get_active(parcel_id)
        changes = data.model_dump(exclude_unset=True)

        if "coordinates" in changes:
            if changes["coordinates"] is None:
                raise ValidationError("A parcel boundary cannot be removed")
            literal = to_storage_literal(changes.pop("coordinates"))
            parcel.boundary = literal
            parcel.arrondissement_id = self._locate(literal)
        for name in ("matricule", "is_titled", "activity"):
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be cleared")
        if changes.get("activity") is not None:
            changes["activity"] = changes["activity"].value
        for name, value in changes.items():
            setattr(parcel, name, value)

        self.session.commit()
        logger.info("Updated parcel %s: %s", parcel.id, ", ".join(sorted(data.model_fields_set)))
        return parcel

    def soft_delete(self, parcel_id: uuid.UUID) -> Parcel:
        parcel = self.get_by_id(parcel_id)
        if parcel.is_active:
            parcel.is_active = False
            self.session.commit()
            logger.info("Deactivated parcel %s (%s)", parcel.id, parcel.matricule)
        return parcel

    def attach_images(self, parcel_id: uuid.UUID, files: list[ImageUpload]) -> list[ParcelImage]:
        """Store images and append them after the existing ones, in upload order."""
        parcel = self._get_active(parcel_id)
        if not files:
            raise ValidationError("No image provided")
        if len(files) > MAX_IMAGES_PER_UPLOAD:
            raise ValidationError(f"At most {MAX_IMAGES_PER_UPLOAD} images per upload")
        for upload in files:
            if upload.content_type not in IMAGE_MIME_TYPES:
                raise ValidationError(f"{upload.file_name}: only JPEG, PNG and WebP images are accepted")
            if not upload.data or len(upload.data) > MAX_IMAGE_BYTES:
                raise ValidationError(f"{upload.file_name}: images must be between 1 byte and 5 MB")

        last = self.session.scalar(
            select(func.max(ParcelImage.position)).where(ParcelImage.parcel_id == parcel.id)
        ) or 0

        images = []
        for offset, upload in enumerate(files, start=1):
            key = f"parcels/{parcel.id}/{uuid.uuid4().hex}-{upload.file_name}"
            url = self.store.put(key, upload.data, upload.content_type)
            image = ParcelImage(parcel_id=parcel.id, url=url, position=last + offset)
            self.session.add(image)
            images.append(image)
        self.session.commit()
        logger.info("Attached %d image(s) to parcel %s", len(images), parcel.id)
        return images

    def check_overlaps(self, parcel_id: uuid.UUID) -> SpatialResult:
        return self.engine.detect_overlaps(parcel_id)
