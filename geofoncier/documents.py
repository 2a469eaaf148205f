"""Supporting documents for parcels and subscriptions.

Owners upload title deeds, ID cards and the like; administrators verify or
reject them. Review is one-way: pending -> verified | rejected.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import (
    DocumentNotFound,
    Forbidden,
    InvalidTransition,
    ParcelNotFound,
    SubscriptionNotFound,
    ValidationError,
)
from .models import Document, Parcel, Subscription, utcnow
from .schemas import DocumentStatus, DocumentTarget
from .storage import ObjectStore

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = {
    DocumentTarget.PARCEL: [
        {"value": "land_deed", "label": "Land deed", "required": True},
        {"value": "property_title", "label": "Property title", "required": False},
        {"value": "occupancy_certificate", "label": "Occupancy certificate", "required": False},
        {"value": "cadastral_plan", "label": "Cadastral plan", "required": False},
        {"value": "other", "label": "Other document", "required": False},
    ],
    DocumentTarget.SUBSCRIPTION: [
        {"value": "proof_of_ownership", "label": "Proof of ownership", "required": True},
        {"value": "identity_document", "label": "Identity document", "required": True},
        {"value": "proof_of_address", "label": "Proof of address", "required": False},
        {"value": "other", "label": "Other document", "required": False},
    ],
}

ALLOWED_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024


def document_to_dict(document: Document) -> dict[str, Any]:
    return {
        "id": str(document.id),
        "target": document.target,
        "target_id": str(document.target_id),
        "document_type": document.document_type,
        "file_name": document.file_name,
        "url": document.url,
        "size_bytes": document.size_bytes,
        "mime_type": document.mime_type,
        "status": document.status,
        "review_notes": document.review_notes,
        "reviewed_at": document.reviewed_at.isoformat() if document.reviewed_at else None,
        "created_at": document.created_at.isoformat() if document.created_at else None,
    }


class DocumentService:
    def __init__(self, session: Session, store: ObjectStore):
        self.session = session
        self.store = store

    def owner_of(self, target: DocumentTarget, target_id: uuid.UUID) -> uuid.UUID:
        if target == DocumentTarget.PARCEL:
            parcel = self.session.get(Parcel, target_id)
            if parcel is None:
                raise ParcelNotFound(f"Parcel {target_id} not found")
            return parcel.owner_id
        subscription = self.session.get(Subscription, target_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {target_id} not found")
        return subscription.user_id

    def upload(
        self,
        user_id: uuid.UUID,
        target: DocumentTarget,
        target_id: uuid.UUID,
        document_type: str,
        file_name: str,
        content_type: str,
        data: bytes,
    ) -> Document:
        target = DocumentTarget(target)
        allowed = {t["value"] for t in DOCUMENT_TYPES[target]}
        if document_type not in allowed:
            raise ValidationError(f"Unknown {target.value} document type '{document_type}'")
        if content_type not in ALLOWED_MIME_TYPES:
            raise ValidationError("File type not allowed. Accepted formats: PDF, JPG, PNG, DOC, DOCX")
        if not data:
            raise ValidationError("Empty file")
        if len(data) > MAX_DOCUMENT_BYTES:
            raise ValidationError(f"File exceeds {MAX_DOCUMENT_BYTES // (1024 * 1024)} MB")
        if self.owner_of(target, target_id) != user_id:
            raise Forbidden(f"Only the owner can attach documents to this {target.value}")

        document_id = uuid.uuid4()
        key = f"documents/{target.value}/{target_id}/{document_id}-{file_name}"
        url = self.store.put(key, data, content_type)

        document = Document(
            id=document_id,
            target=target.value,
            target_id=target_id,
            owner_id=user_id,
            document_type=document_type,
            file_name=file_name,
            url=url,
            size_bytes=len(data),
            mime_type=content_type,
        )
        self.session.add(document)
        self.session.commit()
        logger.info("Stored %s document %s for %s %s", document_type, document.id, target.value, target_id)
        return document

    def list_for(self, target: DocumentTarget, target_id: uuid.UUID) -> list[Document]:
        return list(self.session.scalars(
            select(Document)
            .where(Document.target == DocumentTarget(target).value, Document.target_id == target_id)
            .order_by(Document.created_at.desc())
        ))

    def pending(self) -> list[Document]:
        return list(self.session.scalars(
            select(Document)
            .where(Document.status == DocumentStatus.PENDING.value)
            .order_by(Document.created_at)
        ))

    def _review(self, document_id: uuid.UUID, outcome: DocumentStatus, notes: str | None) -> Document:
        result = self.session.execute(
            update(Document)
            .where(Document.id == document_id, Document.status == DocumentStatus.PENDING.value)
            .values(status=outcome.value, review_notes=notes, reviewed_at=utcnow())
        )
        self.session.commit()
        document = self.session.get(Document, document_id)
        if document is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        if result.rowcount == 0:
            raise InvalidTransition(f"Document {document_id} was already {document.status}")
        self.session.refresh(document)
        logger.info("Document %s %s", document_id, outcome.value)
        return document

    def verify(self, document_id: uuid.UUID, notes: str | None = None) -> Document:
        return self._review(document_id, DocumentStatus.VERIFIED, notes)

    def reject(self, document_id: uuid.UUID, notes: str | None = None) -> Document:
        return self._review(document_id, DocumentStatus.REJECTED, notes)

    def check_completeness(self, target: DocumentTarget, target_id: uuid.UUID) -> dict[str, Any]:
        """Whether every required document type has an upload that was not rejected."""
        target = DocumentTarget(target)
        self.owner_of(target, target_id)
        required = [t["value"] for t in DOCUMENT_TYPES[target] if t["required"]]
        provided = set(self.session.scalars(
            select(Document.document_type).where(
                Document.target == target.value,
                Document.target_id == target_id,
                Document.status != DocumentStatus.REJECTED.value,
            )
        ))
        missing = [document_type for document_type in required if document_type not in provided]
        return {
            "target": target.value,
            "target_id": str(target_id),
            "is_complete": not missing,
            "required": required,
            "missing": missing,
        }

    def statistics(self) -> dict[str, Any]:
        rows = self.session.execute(
            select(
                Document.target,
                Document.status,
                func.count(),
                func.coalesce(func.sum(Document.size_bytes), 0),
            )
            .group_by(Document.target, Document.status)
        ).all()
        by_target: dict[str, dict[str, int]] = {}
        by_status: dict[str, int] = {}
        total_bytes = 0
        for target, status, count, size in rows:
            by_target.setdefault(target, {})[status] = count
            by_status[status] = by_status.get(status, 0) + count
            total_bytes += int(size)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_target": by_target,
            "total_bytes": total_bytes,
        }
