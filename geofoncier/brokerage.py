"""Contact brokerage: introductions between a client and a parcel owner.

States:
    pending -> accepted   (owner details disclosed to the client)
    pending -> rejected

Both outcomes are terminal. A transition is one conditional UPDATE guarded on
``status = 'pending'``: of two concurrent approvals exactly one changes the
row, and only that one sends the disclosure email. Email delivery is
best-effort and never undoes a transition.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .config import Settings
from .errors import AlreadyResolved, ContactNotFound, ParcelNotFound, ValidationError
from .models import Contact, Parcel, utcnow
from .notifications import (
    FEE_SCHEDULE,
    NotificationError,
    Notifier,
    contact_disclosure_notice,
    contact_request_notice,
)
from .schemas import ContactStatus
from .users import get_user

logger = logging.getLogger(__name__)

VALID_CONTACT_TRANSITIONS = {
    ContactStatus.PENDING: {ContactStatus.ACCEPTED, ContactStatus.REJECTED},
    ContactStatus.ACCEPTED: set(),  # terminal
    ContactStatus.REJECTED: set(),  # terminal
}


def contact_to_dict(contact: Contact) -> dict[str, Any]:
    return {
        "id": str(contact.id),
        "client_id": str(contact.client_id),
        "owner_id": str(contact.owner_id),
        "parcel_id": str(contact.parcel_id),
        "matricule": contact.parcel.matricule if contact.parcel else None,
        "status": contact.status,
        "requested_at": contact.requested_at.isoformat() if contact.requested_at else None,
        "resolved_at": contact.resolved_at.isoformat() if contact.resolved_at else None,
    }


class BrokerageService:
    def __init__(self, session: Session, notifier: Notifier, settings: Settings):
        self.session = session
        self.notifier = notifier
        self.settings = settings

    def _notify(self, to: str | None, subject: str, html: str) -> bool:
        """Best-effort delivery. Returns whether the message went out."""
        if not to:
            logger.warning("No recipient address for '%s', notification skipped", subject)
            return False
        try:
            self.notifier.send(to, subject, html)
        except NotificationError as e:
            logger.warning("Notification '%s' to %s failed: %s", subject, to, e)
            return False
        return True

    def initiate(self, client_id: uuid.UUID, parcel_id: uuid.UUID) -> Contact:
        """Open a pending request bound to the parcel's owner at this moment."""
        parcel = self.session.get(Parcel, parcel_id)
        if parcel is None or not parcel.is_active:
            raise ParcelNotFound(f"Parcel {parcel_id} not found")
        client = get_user(self.session, client_id)
        if parcel.owner_id == client.id:
            raise ValidationError("You cannot request an introduction to your own parcel")

        contact = Contact(
            client_id=client.id,
            owner_id=parcel.owner_id,
            parcel_id=parcel.id,
            status=ContactStatus.PENDING.value,
        )
        self.session.add(contact)
        self.session.commit()
        logger.info("Contact %s opened by client %s for parcel %s", contact.id, client.id, parcel.matricule)

        subject, html = contact_request_notice(
            client_name=client.full_name,
            client_email=client.email,
            owner_name=parcel.owner.full_name,
            matricule=parcel.matricule,
            contact_id=str(contact.id),
            app_url=self.settings.app_url,
        )
        self._notify(self.settings.admin_email, subject, html)
        return contact

    def _resolve(self, contact_id: uuid.UUID, outcome: ContactStatus) -> Contact:
        if outcome not in VALID_CONTACT_TRANSITIONS[ContactStatus.PENDING]:
            raise ValidationError(f"Cannot resolve a contact as {outcome.value}")
        result = self.session.execute(
            update(Contact)
            .where(Contact.id == contact_id, Contact.status == ContactStatus.PENDING.value)
            .values(status=outcome.value, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        contact = self.session.get(Contact, contact_id)
        if contact is None:
            raise ContactNotFound(f"Contact {contact_id} not found")
        if result.rowcount == 0:
            raise AlreadyResolved(f"Contact {contact_id} is already {contact.status}")
        logger.info("Contact %s %s", contact_id, outcome.value)
        return contact

    def approve(self, contact_id: uuid.UUID) -> Contact:
        """Accept the request and disclose the owner's details to the client."""
        contact = self._resolve(contact_id, ContactStatus.ACCEPTED)
        subject, html = contact_disclosure_notice(
            client_name=contact.client.full_name,
            owner_name=contact.owner.full_name,
            owner_email=contact.owner.email,
            owner_phone=contact.owner.phone,
            matricule=contact.parcel.matricule,
        )
        self._notify(contact.client.email, subject, html)
        return contact

    def reject(self, contact_id: uuid.UUID) -> Contact:
        return self._resolve(contact_id, ContactStatus.REJECTED)

    def history(self, user_id: uuid.UUID) -> list[Contact]:
        """Every contact where the user is the client or the owner, newest first."""
        return list(self.session.scalars(
            select(Contact)
            .where(or_(Contact.client_id == user_id, Contact.owner_id == user_id))
            .order_by(Contact.requested_at.desc())
        ))

    def list_all(self, status: ContactStatus | None = None) -> list[Contact]:
        stmt = select(Contact).order_by(Contact.requested_at.desc())
        if status is not None:
            stmt = stmt.where(Contact.status == ContactStatus(status).value)
        return list(self.session.scalars(stmt))

    @staticmethod
    def fee_schedule() -> dict[str, int]:
        return dict(FEE_SCHEDULE)
