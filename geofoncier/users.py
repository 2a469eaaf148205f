"""Local user profiles.

Accounts live with the identity provider; this table only mirrors the details
the registry needs (names and contact details for brokerage notices).
"""

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import Conflict, NotFound
from .models import User
from .schemas import UserProfile

logger = logging.getLogger(__name__)


def get_user(session: Session, user_id: uuid.UUID) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} has no profile")
    return user


def sync_profile(session: Session, user_id: uuid.UUID, profile: UserProfile) -> User:
    """Create or refresh the local profile for an authenticated user."""
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
        logger.info("Created profile for user %s", user_id)
    user.full_name = profile.full_name
    user.email = profile.email
    user.phone = profile.phone
    user.user_type = profile.user_type.value
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise Conflict(f"Email {profile.email} is already used by another profile") from e
    return user


def user_to_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "full_name": user.full_name,
        "email": user.email,
        "phone": user.phone,
        "user_type": user.user_type,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
