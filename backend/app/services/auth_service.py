"""Auth service - user lookup and role profiles for authenticated requests"""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from app.models.user import User
from app.models.profile import PROFILE_MODELS

logger = logging.getLogger(__name__)


def get_user_by_id(user_id: str, db: Session = None) -> Optional[User]:
    """Get user by ID"""
    from app.db.session import SessionLocal

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(User).filter(User.id == user_id).first()
    finally:
        if should_close:
            db.close()


def get_or_create_role_profile(user: User, db: Session):
    """Get the role profile, adding an empty one to the session if missing.

    Does not commit; callers own the transaction.
    """
    model = PROFILE_MODELS.get(user.role or "")
    if model is None:
        return None
    profile = db.query(model).filter(model.user_id == user.id).first()
    if profile is None:
        logger.warning(f"No {user.role} profile for user {user.id}, creating one")
        profile = model(user_id=user.id)
        db.add(profile)
    return profile
