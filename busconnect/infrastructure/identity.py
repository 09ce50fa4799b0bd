# busconnect/infrastructure/identity.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from busconnect.infrastructure.db.models import Profile
from busconnect.domain.caller import Caller, UserRole


class ProfileIdentityLookup:
    """Resolves a bearer token to the caller it belongs to."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, token: str | None) -> Caller | None:
        if not token:
            return None

        profile = self.db.execute(
            select(Profile).where(Profile.access_token == token)
        ).scalar_one_or_none()
        if not profile:
            return None

        try:
            role = UserRole(profile.role)
        except ValueError:
            role = UserRole.STUDENT

        return Caller(user_id=profile.user_id, email=profile.email, role=role)
