# busconnect/domain/caller.py

from dataclasses import dataclass
from enum import Enum


class UserRole(str, Enum):
    STUDENT = "student"
    ORGANIZER = "organizer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """Authenticated identity passed explicitly into every core operation."""

    user_id: str
    email: str | None = None
    role: UserRole = UserRole.STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id
