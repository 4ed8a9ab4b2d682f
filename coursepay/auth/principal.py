# coursepay/auth/principal.py
import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller"""
    user_id: str
    role: Role = Role.STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
