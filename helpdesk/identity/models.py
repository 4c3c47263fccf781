from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Supported roles."""

    USER = "user"
    ADMIN = "admin"


@dataclass(slots=True, frozen=True)
class UserProfile:
    """User record as resolved from the identity store."""

    id: str
    name: str
    email: str
    role: Role
