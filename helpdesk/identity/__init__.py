"""Identity store collaborator: user lookup and roles."""

from .directory import DuplicateUserError, IdentityError, UserDirectory
from .models import Role, UserProfile

__all__ = ["DuplicateUserError", "IdentityError", "Role", "UserDirectory", "UserProfile"]
