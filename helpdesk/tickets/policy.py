"""Access rules deciding who may see and change a ticket.

Every predicate is pure and fails closed: a missing actor, an unknown role or
a ticket without identifiers yields ``False`` instead of an exception.
"""

from __future__ import annotations

from dataclasses import dataclass

from helpdesk.identity.models import Role, UserProfile

from .models import Comment, Ticket
from .state import TicketStatus


@dataclass(slots=True, frozen=True)
class Actor:
    """The authenticated caller of a ticket operation."""

    id: str
    role: Role = Role.USER

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "Actor":
        return cls(id=profile.id, role=profile.role)


def _is_admin(actor: Actor | None) -> bool:
    if actor is None or not actor.id:
        return False
    try:
        return Role(actor.role) == Role.ADMIN
    except ValueError:
        return False


def _same_user(actor: Actor | None, user_id: str | None) -> bool:
    if actor is None or not actor.id or not user_id:
        return False
    return str(actor.id) == str(user_id)


def can_view(actor: Actor | None, ticket: Ticket | None) -> bool:
    if ticket is None:
        return False
    return (
        _is_admin(actor)
        or _same_user(actor, ticket.author_id)
        or _same_user(actor, ticket.assigned_to)
    )


def can_modify(actor: Actor | None, ticket: Ticket | None) -> bool:
    if ticket is None:
        return False
    return _is_admin(actor) or _same_user(actor, ticket.author_id)


def can_comment(actor: Actor | None, ticket: Ticket | None) -> bool:
    if ticket is None:
        return False
    admin = _is_admin(actor)
    if ticket.status == TicketStatus.CLOSED and not admin:
        return False
    return admin or _same_user(actor, ticket.author_id) or _same_user(actor, ticket.assigned_to)


def can_reassign(actor: Actor | None) -> bool:
    return _is_admin(actor)


def can_manage_comment(actor: Actor | None, comment: Comment | None) -> bool:
    if comment is None:
        return False
    return _is_admin(actor) or _same_user(actor, comment.author_id)


def can_view_statistics(actor: Actor | None) -> bool:
    return _is_admin(actor)


def can_list_all(actor: Actor | None) -> bool:
    """Whether listings skip the author/assignee scoping."""

    return _is_admin(actor)
