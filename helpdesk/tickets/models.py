from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

from .state import TicketPriority, TicketStatus


class HistoryAction(str, Enum):
    """Kinds of entries recorded in a ticket's history."""

    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    COMMENTED = "commented"


@dataclass(slots=True, frozen=True)
class UserSummary:
    """Display fields of a user referenced by a ticket."""

    id: str
    name: str
    email: str


@dataclass(slots=True)
class Comment:
    """A comment owned by a ticket."""

    id: str
    ticket_id: str
    content: str
    author_id: str
    created_at: datetime
    updated_at: datetime
    is_edited: bool = False


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """Immutable audit record of one change to a ticket."""

    id: str
    action: HistoryAction
    user_id: str
    timestamp: datetime
    description: str
    field: str | None = None
    old_value: Any = None
    new_value: Any = None


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket with its comments and history."""

    id: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    author_id: str
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    tags: Sequence[str] = ()
    estimated_time: float | None = None
    actual_time: float | None = None
    due_date: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    version: int = 1
    comments: Sequence[Comment] = ()
    history: Sequence[HistoryEntry] = ()
    participants: Mapping[str, UserSummary] = field(default_factory=dict)

    @property
    def comments_count(self) -> int:
        return len(self.comments)

    @property
    def is_overdue(self) -> bool:
        if self.due_date is None or self.status == TicketStatus.CLOSED:
            return False
        return self.due_date < datetime.now(timezone.utc)

    @property
    def time_to_resolve(self) -> int | None:
        """Whole hours between creation and first resolution."""

        if self.resolved_at is None:
            return None
        seconds = (self.resolved_at - self.created_at).total_seconds()
        return math.ceil(seconds / 3600)

    def find_comment(self, comment_id: str) -> Comment | None:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        return None


@dataclass(slots=True)
class TicketPage:
    """One page of a ticket listing."""

    items: Sequence[Ticket]
    total: int
    page: int
    limit: int

    @property
    def page_count(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(slots=True, frozen=True)
class TicketFilters:
    """Listing filters; ``visible_to`` restricts results to one user's tickets."""

    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    author_id: str | None = None
    assigned_to: str | None = None
    search: str | None = None
    visible_to: str | None = None


@dataclass(slots=True, frozen=True)
class DeletedTicket:
    """Confirmation returned after a hard delete."""

    id: str
    title: str
