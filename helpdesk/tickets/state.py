from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Urgency levels a ticket can be triaged to."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


OPEN_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.PENDING, TicketStatus.IN_PROGRESS})
FINISHED_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


@dataclass(slots=True, frozen=True)
class LifecycleStamps:
    """Timestamps that are only ever set by the lifecycle, never by callers."""

    resolved_at: datetime | None
    closed_at: datetime | None


class TicketStateMachine:
    """Lifecycle rules shared by every ticket mutation.

    Any status may follow any other; what the lifecycle owns is the first
    resolution and first closure time. Once stamped they are never moved, even
    if the ticket is reopened and resolved again.
    """

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.PENDING

    @classmethod
    def is_open(cls, status: TicketStatus) -> bool:
        return status in OPEN_STATUSES

    @classmethod
    def stamps_after(
        cls,
        status: TicketStatus,
        current: LifecycleStamps,
        now: datetime,
    ) -> LifecycleStamps:
        resolved_at = current.resolved_at
        closed_at = current.closed_at
        if status == TicketStatus.RESOLVED and resolved_at is None:
            resolved_at = now
        if status == TicketStatus.CLOSED and closed_at is None:
            closed_at = now
        return LifecycleStamps(resolved_at=resolved_at, closed_at=closed_at)
