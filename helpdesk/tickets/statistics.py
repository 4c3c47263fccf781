"""Aggregate views over the ticket store for administrators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping, Sequence

from .errors import FieldError, TicketForbiddenError, TicketValidationError
from .models import Ticket
from .policy import Actor, can_view_statistics
from .repository import TicketRepository
from .state import TicketPriority, TicketStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketStatistics:
    total: int
    by_status: Mapping[TicketStatus, int]
    by_priority: Mapping[TicketPriority, int]
    overdue_count: int = 0
    overdue_tickets: Sequence[Ticket] = field(default_factory=list)
    recent_tickets: Sequence[Ticket] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class UserTicketStats:
    """Ticket counters for one author."""

    user_id: str
    name: str | None
    email: str | None
    total: int
    open: int
    resolved: int


class TicketStatisticsService:
    """Read-only statistics; every call requires an administrator."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        user_stats_limit: int = 10,
        preview_limit: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._user_stats_limit = user_stats_limit
        self._preview_limit = preview_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_statistics(self, actor: Actor) -> TicketStatistics:
        self._require_admin(actor)
        by_status = {status: 0 for status in TicketStatus}
        by_priority = {priority: 0 for priority in TicketPriority}
        total = 0
        for status, priority, count in await self._repository.count_by_status_and_priority():
            by_status[status] += count
            by_priority[priority] += count
            total += count

        now = self._clock()
        overdue_count = await self._repository.count_overdue(now)
        overdue = await self._repository.find_overdue(now, limit=self._preview_limit)
        recent = await self._repository.recent_tickets(self._preview_limit)
        return TicketStatistics(
            total=total,
            by_status=by_status,
            by_priority=by_priority,
            overdue_count=overdue_count,
            overdue_tickets=overdue,
            recent_tickets=recent,
        )

    async def find_overdue(self, actor: Actor, *, limit: int | None = None) -> list[Ticket]:
        self._require_admin(actor)
        if limit is not None and limit <= 0:
            raise TicketValidationError([FieldError(field="limit", message="limit must be positive")])
        return await self._repository.find_overdue(self._clock(), limit=limit)

    async def get_user_ticket_stats(self, actor: Actor, *, limit: int | None = None) -> list[UserTicketStats]:
        self._require_admin(actor)
        if limit is not None and limit <= 0:
            raise TicketValidationError([FieldError(field="limit", message="limit must be positive")])
        rows = await self._repository.author_ticket_counts(limit or self._user_stats_limit)
        return [
            UserTicketStats(
                user_id=row.user_id,
                name=row.name,
                email=row.email,
                total=row.total,
                open=row.open,
                resolved=row.resolved,
            )
            for row in rows
        ]

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not can_view_statistics(actor):
            logger.warning("Statistics requested by non-admin %s", getattr(actor, "id", None))
            raise TicketForbiddenError("Statistics are restricted to administrators")
