from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.dependencies.auth import CurrentUser, role_required
from helpdesk.identity import Role
from helpdesk.security import RateLimitExceeded, SlidingWindowRateLimiter
from helpdesk.tickets.service import TicketService
from helpdesk.tickets.statistics import TicketStatisticsService

require_admin = role_required(Role.ADMIN)


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_statistics_service(request: Request) -> TicketStatisticsService:
    service = getattr(request.app.state, "statistics_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Statistics service is not configured")
    return service


async def enforce_rate_limit(request: Request, user: CurrentUser) -> None:
    """Charge one request against the caller's budget; no limiter means no limit."""

    limiter: SlidingWindowRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    decision = limiter.hit(f"user:{user.id}")
    if not decision.allowed:
        raise RateLimitExceeded(retry_after=decision.retry_after)


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
StatisticsServiceDep = Annotated[TicketStatisticsService, Depends(get_statistics_service)]
RateLimited = Depends(enforce_rate_limit)
AdminOnly = Depends(require_admin)
