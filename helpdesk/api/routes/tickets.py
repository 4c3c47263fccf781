from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Query, status
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.dependencies.auth import CurrentActor
from helpdesk.dependencies.tickets import AdminOnly, RateLimited, StatisticsServiceDep, TicketServiceDep
from helpdesk.tickets.models import Comment, HistoryAction, HistoryEntry, Ticket, TicketFilters, TicketPage
from helpdesk.tickets.state import TicketPriority, TicketStatus
from helpdesk.tickets.statistics import TicketStatistics, UserTicketStats

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    description: str
    priority: TicketPriority
    status: TicketStatus | None = None
    tags: list[str] = Field(default_factory=list)
    estimated_time: float | None = None
    actual_time: float | None = None
    due_date: datetime | None = None


class CommentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str


class AssignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    assigned_to: str = Field(..., min_length=1)


class UserSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    content: str
    author_id: str
    is_edited: bool
    created_at: datetime
    updated_at: datetime


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: HistoryAction
    field: str | None
    old_value: Any
    new_value: Any
    user_id: str
    timestamp: datetime
    description: str


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    author_id: str
    assigned_to: str | None
    tags: list[str]
    estimated_time: float | None
    actual_time: float | None
    due_date: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int
    comments_count: int
    is_overdue: bool
    time_to_resolve: int | None
    comments: list[CommentResponse]
    history: list[HistoryEntryResponse]
    participants: dict[str, UserSummaryResponse] = Field(default_factory=dict)


class TicketPageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    items: list[TicketResponse]
    total: int
    page: int
    limit: int
    page_count: int


class DeletedTicketResponse(BaseModel):
    id: str
    title: str
    message: str = "Ticket deleted"


class TicketStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    by_status: dict[TicketStatus, int]
    by_priority: dict[TicketPriority, int]
    overdue_count: int
    overdue_tickets: list[TicketResponse]
    recent_tickets: list[TicketResponse]


class UserTicketStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    name: str | None
    email: str | None
    total: int
    open: int
    resolved: int


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_page_response(page: TicketPage) -> TicketPageResponse:
    return TicketPageResponse.model_validate(page)


def _to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def _to_history_response(entry: HistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse.model_validate(entry)


def _to_statistics_response(stats: TicketStatistics) -> TicketStatisticsResponse:
    return TicketStatisticsResponse.model_validate(stats)


def _to_user_stats_response(stats: UserTicketStats) -> UserTicketStatsResponse:
    return UserTicketStatsResponse.model_validate(stats)


@router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[RateLimited],
)
async def create_ticket(
    payload: TicketCreateRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.create_ticket(payload.model_dump(exclude_unset=True), actor)
    return _to_response(ticket)


@router.get("", response_model=TicketPageResponse)
async def list_tickets(
    actor: CurrentActor,
    service: TicketServiceDep,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    author_id: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    hydrate: bool = Query(default=False),
) -> TicketPageResponse:
    filters = TicketFilters(
        status=status_filter,
        priority=priority,
        author_id=author_id,
        assigned_to=assigned_to,
        search=search,
    )
    result = await service.list_tickets(filters, actor=actor, page=page, limit=limit, hydrate=hydrate)
    return _to_page_response(result)


@router.get("/stats", response_model=TicketStatisticsResponse, dependencies=[AdminOnly])
async def get_statistics(actor: CurrentActor, service: StatisticsServiceDep) -> TicketStatisticsResponse:
    stats = await service.get_statistics(actor)
    return _to_statistics_response(stats)


@router.get("/stats/users", response_model=list[UserTicketStatsResponse], dependencies=[AdminOnly])
async def get_user_statistics(
    actor: CurrentActor,
    service: StatisticsServiceDep,
    limit: int | None = Query(default=None),
) -> list[UserTicketStatsResponse]:
    rows = await service.get_user_ticket_stats(actor, limit=limit)
    return [_to_user_stats_response(row) for row in rows]


@router.get("/overdue", response_model=list[TicketResponse], dependencies=[AdminOnly])
async def list_overdue(
    actor: CurrentActor,
    service: StatisticsServiceDep,
    limit: int | None = Query(default=None),
) -> list[TicketResponse]:
    tickets = await service.find_overdue(actor, limit=limit)
    return [_to_response(ticket) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: str,
    actor: CurrentActor,
    service: TicketServiceDep,
    hydrate: bool = Query(default=False),
) -> TicketResponse:
    ticket = await service.get_ticket(ticket_id, actor, hydrate=hydrate)
    return _to_response(ticket)


@router.put("/{ticket_id}", response_model=TicketResponse, dependencies=[RateLimited])
async def update_ticket(
    ticket_id: str,
    patch: Annotated[dict[str, Any], Body()],
    actor: CurrentActor,
    service: TicketServiceDep,
) -> TicketResponse:
    # the raw body keeps the client's key order for history entries
    ticket = await service.update_ticket(ticket_id, patch, actor)
    return _to_response(ticket)


@router.delete("/{ticket_id}", response_model=DeletedTicketResponse, dependencies=[RateLimited])
async def delete_ticket(ticket_id: str, actor: CurrentActor, service: TicketServiceDep) -> DeletedTicketResponse:
    deleted = await service.delete_ticket(ticket_id, actor)
    return DeletedTicketResponse(id=deleted.id, title=deleted.title)


@router.get("/{ticket_id}/history", response_model=list[HistoryEntryResponse])
async def get_ticket_history(
    ticket_id: str,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> list[HistoryEntryResponse]:
    entries = await service.get_history(ticket_id, actor)
    return [_to_history_response(entry) for entry in entries]


@router.post(
    "/{ticket_id}/comments",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[RateLimited],
)
async def add_comment(
    ticket_id: str,
    payload: CommentRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.add_comment(ticket_id, payload.content, actor)
    return _to_response(ticket)


@router.put("/{ticket_id}/comments/{comment_id}", response_model=CommentResponse, dependencies=[RateLimited])
async def update_comment(
    ticket_id: str,
    comment_id: str,
    payload: CommentRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> CommentResponse:
    comment = await service.update_comment(ticket_id, comment_id, payload.content, actor)
    return _to_comment_response(comment)


@router.delete("/{ticket_id}/comments/{comment_id}", response_model=TicketResponse, dependencies=[RateLimited])
async def delete_comment(
    ticket_id: str,
    comment_id: str,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.delete_comment(ticket_id, comment_id, actor)
    return _to_response(ticket)


@router.put("/{ticket_id}/assign", response_model=TicketResponse, dependencies=[AdminOnly, RateLimited])
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.assign_ticket(ticket_id, payload.assigned_to, actor)
    return _to_response(ticket)


@router.put("/{ticket_id}/unassign", response_model=TicketResponse, dependencies=[AdminOnly, RateLimited])
async def unassign_ticket(ticket_id: str, actor: CurrentActor, service: TicketServiceDep) -> TicketResponse:
    ticket = await service.unassign_ticket(ticket_id, actor)
    return _to_response(ticket)
