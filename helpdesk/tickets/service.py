from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from opentelemetry import trace

from helpdesk.identity import UserDirectory

from .errors import (
    CommentNotFoundError,
    FieldError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketValidationError,
    UserNotFoundError,
)
from .history import (
    TrackedField,
    assigned_entry,
    commented_entry,
    created_entry,
    diff_fields,
    entries_for_changes,
    tracked_changes,
    unassigned_entry,
)
from .models import Comment, DeletedTicket, HistoryEntry, Ticket, TicketFilters, TicketPage, UserSummary
from .policy import (
    Actor,
    can_comment,
    can_list_all,
    can_manage_comment,
    can_modify,
    can_reassign,
    can_view,
)
from .repository import TicketChange, TicketRepository
from .state import LifecycleStamps, TicketStateMachine, TicketStatus
from .validation import CommentInput, FilterInput, PageRequest, TicketCreate, TicketPatch, validate_model

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]
ChangeBuilder = Callable[[Ticket, datetime], TicketChange | None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketService:
    """High level orchestration for ticket lifecycle operations.

    Every mutation is a read-modify-write: the ticket is loaded, permissions
    and input are checked against that state, and the resulting change is
    written only if nobody bumped the ticket's version in between. A lost race
    re-reads and recomputes the change, up to ``max_retries`` times.
    """

    def __init__(
        self,
        repository: TicketRepository,
        directory: UserDirectory,
        *,
        max_retries: int = 3,
        default_page_size: int = 20,
        max_page_size: int = 100,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._max_retries = max(0, max_retries)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._clock: Clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def create_ticket(self, data: Mapping[str, Any], author: Actor) -> Ticket:
        payload = validate_model(TicketCreate, data)
        now = self._now()
        ticket = Ticket(
            id=str(uuid.uuid4()),
            title=payload.title,
            description=payload.description,
            status=TicketStateMachine.initial_state(),
            priority=payload.priority,
            author_id=author.id,
            created_at=now,
            updated_at=now,
            tags=tuple(payload.tags),
            estimated_time=payload.estimated_time,
            actual_time=payload.actual_time,
            due_date=payload.due_date,
            history=(created_entry(user_id=author.id, timestamp=now),),
        )
        with tracer.start_as_current_span("tickets.create") as span:
            span.set_attribute("ticket.id", ticket.id)
            stored = await self._repository.insert_ticket(ticket)
        logger.info("Ticket %s created by %s", stored.id, author.id)
        return stored

    async def get_ticket(self, ticket_id: str, actor: Actor, *, hydrate: bool = False) -> Ticket:
        ticket = await self._load(ticket_id)
        if not can_view(actor, ticket):
            raise TicketForbiddenError(f"Not allowed to view ticket {ticket_id}")
        if hydrate:
            await self._hydrate([ticket])
        return ticket

    async def list_tickets(
        self,
        filters: TicketFilters | None = None,
        *,
        actor: Actor,
        page: int = 1,
        limit: int | None = None,
        hydrate: bool = False,
    ) -> TicketPage:
        request = validate_model(
            PageRequest,
            {"page": page, "limit": limit if limit is not None else self._default_page_size},
        )
        page_size = min(request.limit, self._max_page_size)
        checked = validate_model(FilterInput, asdict(filters) if filters is not None else {})
        filters = TicketFilters(**checked.model_dump())
        if not can_list_all(actor):
            filters = replace(filters, visible_to=actor.id)

        items, total = await self._repository.list_tickets(
            filters,
            offset=(request.page - 1) * page_size,
            limit=page_size,
        )
        if hydrate:
            await self._hydrate(items)
        return TicketPage(items=items, total=total, page=request.page, limit=page_size)

    async def update_ticket(self, ticket_id: str, patch: Mapping[str, Any], actor: Actor) -> Ticket:
        if can_reassign(actor) and patch.get(TrackedField.ASSIGNED_TO.value) is not None:
            requested = validate_model(
                TicketPatch, {TrackedField.ASSIGNED_TO.value: patch[TrackedField.ASSIGNED_TO.value]}
            ).assigned_to
            if requested is not None and await self._directory.get_user(requested) is None:
                raise UserNotFoundError(f"User {requested} not found")

        def build(ticket: Ticket, now: datetime) -> TicketChange | None:
            if not can_modify(actor, ticket):
                raise TicketForbiddenError(f"Not allowed to modify ticket {ticket_id}")
            payload = dict(patch)
            if not can_reassign(actor):
                payload.pop(TrackedField.ASSIGNED_TO.value, None)
            validated = validate_model(TicketPatch, payload)
            values = validated.model_dump(include=validated.model_fields_set)
            diffs = diff_fields(ticket, tracked_changes(values, payload.keys()))
            if not diffs:
                return None

            column_values: dict[str, Any] = {change.field.value: change.new_value for change in diffs}
            status = column_values.get(TrackedField.STATUS.value)
            if status is not None:
                stamps = TicketStateMachine.stamps_after(
                    TicketStatus(status),
                    LifecycleStamps(resolved_at=ticket.resolved_at, closed_at=ticket.closed_at),
                    now,
                )
                column_values["resolved_at"] = stamps.resolved_at
                column_values["closed_at"] = stamps.closed_at
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                values=column_values,
                history=entries_for_changes(diffs, user_id=actor.id, timestamp=now),
            )

        return await self._mutate(ticket_id, build, operation="update")

    async def delete_ticket(self, ticket_id: str, actor: Actor) -> DeletedTicket:
        ticket = await self._load(ticket_id)
        if not can_modify(actor, ticket):
            raise TicketForbiddenError(f"Not allowed to delete ticket {ticket_id}")
        with tracer.start_as_current_span("tickets.delete") as span:
            span.set_attribute("ticket.id", ticket_id)
            deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s deleted by %s", ticket_id, actor.id)
        return DeletedTicket(id=ticket.id, title=ticket.title)

    async def add_comment(self, ticket_id: str, content: Any, actor: Actor) -> Ticket:
        def build(ticket: Ticket, now: datetime) -> TicketChange:
            if not can_comment(actor, ticket):
                raise TicketForbiddenError(f"Not allowed to comment on ticket {ticket_id}")
            validated = validate_model(CommentInput, {"content": content})
            comment = Comment(
                id=str(uuid.uuid4()),
                ticket_id=ticket.id,
                content=validated.content,
                author_id=actor.id,
                created_at=now,
                updated_at=now,
            )
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                added_comments=[comment],
                history=[commented_entry(user_id=actor.id, timestamp=now)],
            )

        return await self._mutate(ticket_id, build, operation="comment")

    async def update_comment(self, ticket_id: str, comment_id: str, content: Any, actor: Actor) -> Comment:
        def build(ticket: Ticket, now: datetime) -> TicketChange:
            comment = self._owned_comment(ticket, comment_id, actor)
            validated = validate_model(CommentInput, {"content": content})
            edited = replace(comment, content=validated.content, updated_at=now, is_edited=True)
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                edited_comments=[edited],
            )

        ticket = await self._mutate(ticket_id, build, operation="edit_comment")
        edited = ticket.find_comment(comment_id)
        if edited is None:
            raise CommentNotFoundError(f"Comment {comment_id} not found on ticket {ticket_id}")
        return edited

    async def delete_comment(self, ticket_id: str, comment_id: str, actor: Actor) -> Ticket:
        def build(ticket: Ticket, now: datetime) -> TicketChange:
            self._owned_comment(ticket, comment_id, actor)
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                removed_comment_ids=[comment_id],
            )

        return await self._mutate(ticket_id, build, operation="delete_comment")

    async def assign_ticket(self, ticket_id: str, assignee_id: str, actor: Actor) -> Ticket:
        if not can_reassign(actor):
            raise TicketForbiddenError("Only administrators can assign tickets")
        if not assignee_id or not str(assignee_id).strip():
            raise TicketValidationError([FieldError(field="assigned_to", message="assignee is required")])
        assignee = await self._directory.get_user(str(assignee_id).strip())
        if assignee is None:
            raise UserNotFoundError(f"User {assignee_id} not found")

        def build(ticket: Ticket, now: datetime) -> TicketChange:
            # re-assigning the same user still leaves a trace
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                values={TrackedField.ASSIGNED_TO.value: assignee.id},
                history=[
                    assigned_entry(
                        user_id=actor.id,
                        timestamp=now,
                        previous=ticket.assigned_to,
                        assignee=assignee.id,
                        assignee_name=assignee.name,
                    )
                ],
            )

        updated = await self._mutate(ticket_id, build, operation="assign")
        logger.info("Ticket %s assigned to %s by %s", ticket_id, assignee.id, actor.id)
        return updated

    async def unassign_ticket(self, ticket_id: str, actor: Actor) -> Ticket:
        if not can_reassign(actor):
            raise TicketForbiddenError("Only administrators can unassign tickets")

        def build(ticket: Ticket, now: datetime) -> TicketChange:
            return TicketChange(
                ticket_id=ticket.id,
                expected_version=ticket.version,
                updated_at=now,
                values={TrackedField.ASSIGNED_TO.value: None},
                history=[unassigned_entry(user_id=actor.id, timestamp=now, previous=ticket.assigned_to)],
            )

        updated = await self._mutate(ticket_id, build, operation="unassign")
        logger.info("Ticket %s unassigned by %s", ticket_id, actor.id)
        return updated

    async def get_history(self, ticket_id: str, actor: Actor, *, newest_first: bool = True) -> list[HistoryEntry]:
        ticket = await self.get_ticket(ticket_id, actor)
        entries = list(ticket.history)
        if newest_first:
            entries.reverse()
        return entries

    async def _load(self, ticket_id: str) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _mutate(self, ticket_id: str, build: ChangeBuilder, *, operation: str) -> Ticket:
        attempts = self._max_retries + 1
        with tracer.start_as_current_span(f"tickets.{operation}") as span:
            span.set_attribute("ticket.id", ticket_id)
            for attempt in range(1, attempts + 1):
                ticket = await self._load(ticket_id)
                change = build(ticket, self._now())
                if change is None:
                    return ticket
                try:
                    updated = await self._repository.apply_change(change)
                except TicketConflictError:
                    logger.warning(
                        "Concurrent change on ticket %s during %s (attempt %d/%d)",
                        ticket_id,
                        operation,
                        attempt,
                        attempts,
                    )
                    continue
                if updated is None:
                    raise TicketNotFoundError(f"Ticket {ticket_id} not found")
                span.set_attribute("ticket.attempts", attempt)
                return updated
        raise TicketConflictError(f"Ticket {ticket_id} kept changing; gave up after {attempts} attempts")

    @staticmethod
    def _owned_comment(ticket: Ticket, comment_id: str, actor: Actor) -> Comment:
        comment = ticket.find_comment(comment_id)
        if comment is None:
            raise CommentNotFoundError(f"Comment {comment_id} not found on ticket {ticket.id}")
        if not can_manage_comment(actor, comment):
            raise TicketForbiddenError(f"Not allowed to change comment {comment_id}")
        return comment

    async def _hydrate(self, tickets: Iterable[Ticket]) -> None:
        tickets = list(tickets)
        profiles = await self._directory.get_users(
            user_id for ticket in tickets for user_id in _referenced_users(ticket)
        )
        for ticket in tickets:
            ticket.participants = {
                user_id: UserSummary(id=profile.id, name=profile.name, email=profile.email)
                for user_id in _referenced_users(ticket)
                if (profile := profiles.get(user_id)) is not None
            }


def _referenced_users(ticket: Ticket) -> set[str]:
    users = {ticket.author_id}
    if ticket.assigned_to:
        users.add(ticket.assigned_to)
    users.update(comment.author_id for comment in ticket.comments)
    users.update(entry.user_id for entry in ticket.history)
    return users
