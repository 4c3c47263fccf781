from __future__ import annotations

from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Sequence

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from helpdesk.db.models import TicketCommentTable, TicketHistoryTable, TicketTable, UserTable

from .errors import TicketConflictError, TicketStorageError
from .models import Comment, HistoryAction, HistoryEntry, Ticket, TicketFilters
from .state import FINISHED_STATUSES, OPEN_STATUSES, TicketPriority, TicketStatus

_LIKE_ESCAPE = "\\"


@dataclass(slots=True)
class TicketChange:
    """One atomic write against a ticket at a known ``expected_version``."""

    ticket_id: str
    expected_version: int
    updated_at: datetime
    values: Mapping[str, Any] = field(default_factory=dict)
    history: Sequence[HistoryEntry] = ()
    added_comments: Sequence[Comment] = ()
    edited_comments: Sequence[Comment] = ()
    removed_comment_ids: Sequence[str] = ()


@dataclass(slots=True, frozen=True)
class AuthorTicketCounts:
    """Per-author counters joined with the author's display fields."""

    user_id: str
    name: str | None
    email: str | None
    total: int
    open: int
    resolved: int


class TicketRepository:
    """Persistence helper wrapping `tickets`, `ticket_comments` and `ticket_history`."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        try:
            async with self._engine.begin() as connection:
                await connection.run_sync(SQLModel.metadata.create_all)
        except SQLAlchemyError as exc:
            raise TicketStorageError("Failed to create ticket schema") from exc

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise TicketStorageError(f"Ticket storage failure: {exc.__class__.__name__}") from exc

    async def insert_ticket(self, ticket: Ticket) -> Ticket:
        async with self._transaction() as session:
            session.add(
                TicketTable(
                    id=ticket.id,
                    title=ticket.title,
                    description=ticket.description,
                    status=ticket.status.value,
                    priority=ticket.priority.value,
                    author_id=ticket.author_id,
                    assigned_to=ticket.assigned_to,
                    tags=list(ticket.tags),
                    estimated_time=ticket.estimated_time,
                    actual_time=ticket.actual_time,
                    due_date=ticket.due_date,
                    resolved_at=ticket.resolved_at,
                    closed_at=ticket.closed_at,
                    created_at=ticket.created_at,
                    updated_at=ticket.updated_at,
                    version=ticket.version,
                )
            )
            await session.flush()
            session.add_all(self._history_rows(ticket.id, ticket.history, start=0))
            session.add_all(self._comment_rows(ticket.id, ticket.comments, start=0))
            await session.flush()
            stored = await self._load_tickets(session, [ticket.id])
        return stored[0]

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._transaction() as session:
            tickets = await self._load_tickets(session, [ticket_id])
        return tickets[0] if tickets else None

    async def list_tickets(
        self,
        filters: TicketFilters,
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[Ticket], int]:
        async with self._transaction() as session:
            count_statement = self._apply_filters(sa_select(func.count()).select_from(TicketTable), filters)
            total = int((await session.execute(count_statement)).scalar_one())

            id_statement = self._apply_filters(sa_select(TicketTable.id), filters)
            id_statement = (
                id_statement.order_by(TicketTable.created_at.desc(), TicketTable.id.desc()).offset(offset).limit(limit)
            )
            ids = [row[0] for row in (await session.execute(id_statement)).all()]
            tickets = await self._load_tickets(session, ids)
        return tickets, total

    async def apply_change(self, change: TicketChange) -> Ticket | None:
        """Write ``change`` if the ticket is still at ``expected_version``.

        Returns ``None`` when the ticket no longer exists and raises
        ``TicketConflictError`` when another writer bumped the version first.
        """

        values = {name: _to_column(value) for name, value in change.values.items()}
        values["updated_at"] = change.updated_at
        values["version"] = change.expected_version + 1

        async with self._transaction() as session:
            result = await session.execute(
                update(TicketTable)
                .where(TicketTable.id == change.ticket_id, TicketTable.version == change.expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = await session.execute(sa_select(TicketTable.id).where(TicketTable.id == change.ticket_id))
                if exists.first() is None:
                    return None
                raise TicketConflictError(
                    f"Ticket {change.ticket_id} changed since version {change.expected_version}"
                )

            if change.history:
                start = await self._next_position(session, TicketHistoryTable, change.ticket_id)
                session.add_all(self._history_rows(change.ticket_id, change.history, start=start))
            if change.added_comments:
                start = await self._next_position(session, TicketCommentTable, change.ticket_id)
                session.add_all(self._comment_rows(change.ticket_id, change.added_comments, start=start))
            for comment in change.edited_comments:
                await session.execute(
                    update(TicketCommentTable)
                    .where(TicketCommentTable.id == comment.id, TicketCommentTable.ticket_id == change.ticket_id)
                    .values(content=comment.content, updated_at=comment.updated_at, is_edited=comment.is_edited)
                    .execution_options(synchronize_session=False)
                )
            if change.removed_comment_ids:
                await session.execute(
                    delete(TicketCommentTable)
                    .where(
                        TicketCommentTable.ticket_id == change.ticket_id,
                        TicketCommentTable.id.in_(list(change.removed_comment_ids)),
                    )
                    .execution_options(synchronize_session=False)
                )
            await session.flush()
            tickets = await self._load_tickets(session, [change.ticket_id])
        return tickets[0]

    async def delete_ticket(self, ticket_id: str) -> bool:
        async with self._transaction() as session:
            await session.execute(delete(TicketHistoryTable).where(TicketHistoryTable.ticket_id == ticket_id))
            await session.execute(delete(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id))
            result = await session.execute(delete(TicketTable).where(TicketTable.id == ticket_id))
        return result.rowcount > 0

    async def count_by_status_and_priority(self) -> list[tuple[TicketStatus, TicketPriority, int]]:
        statement = sa_select(TicketTable.status, TicketTable.priority, func.count()).group_by(
            TicketTable.status, TicketTable.priority
        )
        async with self._transaction() as session:
            rows = (await session.execute(statement)).all()
        return [(TicketStatus(status), TicketPriority(priority), int(count)) for status, priority, count in rows]

    @staticmethod
    def _overdue_conditions(now: datetime) -> tuple[Any, ...]:
        return (
            TicketTable.due_date.is_not(None),
            TicketTable.due_date < now,
            TicketTable.status.not_in([status.value for status in FINISHED_STATUSES]),
        )

    async def count_overdue(self, now: datetime) -> int:
        statement = sa_select(func.count(TicketTable.id)).where(*self._overdue_conditions(now))
        async with self._transaction() as session:
            return int((await session.execute(statement)).scalar_one())

    async def find_overdue(self, now: datetime, *, limit: int | None = None) -> list[Ticket]:
        statement = (
            sa_select(TicketTable.id)
            .where(*self._overdue_conditions(now))
            .order_by(TicketTable.due_date.asc(), TicketTable.id)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with self._transaction() as session:
            ids = [row[0] for row in (await session.execute(statement)).all()]
            return await self._load_tickets(session, ids)

    async def recent_tickets(self, limit: int) -> list[Ticket]:
        statement = sa_select(TicketTable.id).order_by(TicketTable.created_at.desc(), TicketTable.id.desc()).limit(limit)
        async with self._transaction() as session:
            ids = [row[0] for row in (await session.execute(statement)).all()]
            return await self._load_tickets(session, ids)

    async def author_ticket_counts(self, limit: int) -> list[AuthorTicketCounts]:
        total = func.count(TicketTable.id).label("total")
        open_count = func.sum(
            case((TicketTable.status.in_([status.value for status in OPEN_STATUSES]), 1), else_=0)
        ).label("open")
        resolved_count = func.sum(case((TicketTable.status == TicketStatus.RESOLVED.value, 1), else_=0)).label(
            "resolved"
        )
        statement = (
            sa_select(TicketTable.author_id, UserTable.name, UserTable.email, total, open_count, resolved_count)
            .select_from(TicketTable)
            .outerjoin(UserTable, UserTable.id == TicketTable.author_id)
            .group_by(TicketTable.author_id, UserTable.name, UserTable.email)
            .order_by(total.desc(), TicketTable.author_id)
            .limit(limit)
        )
        async with self._transaction() as session:
            rows = (await session.execute(statement)).all()
        return [
            AuthorTicketCounts(
                user_id=str(author_id),
                name=name,
                email=email,
                total=int(total_value or 0),
                open=int(open_value or 0),
                resolved=int(resolved_value or 0),
            )
            for author_id, name, email, total_value, open_value, resolved_value in rows
        ]

    @staticmethod
    def _apply_filters(statement: Any, filters: TicketFilters) -> Any:
        conditions = []
        if filters.status is not None:
            conditions.append(TicketTable.status == TicketStatus(filters.status).value)
        if filters.priority is not None:
            conditions.append(TicketTable.priority == TicketPriority(filters.priority).value)
        if filters.author_id:
            conditions.append(TicketTable.author_id == filters.author_id)
        if filters.assigned_to:
            conditions.append(TicketTable.assigned_to == filters.assigned_to)
        if filters.search and filters.search.strip():
            pattern = f"%{_escape_like(filters.search.strip().lower())}%"
            conditions.append(
                or_(
                    func.lower(TicketTable.title).like(pattern, escape=_LIKE_ESCAPE),
                    func.lower(TicketTable.description).like(pattern, escape=_LIKE_ESCAPE),
                )
            )
        if filters.visible_to:
            conditions.append(
                or_(TicketTable.author_id == filters.visible_to, TicketTable.assigned_to == filters.visible_to)
            )
        if conditions:
            statement = statement.where(*conditions)
        return statement

    @staticmethod
    async def _next_position(session: AsyncSession, table: Any, ticket_id: str) -> int:
        result = await session.execute(
            sa_select(func.max(table.position)).where(table.ticket_id == ticket_id)
        )
        current = result.scalar_one_or_none()
        return 0 if current is None else int(current) + 1

    async def _load_tickets(self, session: AsyncSession, ticket_ids: Sequence[str]) -> list[Ticket]:
        if not ticket_ids:
            return []
        ticket_result = await session.execute(
            select(TicketTable)
            .where(TicketTable.id.in_(list(ticket_ids)))
            .execution_options(populate_existing=True)
        )
        rows = {row.id: row for row in ticket_result.scalars().all()}

        comment_result = await session.execute(
            select(TicketCommentTable)
            .where(TicketCommentTable.ticket_id.in_(list(rows)))
            .order_by(TicketCommentTable.ticket_id, TicketCommentTable.position.asc())
        )
        history_result = await session.execute(
            select(TicketHistoryTable)
            .where(TicketHistoryTable.ticket_id.in_(list(rows)))
            .order_by(TicketHistoryTable.ticket_id, TicketHistoryTable.position.asc())
        )
        comments: dict[str, list[Comment]] = defaultdict(list)
        for comment_row in comment_result.scalars().all():
            comments[comment_row.ticket_id].append(self._table_to_comment(comment_row))
        history: dict[str, list[HistoryEntry]] = defaultdict(list)
        for history_row in history_result.scalars().all():
            history[history_row.ticket_id].append(self._table_to_history(history_row))

        # keep the caller's ordering
        return [
            self._table_to_ticket(rows[ticket_id], comments[ticket_id], history[ticket_id])
            for ticket_id in ticket_ids
            if ticket_id in rows
        ]

    @staticmethod
    def _history_rows(ticket_id: str, entries: Sequence[HistoryEntry], *, start: int) -> list[TicketHistoryTable]:
        return [
            TicketHistoryTable(
                id=entry.id,
                ticket_id=ticket_id,
                position=start + offset,
                action=entry.action.value,
                field=entry.field,
                old_value=entry.old_value,
                new_value=entry.new_value,
                user_id=entry.user_id,
                description=entry.description,
                created_at=entry.timestamp,
            )
            for offset, entry in enumerate(entries)
        ]

    @staticmethod
    def _comment_rows(ticket_id: str, comments: Sequence[Comment], *, start: int) -> list[TicketCommentTable]:
        return [
            TicketCommentTable(
                id=comment.id,
                ticket_id=ticket_id,
                position=start + offset,
                content=comment.content,
                author_id=comment.author_id,
                is_edited=comment.is_edited,
                created_at=comment.created_at,
                updated_at=comment.updated_at,
            )
            for offset, comment in enumerate(comments)
        ]

    @staticmethod
    def _table_to_ticket(
        row: TicketTable,
        comments: Sequence[Comment],
        history: Sequence[HistoryEntry],
    ) -> Ticket:
        return Ticket(
            id=row.id,
            title=row.title,
            description=row.description,
            status=TicketStatus(row.status),
            priority=TicketPriority(row.priority),
            author_id=row.author_id,
            assigned_to=row.assigned_to,
            tags=tuple(row.tags or ()),
            estimated_time=row.estimated_time,
            actual_time=row.actual_time,
            due_date=_ensure_optional_datetime(row.due_date),
            resolved_at=_ensure_optional_datetime(row.resolved_at),
            closed_at=_ensure_optional_datetime(row.closed_at),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            version=row.version,
            comments=tuple(comments),
            history=tuple(history),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> Comment:
        return Comment(
            id=row.id,
            ticket_id=row.ticket_id,
            content=row.content,
            author_id=row.author_id,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            is_edited=bool(row.is_edited),
        )

    @staticmethod
    def _table_to_history(row: TicketHistoryTable) -> HistoryEntry:
        return HistoryEntry(
            id=row.id,
            action=HistoryAction(row.action),
            field=row.field,
            old_value=row.old_value,
            new_value=row.new_value,
            user_id=row.user_id,
            timestamp=_ensure_datetime(row.created_at),
            description=row.description,
        )


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, set, frozenset)):
        return list(value)
    return value


def _escape_like(term: str) -> str:
    return term.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2).replace("%", "\\%").replace("_", "\\_")


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _ensure_optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
