"""SQLModel table definitions for the Helpdesk data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class TicketTable(SQLModel, table=True):
    """Ticket documents; ``version`` backs optimistic concurrency control."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    priority: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    author_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    assigned_to: str | None = Field(default=None, sa_column=Column(String(36), nullable=True, index=True))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    estimated_time: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    actual_time: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    due_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))


class TicketCommentTable(SQLModel, table=True):
    """Comments owned by a ticket, ordered by ``position``."""

    __tablename__ = "ticket_comments"
    __table_args__ = (UniqueConstraint("ticket_id", "position", name="uq_ticket_comments_position"),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    position: int = Field(sa_column=Column(Integer, nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    author_id: str = Field(sa_column=Column(String(36), nullable=False))
    is_edited: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only audit trail of ticket changes, ordered by ``position``."""

    __tablename__ = "ticket_history"
    __table_args__ = (UniqueConstraint("ticket_id", "position", name="uq_ticket_history_position"),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    position: int = Field(sa_column=Column(Integer, nullable=False))
    action: str = Field(sa_column=Column(String(32), nullable=False))
    field: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    old_value: Any = Field(default=None, sa_column=Column(JSON(none_as_null=True), nullable=True))
    new_value: Any = Field(default=None, sa_column=Column(JSON(none_as_null=True), nullable=True))
    user_id: str = Field(sa_column=Column(String(36), nullable=False))
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class UserTable(SQLModel, table=True):
    """Application user accounts consumed by the identity directory."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(150), nullable=False))
    email: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    password_hash: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    role: str = Field(default="user", sa_column=Column(String(20), nullable=False, default="user"))
    api_token: str | None = Field(default=None, sa_column=Column(String(255), nullable=True, unique=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
