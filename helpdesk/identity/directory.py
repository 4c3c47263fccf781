from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from helpdesk.db.models import UserTable

from .models import Role, UserProfile

logger = logging.getLogger(__name__)


class IdentityError(RuntimeError):
    """Raised when the identity store cannot serve a request."""


class DuplicateUserError(IdentityError):
    """Raised when registering an email or token that is already taken."""


class UserDirectory:
    """Read access to user records for role resolution and display fields.

    Credentials are never checked here; the HTTP layer hands over an already
    issued API token and only the lookup happens in this class.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._session_factory = session_factory

    async def create_user(
        self,
        *,
        name: str,
        email: str,
        role: Role = Role.USER,
        api_token: str | None = None,
        password_hash: str | None = None,
        user_id: str | None = None,
    ) -> UserProfile:
        profile = UserProfile(
            id=user_id or str(uuid.uuid4()),
            name=name,
            email=email.strip().lower(),
            role=Role(role),
        )
        row = UserTable(
            id=profile.id,
            name=profile.name,
            email=profile.email,
            role=profile.role.value,
            api_token=api_token,
            password_hash=password_hash,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateUserError(f"User {email} already exists") from exc
        except SQLAlchemyError as exc:
            raise IdentityError("Failed to store user") from exc
        logger.info("Registered user %s with role %s", profile.id, profile.role.value)
        return profile

    async def get_user(self, user_id: str) -> UserProfile | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(UserTable, user_id)
        except SQLAlchemyError as exc:
            raise IdentityError(f"Failed to load user {user_id}") from exc
        if row is None:
            return None
        return self._table_to_profile(row)

    async def get_users(self, user_ids: Iterable[str]) -> dict[str, UserProfile]:
        wanted = sorted({user_id for user_id in user_ids if user_id})
        if not wanted:
            return {}
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(UserTable).where(UserTable.id.in_(wanted)))
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise IdentityError("Failed to load users") from exc
        return {row.id: self._table_to_profile(row) for row in rows}

    async def get_user_by_token(self, token: str) -> UserProfile | None:
        if not token:
            return None
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(UserTable).where(UserTable.api_token == token))
                row = result.scalars().first()
        except SQLAlchemyError as exc:
            raise IdentityError("Failed to resolve token") from exc
        if row is None:
            return None
        return self._table_to_profile(row)

    @staticmethod
    def _table_to_profile(row: UserTable) -> UserProfile:
        try:
            role = Role(row.role)
        except ValueError:
            role = Role.USER
        return UserProfile(id=row.id, name=row.name, email=row.email, role=role)
