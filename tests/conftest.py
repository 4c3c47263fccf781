from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from helpdesk.identity import Role, UserDirectory, UserProfile
from helpdesk.tickets import Actor, TicketRepository, TicketService, TicketStatisticsService


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Users:
    alice: UserProfile
    bob: UserProfile
    carol: UserProfile
    admin: UserProfile


@dataclass
class Actors:
    alice: Actor
    bob: Actor
    carol: Actor
    admin: Actor


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'helpdesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest_asyncio.fixture
async def directory(session_factory: async_sessionmaker) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest_asyncio.fixture
async def users(directory: UserDirectory) -> Users:
    return Users(
        alice=await directory.create_user(name="Alice", email="alice@example.com", api_token="alice-token"),
        bob=await directory.create_user(name="Bob", email="bob@example.com", api_token="bob-token"),
        carol=await directory.create_user(name="Carol", email="carol@example.com", api_token="carol-token"),
        admin=await directory.create_user(
            name="Ada Admin", email="admin@example.com", role=Role.ADMIN, api_token="admin-token"
        ),
    )


@pytest.fixture
def actors(users: Users) -> Actors:
    return Actors(
        alice=Actor.from_profile(users.alice),
        bob=Actor.from_profile(users.bob),
        carol=Actor.from_profile(users.carol),
        admin=Actor.from_profile(users.admin),
    )


@pytest.fixture
def service(repository: TicketRepository, directory: UserDirectory, clock: FakeClock) -> TicketService:
    return TicketService(repository, directory, clock=clock)


@pytest.fixture
def statistics(repository: TicketRepository, clock: FakeClock) -> TicketStatisticsService:
    return TicketStatisticsService(repository, user_stats_limit=10, preview_limit=5, clock=clock)

