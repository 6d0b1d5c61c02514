from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.security import Actor, Role
from app.tickets.models import UserRecord
from app.tickets.repository import TicketRepository
from app.tickets.service import TicketLifecycleService
from app.tickets.state import TicketLifecycle


class FakeClock:
    """Clock advancing one second per call so stored timestamps are strictly ordered."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


USERS = {
    "admin": UserRecord(id="u-admin", email="admin@example.com", role=Role.ADMIN, department="it"),
    "manager": UserRecord(id="u-manager", email="manager@example.com", role=Role.MANAGER, department="ops"),
    "agent": UserRecord(id="u-agent", email="agent@example.com", role=Role.AGENT, department="it"),
    "reporter": UserRecord(
        id="u-reporter",
        email="reporter@example.com",
        role=Role.USER,
        department="ops",
        hashed_password="$2b$12$not-a-real-hash",
    ),
    "stranger": UserRecord(id="u-stranger", email="stranger@example.com", role=Role.USER, department="finance"),
    "retired": UserRecord(
        id="u-retired", email="retired@example.com", role=Role.AGENT, department="it", is_active=False
    ),
}


@pytest.fixture
def actors() -> dict[str, Actor]:
    return {name: record.to_actor() for name, record in USERS.items()}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    repo = TicketRepository(session_factory, engine=engine)
    for record in USERS.values():
        await repo.add_user(record)
    return repo


@pytest.fixture
def make_service(repository: TicketRepository, clock: FakeClock):
    def factory(lifecycle: TicketLifecycle, **kwargs) -> TicketLifecycleService:
        return TicketLifecycleService(lifecycle, repository, clock=clock, **kwargs)

    return factory


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> async_sessionmaker:
    """Seeded session factory over an on-disk database, for tests needing separate connections."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tickets.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    seeded = TicketRepository(factory, engine=engine)
    for record in USERS.values():
        await seeded.add_user(record)
    try:
        yield factory
    finally:
        await engine.dispose()
