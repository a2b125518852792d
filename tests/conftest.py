"""Pytest fixtures for warranty core tests.

Service tests run against an in-memory SQLite database through aiosqlite.
A ``StaticPool`` keeps one connection alive so that sessions opened by the
reconciliation sweep see the same database as the test that seeded it.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC

import pytest
import pytest_asyncio
from sqlalchemy import JSON, DateTime, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import src.models  # noqa: F401  registers every table on Base.metadata
from src.database.base import Base
from src.models.appointment import Appointment
from src.models.enums import AppointmentStatus


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility.

    * ``JSONB`` -> ``JSON`` (SQLite has no JSONB type compiler).
    * ``DateTime(timezone=True)`` -> a TypeDecorator that hands naive values
      read back from SQLite out as UTC-aware.
    """

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


# Patched once at import time; the suite never runs against Postgres.
_patch_columns_for_sqlite()


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


@pytest.fixture
def pair() -> tuple[uuid.UUID, uuid.UUID]:
    """A fresh (customer_id, provider_id) pair."""
    return uuid.uuid4(), uuid.uuid4()


@pytest.fixture
def make_appointment():
    """Factory inserting an appointment in a given state.

    Appointments are created by the booking layer, so tests write them
    directly instead of going through the lifecycle.
    """

    async def _make(
        session: AsyncSession,
        customer_id: uuid.UUID | None = None,
        provider_id: uuid.UUID | None = None,
        status: AppointmentStatus = AppointmentStatus.IN_PROGRESS,
        **fields,
    ) -> Appointment:
        appointment = Appointment(
            customer_id=customer_id or uuid.uuid4(),
            provider_id=provider_id or uuid.uuid4(),
            status=status,
            **fields,
        )
        session.add(appointment)
        await session.flush()
        return appointment

    return _make
