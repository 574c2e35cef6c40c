"""
Async SQLAlchemy engine and session factory.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.

SQLite (``aiosqlite``) is accepted for development and tests.  Its
default deferred transactions let two writers both read ``pending``
before either writes, so SQLite connections open every transaction with
``BEGIN IMMEDIATE``: writers queue on the database lock the way they
queue on row locks in PostgreSQL.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ride_dispatch.config import settings


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def create_engine_for(url: str, *, busy_timeout: float = 15.0) -> AsyncEngine:
    if not url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=False,
            pool_size=20,
            max_overflow=10,
        )

    engine = create_async_engine(
        url, echo=False, connect_args={"timeout": busy_timeout}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_engine_for(
        settings.database_url, busy_timeout=settings.sqlite_busy_timeout_seconds
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return create_session_factory(get_engine())
