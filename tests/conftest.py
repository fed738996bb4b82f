from __future__ import annotations

import asyncio
import os
import re
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from alembic import command
from profilehub.db import models  # noqa: F401
from profilehub.db.base import Base
from profilehub.db.session import close_engine
from profilehub.settings import settings

SAFE_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_]+$")
TEST_DATABASE_SUFFIX = "_test"


def _test_database_url() -> URL | None:
    explicit = (os.getenv("TEST_DATABASE_URL") or "").strip()
    if explicit:
        return make_url(explicit)
    base = (os.getenv("DATABASE_URL") or "").strip()
    if not base:
        return None
    parsed = make_url(base)
    if not parsed.database:
        return None
    if parsed.database.endswith(TEST_DATABASE_SUFFIX):
        return parsed
    return parsed.set(database=f"{parsed.database}{TEST_DATABASE_SUFFIX}")


def _reset_sql() -> str:
    tables = ", ".join(table.name for table in reversed(Base.metadata.sorted_tables))
    return f"TRUNCATE TABLE {tables} RESTART IDENTITY CASCADE"


async def _create_database_if_missing(url: URL) -> None:
    name = url.database or ""
    if not SAFE_DATABASE_NAME.fullmatch(name):
        raise RuntimeError(f"Refusing to provision test database named {name!r}.")
    admin_url = url.set(database="template1" if name == "postgres" else "postgres")
    engine = create_async_engine(admin_url, isolation_level="AUTOCOMMIT")
    try:
        async with engine.connect() as connection:
            exists = await connection.scalar(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": name},
            )
            if exists is None:
                await connection.execute(text(f'CREATE DATABASE "{name}"'))
    finally:
        await engine.dispose()


def pytest_runtest_setup(item: pytest.Item) -> None:
    if "integration" in item.keywords and _test_database_url() is None:
        pytest.skip("DATABASE_URL (or TEST_DATABASE_URL) is required for integration tests")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = _test_database_url()
    if url is None:
        pytest.skip("DATABASE_URL (or TEST_DATABASE_URL) is required for database tests")
    return url.render_as_string(hide_password=False)


@pytest.fixture(scope="session")
def alembic_config(database_url: str) -> Config:
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    return config


@pytest.fixture(scope="session")
def migrated_database(alembic_config: Config, database_url: str) -> Iterator[None]:
    asyncio.run(_create_database_if_missing(make_url(database_url)))
    previous_env = os.environ.get("DATABASE_URL")
    previous_setting = settings.database_url
    # alembic/env.py and the app engine both read the URL from these two places.
    os.environ["DATABASE_URL"] = database_url
    object.__setattr__(settings, "database_url", database_url)
    asyncio.run(close_engine())
    command.upgrade(alembic_config, "head")
    try:
        yield
    finally:
        if previous_env is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = previous_env
        object.__setattr__(settings, "database_url", previous_setting)
        asyncio.run(close_engine())


@pytest.fixture
async def db_session(migrated_database: None, database_url: str) -> AsyncIterator[AsyncSession]:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    async with engine.begin() as connection:
        await connection.execute(text(_reset_sql()))
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            yield session
            await session.rollback()
    finally:
        await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """File-backed SQLite schema built from the ORM metadata.

    NullPool keeps every session on its own connection, so concurrent
    sessions behave like separate database clients.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'profilehub.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def sqlite_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
async def reset_app_engine() -> AsyncIterator[None]:
    await close_engine()
    yield
    await close_engine()
