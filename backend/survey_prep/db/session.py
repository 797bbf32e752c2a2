"""Database engine and session utilities.

Engines and session factories are built explicitly by the caller (the FastAPI lifespan in
production, fixtures in tests) and handed to request handlers through ``app.state``.

Functions:
    create_engine_for(url): Build an AsyncEngine, creating the SQLite data directory when needed.
    make_sessionmaker(engine): Return an async_sessionmaker bound to the engine.
    init_db(engine): Create database tables and apply SQLite pragmas.
    get_session(request): Dependency that yields an AsyncSession for request handlers.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

import survey_prep.models  # noqa: F401  registers tables on SQLModel.metadata


def create_engine_for(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite+aiosqlite:///") and ":memory:" not in database_url:
        db_path = Path(database_url.replace("sqlite+aiosqlite:///", "")).resolve()
        if db_path.parent.name:
            db_path.parent.mkdir(parents=True, exist_ok=True)

    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        connect_args=(
            {"check_same_thread": False}
            if database_url.startswith("sqlite")
            else {}
        ),
    )


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if engine.dialect.name == "sqlite":
            await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.sessionmaker() as session:
        yield session
