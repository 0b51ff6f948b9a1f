"""
config/database.py
SQLAlchemy engines, session factories and the declarative base.

The API runs on asyncpg. Celery workers are synchronous and get a psycopg2
engine on the same database through get_sync_sessionmaker().
"""

from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config.settings import settings


# ── Async engine (API) ────────────────────────────────────────
engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_timeout=settings.DATABASE_POOL_TIMEOUT,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.DEBUG,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# ── Sync engine (Celery workers) ──────────────────────────────

def sync_database_url(url: str = None) -> str:
    """postgresql+asyncpg://... → postgresql+psycopg2://..."""
    return (url or settings.DATABASE_URL).replace("+asyncpg", "+psycopg2")


@lru_cache()
def get_sync_sessionmaker() -> sessionmaker:
    sync_engine = create_engine(
        sync_database_url(),
        pool_size=5,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    return sessionmaker(bind=sync_engine, class_=Session, expire_on_commit=False)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    # Load server-generated timestamps on flush; lazy loads are not async-safe
    __mapper_args__ = {"eager_defaults": True}


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: one session per request.
    Commits when the route returns, rolls back when it raises.
    Routes that must report a conflict mid-request commit themselves.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables. Migrations own the schema in production."""
    # Importing registers every model on Base.metadata
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
