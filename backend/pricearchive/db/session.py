"""Async engine and session factory for the worker process."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricearchive.config import settings


def _engine_options(database_url: str) -> dict:
    options: dict = {"echo": settings.DEBUG}
    # aiosqlite has no connection pool to tune
    if not database_url.startswith("sqlite"):
        # Reconcile holds one connection; entity creates open short extra ones
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
