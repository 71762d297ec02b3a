"""Database engine, session factory, and declarative base.

All tables share a single ``Base``.  Schema creation for development and
tests goes through ``init_models()``; there are no migrations.

Session dependency for FastAPI:
  - get_db()  → commits on success, rolls back on any exception
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from microfarm.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (dev/test) does not accept pool sizing arguments
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": 20, "max_overflow": 10}


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ── Schema bootstrap ────────────────────────────────────────

async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create every table registered on ``Base`` (idempotent)."""
    import microfarm.models  # noqa: F401  register mappers

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ── Session dependency ──────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a session; commit when the request succeeds."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
