"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flowreplay.config import detect_dialect, settings
from flowreplay.db.models import Base


def _build_engine_kwargs(url: str) -> dict:
    """Return engine kwargs appropriate for the dialect of ``url``."""
    if detect_dialect(url) == "postgres":
        return {
            "echo": settings.DEBUG,
            "future": True,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    # SQLite: single file, no pool tunables
    return {
        "echo": settings.DEBUG,
        "future": True,
        "connect_args": {"check_same_thread": False},
    }


def create_engine(url: str | None = None) -> AsyncEngine:
    """Build an async engine for ``url`` (settings.DB_URL by default)."""
    db_url = url or settings.DB_URL
    engine = create_async_engine(db_url, **_build_engine_kwargs(db_url))

    if detect_dialect(db_url) == "sqlite" and ":memory:" not in db_url:
        # WAL lets concurrent runs read while one of them writes its record.
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
