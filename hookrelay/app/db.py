from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from hookrelay.app.config import Settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):  # noqa: ARG001
    """Apply SQLite PRAGMAs on every new connection from the pool.

    PRAGMAs like busy_timeout and synchronous are per-connection, so they
    must be set every time a new connection is opened.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.close()


def create_engine(settings: Settings) -> AsyncEngine:
    """Build the async engine for the configured database URL."""
    url = settings.db_url
    is_sqlite = url.startswith("sqlite")
    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )
    if is_sqlite:
        # Register on the sync engine so it fires for every raw DBAPI connection
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, settings: Settings) -> None:
    """Create the data directory and any missing tables."""
    import hookrelay.app.models.tenant  # noqa: F401  (registers the table)

    if settings.db_url.startswith("sqlite"):
        settings.data_dir.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready ({})", engine.url.render_as_string(hide_password=True))
