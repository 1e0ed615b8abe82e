"""Database connection (PostgreSQL via asyncpg, SQLite via aiosqlite for local runs)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator, Optional
import logging
import asyncio

from app.core.config import settings

logger = logging.getLogger(__name__)

# Base for SQLAlchemy models
Base = declarative_base()

# Engine and session factory
engine = None
async_session_maker = None


def to_async_url(database_url: str) -> str:
    """Map a plain DATABASE_URL to its async driver"""
    # Query parameters (sslmode etc.) are not understood by asyncpg
    if database_url.startswith("postgres") and "?" in database_url:
        database_url = database_url.split("?")[0]
        logger.info("Removed query parameters from DATABASE_URL")

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        return database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None, create_tables: bool = False):
    """Initialize the engine and session factory"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    database_url = to_async_url(database_url or settings.DATABASE_URL)
    logger.info(f"Initializing database connection to: {database_url.split('@')[-1]}")

    if database_url.startswith("sqlite"):
        # Writers serialize on the database file; wait instead of failing fast
        engine_kwargs = {"connect_args": {"timeout": 30}}
    else:
        engine_kwargs = {
            "pool_pre_ping": True,
            "pool_recycle": 300,
            "pool_timeout": 30,
            "pool_use_lifo": True,
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        }
        logger.info(
            f"Pool config: size={settings.DATABASE_POOL_SIZE}, overflow={settings.DATABASE_MAX_OVERFLOW}"
        )

    engine = create_async_engine(database_url, echo=settings.APP_DEBUG, **engine_kwargs)
    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    if create_tables:
        # Importing models registers them on Base.metadata
        import shared.database.models  # noqa: F401
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    logger.info("Database engine initialized successfully")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that yields a database session.

    Transient DNS/socket errors while connecting are retried with exponential
    backoff. Errors raised by the request handler are never retried.
    """
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")

    max_retries = 3
    retry_delay = 0.5

    for attempt in range(max_retries):
        session = async_session_maker()
        try:
            await session.connection()
            break
        except OSError as e:
            # socket.gaierror is a subclass of OSError
            await session.close()
            if attempt == max_retries - 1:
                logger.error(f"Database connection failed after {max_retries} attempts: {e}")
                raise
            delay = retry_delay * (2 ** attempt)
            logger.warning(
                f"Database connection error (attempt {attempt + 1}/{max_retries}): {type(e).__name__}: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)

    try:
        yield session
    finally:
        await session.close()


async def close_db():
    """Dispose of the engine"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")
