"""Database sessions"""
from contextlib import asynccontextmanager

from shared.database import connection
from shared.database.connection import get_db


@asynccontextmanager
async def session_scope():
    """Standalone session for code running outside a request (webhook retries, scripts)"""
    if connection.async_session_maker is None:
        raise RuntimeError("Database not initialized. Please check application startup.")
    async with connection.async_session_maker() as session:
        yield session

__all__ = ["get_db", "session_scope"]
