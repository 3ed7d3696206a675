"""
ChartRAG Database Connection Management

Async SQLAlchemy engine and session factory for the pgvector backend.
Nothing here is created at import time; the application lifespan owns
the engine.
"""

import logging
import os

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chartrag.config import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

# Connection pool settings
POOL_SIZE = 5
MAX_OVERFLOW = 10
POOL_RECYCLE = 1800  # 30 minutes
POOL_PRE_PING = True


def create_db_engine(database_url: str | None = None) -> AsyncEngine:
    return create_async_engine(
        database_url or DEFAULT_DATABASE_URL,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=POOL_PRE_PING,
        echo=os.environ.get("DB_ECHO", "false").lower() == "true",
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_vector_table(
    engine: AsyncEngine,
    dimension: int,
    table: str = "chunk_embeddings",
) -> None:
    """Create the pgvector extension and embeddings table if missing."""
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                f"chunk_id TEXT PRIMARY KEY, "
                f"embedding vector({int(dimension)}))"
            )
        )
    logger.info("pgvector table %s ready (dimension=%d)", table, dimension)


async def check_database_health(engine: AsyncEngine) -> dict:
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1 AS health_check"))
            if result.scalar() == 1:
                return {"status": "healthy", "database": "connected", "pool_size": POOL_SIZE}
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
    return {"status": "unknown", "database": "check_failed"}
