# backend/app/db/database.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from typing import AsyncGenerator
import logging

from app.core.config import settings
from app.models.models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

engine_kwargs = {"pool_pre_ping": True, "echo": False}
if not DATABASE_URL.startswith("sqlite"):
    # Webhook bursts from Stripe/Twilio plus dashboard traffic
    engine_kwargs.update(
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_recycle=3600,
    )

engine = create_async_engine(DATABASE_URL, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Async dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory for handlers that fan out queries."""
    return AsyncSessionLocal


async def init_db():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection() -> bool:
    """Check if database connection is working."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False
