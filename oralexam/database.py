"""
oralexam/database.py
Async database engine, session factory and lifecycle helpers
"""
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Import Base from orm.base to avoid circular imports
from oralexam.orm.base import Base
import oralexam.orm  # ensures all models are registered
from oralexam.config.settings import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")

if "sqlite" in DATABASE_URL.lower():
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        connect_args={
            "timeout": 30.0,   # SQLite busy timeout in seconds
        }
    )
else:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create any missing tables."""
    logger.info("Initializing database...")

    try:
        logger.info(f"Database dialect: {engine.url.get_backend_name()}")

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("✓ Database initialization complete")

    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
