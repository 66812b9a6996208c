import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    # Import models to register them with SQLAlchemy
    from backend.app.models import (  # noqa: F401
        dashboard_preferences,
        printer,
        settings,
        uploaded_file,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        # Run migrations for new columns (SQLite doesn't auto-add columns)
        await run_migrations(conn)

    logger.info("All required tables verified")


async def run_migrations(conn):
    """Add new columns to existing tables if they don't exist."""
    from sqlalchemy import text

    # Migration: Add thumbnail column to uploaded_files
    try:
        await conn.execute(text("ALTER TABLE uploaded_files ADD COLUMN thumbnail TEXT"))
    except Exception:
        # Column already exists
        pass

    # Migration: Add display_name column to uploaded_files
    try:
        await conn.execute(text("ALTER TABLE uploaded_files ADD COLUMN display_name VARCHAR(255)"))
    except Exception:
        # Column already exists
        pass

    # Migration: Add last_seen column to printers
    try:
        await conn.execute(text("ALTER TABLE printers ADD COLUMN last_seen DATETIME"))
    except Exception:
        pass
