"""Database connection and session management."""

import os
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


# Data directory
DATA_DIR = Path(os.environ.get("KEYPOLICY_DATA_DIR", Path.home() / ".keypolicy"))
DATA_DIR.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.environ.get(
    "KEYPOLICY_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR / 'keypolicy.db'}"
)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


async def init_db():
    """Initialize the database and create all tables."""
    async with engine.begin() as conn:
        # Import models here to ensure they are registered with Base.metadata
        from models.event import Event
        from models.settings import AppSettings

        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close the database engine."""
    await engine.dispose()


async def get_session() -> AsyncSession:
    """Dependency to get a database session."""
    async with async_session() as session:
        yield session
