"""Async SQLAlchemy engine, session factory and declarative base."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncSession:
    async with async_session() as session:
        yield session


async def create_schema(bind=engine) -> None:
    """Create all tables. Used in development and tests only."""
    import models  # noqa: F401 - registers the mappers

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
