"""
Async SQLAlchemy engine, session helpers and declarative base.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from idp.config import settings


def _engine_kwargs() -> dict:
    if settings.sqlalchemy.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_overflow,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.sqlalchemy, **_engine_kwargs())
SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """
    Naive UTC timestamp, matching the DateTime columns.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db_session():
    """
    FastAPI dependency yielding a session per request.
    """
    async with SessionLocal() as session:
        yield session
