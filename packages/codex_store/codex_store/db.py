from __future__ import annotations

import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DATABASE_URL = os.getenv("COMPRESSOR_DATABASE_URL", "sqlite+aiosqlite:///./compressor.db")

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None or url is not None:
        _engine = create_async_engine(url or DATABASE_URL, future=True)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _engine


def get_sessionmaker(url: Optional[str] = None) -> async_sessionmaker:
    get_engine(url)
    return _sessionmaker


async def init_db(engine: Optional[AsyncEngine] = None) -> AsyncEngine:
    """
    Creates all tables on the given engine, or on the module engine.
    Safe to call repeatedly; existing tables are left alone.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine
