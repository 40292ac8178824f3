"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the KeyShield deal lifecycle core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_url(database_url: str) -> str:
    """Convert a sync DATABASE_URL to its async driver equivalent"""
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    if database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace('sslmode=require', 'ssl=require')
        database_url = database_url.replace('sslmode=prefer', 'ssl=prefer')
        database_url = database_url.replace('sslmode=disable', 'ssl=disable')
    elif database_url.startswith('sqlite://'):
        database_url = database_url.replace('sqlite://', 'sqlite+aiosqlite://', 1)
    return database_url


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend"""
    url = to_async_url(database_url)
    if url.startswith('sqlite'):
        # SQLite: one connection per checkout, writers serialize on the file lock
        return create_async_engine(url, poolclass=NullPool, echo=echo)

    return create_async_engine(
        url,
        pool_size=7,           # Async base pool
        max_overflow=15,       # Async burst capacity
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=echo,
        connect_args={
            "server_settings": {
                "application_name": "keyshield_dlc",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,  # Connection timeout
            "command_timeout": 30,  # Command execution timeout
        }
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Snapshots stay readable after commit
    )


async_engine = build_async_engine(Config.DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async unit of work: commit on success, rollback and re-raise on any error"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


def dialect_insert(session: AsyncSession, model):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect"""
    dialect_name = session.get_bind().dialect.name
    if dialect_name == 'postgresql':
        return pg_insert(model)
    if dialect_name == 'sqlite':
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect_name}")


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or async_engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


async def test_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    engine = engine or async_engine
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine(engine: Optional[AsyncEngine] = None):
    await (engine or async_engine).dispose()
