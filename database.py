"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the Staked Meetup Bot record store.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def normalize_async_url(database_url: str) -> str:
    """Map a plain database URL onto its async driver"""
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


def build_async_engine(database_url: str) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend"""
    async_url = normalize_async_url(database_url)

    if async_url.startswith('sqlite'):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ':memory:' in async_url or async_url.rstrip('/').endswith('sqlite+aiosqlite:'):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_async_engine(async_url, echo=False, **kwargs)

    return create_async_engine(
        async_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "server_settings": {
                "application_name": "meetup_stakes_bot",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,
            "command_timeout": 30,
        }
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Records are read after commit by handlers
    )


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

async_engine = build_async_engine(Config.DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: async_sessionmaker = None):
    """Async context manager for database sessions"""
    factory = session_factory or AsyncSessionLocal
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine = None) -> bool:
    """Create all database tables if they don't exist"""
    target = engine or async_engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        async with target.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


async def test_connection(engine: AsyncEngine = None) -> bool:
    """Test database connection"""
    target = engine or async_engine
    try:
        async with target.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
