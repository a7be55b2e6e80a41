from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
import logging

from trainer.core.config import settings

logger = logging.getLogger(__name__)

# Determine database type and configure engine accordingly
def create_database_engine(database_url: str = None):
    """Create database engine with appropriate configuration based on database type"""
    database_url = database_url or settings.database_url
    # Normalize to psycopg3 driver if using Postgres without explicit driver
    if database_url.startswith('postgresql://') and '+psycopg' not in database_url:
        database_url = database_url.replace('postgresql://', 'postgresql+psycopg://', 1)

    if database_url.startswith('sqlite'):
        # SQLite configuration
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},  # Required for SQLite
            echo=settings.debug,
        )
    else:
        # PostgreSQL configuration
        engine = create_engine(
            database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,  # Verify connections before use
            echo=settings.debug,  # Log SQL queries in debug mode
        )

    return engine

# Create async engine for session reads and writes
def create_async_database_engine(database_url: str = None):
    """Create async database engine with appropriate configuration based on database type"""
    database_url = database_url or settings.database_url
    # Convert to async driver
    if database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+psycopg://', 1)
    elif database_url.startswith('sqlite:///'):
        # Use aiosqlite for SQLite async
        database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)

    if database_url.startswith('sqlite'):
        # SQLite configuration
        async_engine = create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.debug,
        )
    else:
        # PostgreSQL configuration
        async_engine = create_async_engine(
            database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
            echo=settings.debug,
        )

    return async_engine

# Sync engine for startup checks, async engine for everything a live session touches
engine = create_database_engine()
async_engine = create_async_database_engine()

AsyncSessionLocal = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

class Base(DeclarativeBase):
    pass

def create_tables(bind=None):
    """Create all tables in the database.

    Best-effort bootstrap for development; production databases are expected
    to be provisioned ahead of time.
    """
    # Import models so they are registered with Base
    import trainer.models  # noqa: F401
    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully (metadata-based)")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise

def check_connection():
    """Check database connection health"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
