"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the Rift escrow core.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base, LedgerEntry, DisputeAction, RiftEvent, VaultEvent

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory databases must share one connection across sessions
        in_memory = url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url
        return create_engine(
            url,
            poolclass=StaticPool if in_memory else None,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=False,
    )


engine = _build_engine(Config.DATABASE_URL)

if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


class ImmutableRecordError(RuntimeError):
    """Raised when code attempts to mutate an append-only record"""


def _reject_mutation(mapper, connection, target):
    raise ImmutableRecordError(
        f"{target.__class__.__name__} rows are append-only and cannot be updated or deleted"
    )


# Ledger entries, admin actions and audit logs are append-only
for _append_only_model in (LedgerEntry, DisputeAction, RiftEvent, VaultEvent):
    event.listen(_append_only_model, "before_update", _reject_mutation)
    event.listen(_append_only_model, "before_delete", _reject_mutation)


def create_tables():
    """Create all tables known to the declarative base"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database tables created/verified")
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


def drop_tables():
    """Drop all tables (used by the test suite)"""
    Base.metadata.drop_all(bind=engine)


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Run a trivial query to verify the database is reachable"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
