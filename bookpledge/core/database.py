"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases)
- Table definitions for commitments, penalty charges and subscription state
"""
import logging
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Numeric,
    Text,
    Index,
    UniqueConstraint,
    text,
    false,
    true,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from bookpledge.core.config import settings

logger = logging.getLogger("bookpledge")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    connect_args = {}
    if url.startswith("sqlite"):
        # Worker threads share the pool; writers wait on the file lock instead of failing
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users, payment method references and subscription state
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(320), nullable=True),
    Column('stripe_customer_id', String(255), nullable=True),
    Column('stripe_payment_method_id', String(255), nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='inactive'),
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    # signedDate of the last applied billing notification (monotonic guard)
    Column('subscription_event_at', DateTime(timezone=True), nullable=True),
    Column('apple_original_transaction_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Reading commitments
commitments = Table(
    'commitments',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('book_id', String(100), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('deadline', DateTime(timezone=True), nullable=False),
    Column('pledge_amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False, server_default='USD'),
    Column('is_freeze_used', Boolean, nullable=False, server_default=false()),
    Column('defaulted_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Reaper scan: (status, deadline)
    Index('idx_commitments_status_deadline', 'status', 'deadline'),
    # Lifeline checks: (user_id, book_id) and (user_id, is_freeze_used, updated_at)
    Index('idx_commitments_user_book', 'user_id', 'book_id'),
    Index('idx_commitments_user_freeze', 'user_id', 'is_freeze_used', 'updated_at'),
)

# Penalty charge attempt series, at most one per commitment
penalty_charges = Table(
    'penalty_charges',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('commitment_id', String(36), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('customer_ref', String(255), nullable=True),
    Column('payment_method_ref', String(255), nullable=True),
    Column('outcome', String(20), nullable=False, server_default='pending'),
    Column('attempt_count', Integer, nullable=False, server_default=text('0')),
    Column('last_error', Text, nullable=True),
    Column('failure_code', String(100), nullable=True),
    Column('payment_intent_id', String(255), nullable=True),
    Column('last_attempt_at', DateTime(timezone=True), nullable=True),
    Column('next_retry_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('commitment_id', name='uq_penalty_charges_commitment'),
    # Retry pass: (outcome, next_retry_at)
    Index('idx_penalty_charges_outcome_retry', 'outcome', 'next_retry_at'),
)

# Device push tokens
push_tokens = Table(
    'push_tokens',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('token', String(255), nullable=False, unique=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Idempotency keys table (processed external events)
idempotency_keys = Table(
    'idempotency_keys',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('scope', String(100), nullable=True, index=True),
    Index('idx_idempotency_keys_scope_created', 'scope', 'created_at'),
)

# Reaper runs (summary business record)
reaper_job_runs = Table(
    'reaper_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('mode', String(20), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_reaper_job_runs_started', 'started_at'),
)
