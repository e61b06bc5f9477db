"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling (QueuePool for servers, StaticPool for in-memory sqlite)
- Table definitions for users, subscriptions, wallet quotes and billing bookkeeping

Uniqueness rules that the billing code relies on live here as constraints:
payment references, webhook event ids, gateway customer ids and the
one-active-subscription-per-user partial index.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Numeric, Text, Index, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from cryptowatch.core.config import settings
from cryptowatch.core.logging import LOGGER_NAME


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    if url.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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

    Commits when the block exits cleanly, rolls back and re-raises otherwise.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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
        logging.getLogger(LOGGER_NAME).warning(f"Database connection check failed: {e}")
        return False


_ACTIVE_ONLY = text("status = 'active'")

# Users (owned by the account system; billing only reads them and sets the gateway customer id)
users = Table(
    'users',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('payment_gateway_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscriptions: one row per paid period chain; never hard-deleted
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False, index=True),  # active, past_due, cancelled, expired, pending
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('payment_method', String(20), nullable=False),  # card, hosted_crypto, direct_wallet
    Column('payment_reference', String(255), nullable=False),
    Column('gateway_subscription_id', String(100), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('superseded_by', String(36), nullable=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('payment_reference', name='uq_subscriptions_payment_reference'),
    Index('idx_subscriptions_gateway_id', 'gateway_subscription_id'),
    Index('idx_subscriptions_user_created', 'user_id', 'created_at'),
    Index(
        'uq_subscriptions_one_active_per_user',
        'user_id',
        unique=True,
        sqlite_where=_ACTIVE_ONLY,
        postgresql_where=_ACTIVE_ONLY,
    ),
)

# Wallet payment quotes
pending_payments = Table(
    'pending_payments',
    metadata,
    Column('payment_id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('months', Integer, nullable=False),
    Column('network', String(20), nullable=False),
    Column('currency', String(10), nullable=False),
    Column('expected_amount', Numeric(18, 6), nullable=False),
    Column('discount', Numeric(5, 4), nullable=False, server_default='0'),
    Column('deposit_address', String(100), nullable=False),
    Column('is_renewal', Boolean, nullable=False, server_default='false'),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, consumed, expired
    Column('tx_hash', String(128), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False, index=True),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('gateway', String(30), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='false', index=True),
    Column('claimed_at', DateTime(timezone=True), nullable=True),  # set when a delivery starts handling it
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
)

# Errors raised while reconciling webhook events (alerting collaborator sink)
error_logs = Table(
    'error_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('source', String(100), nullable=False, index=True),
    Column('message', Text, nullable=False),
    Column('context_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)

# Maintenance job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
