"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the entitlement subsystem
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, Text, Index, UniqueConstraint, false, select
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from backend.core.config import settings


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

    connect_args = {}
    if url.startswith("sqlite"):
        # Test databases are shared between the request thread and workers
        connect_args["check_same_thread"] = False

    # Create engine with connection pooling
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

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the cached engine so the next call re-reads the database URL."""
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
            conn.execute(select(1))
        return True
    except Exception as e:
        logging.getLogger("suite").warning("Database connection check failed: %s", e)
        return False


# Organizations and their global plan tier
organizations = Table(
    'organizations',
    metadata,
    Column('org_id', String(100), primary_key=True),
    Column('plan_tier', String(20), nullable=False, server_default='FREE'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_organizations_plan_tier', 'plan_tier'),
)

# Billing customers: one provider customer per organization
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('org_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Module subscriptions: one live row per (org_id, module_id); canceled rows
# are soft-deleted and kept for billing history.
module_subscriptions = Table(
    'module_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('org_id', String(100), nullable=False),
    Column('module_id', String(50), nullable=False),
    Column('external_subscription_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_price_id', String(100), nullable=True),
    Column('status', String(20), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False, server_default=false()),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('past_due_since', DateTime(timezone=True), nullable=True),
    Column('last_event_sequence', BigInteger, nullable=False, default=0, server_default='0'),
    Column('last_event_id', String(100), nullable=True),
    Column('pending_confirmation_since', DateTime(timezone=True), nullable=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_module_subscriptions_org_module', 'org_id', 'module_id'),
    Index('idx_module_subscriptions_status', 'status'),
)

# Billing events: seen-event-id set plus append-only log of accepted events
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('org_id', String(100), nullable=True),
    Column('module_id', String(50), nullable=True),
    Column('sequence', BigInteger, nullable=False, default=0, server_default='0'),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, default=False, server_default=false()),
    Column('applied', Boolean, nullable=False, default=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_module_org_sequence', 'module_id', 'org_id', 'sequence'),
    Index('idx_billing_events_processed', 'processed'),
)

# Reconciliation job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_job_name', 'job_name'),
)
