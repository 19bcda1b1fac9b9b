"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (server databases)
- SQLite support for tests and local development
- Table definitions for plans, accounts, preferences, activity and claims
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text,
    Index, ForeignKey, UniqueConstraint, CheckConstraint, select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from matchadmin.core.config import settings


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


def _engine_kwargs(url: str) -> dict:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return {
            "poolclass": QueuePool,
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE,
        }
    kwargs = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
    if parsed.database in (None, "", ":memory:"):
        # One shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


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

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (shutdown / test teardown)."""
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


def dialect_name() -> str:
    return get_engine().dialect.name


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
        logging.getLogger("matchadmin").warning(f"Database connection check failed: {e}")
        return False


# Subscription plans (owned by PlanCatalog)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False, unique=True),
    Column('price_minor_units', Integer, nullable=False, default=0),
    Column('currency', String(3), nullable=False, default='usd'),
    Column('features', JSON, nullable=False),
    Column('available', Boolean, nullable=False, default=True),
    Column('is_default', Boolean, nullable=False, default=False),
    Column('external_product_id', String(100), nullable=True, unique=True),
    Column('external_price_id', String(200), nullable=True, unique=True),  # provider price lookup key
    Column('pending_sync', Boolean, nullable=False, default=False),
    Column('pending_groups', JSON, nullable=True),
    Column('pending_changeset', JSON, nullable=True),
    Column('version', Integer, nullable=False, default=1),
    Column('sync_lease_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('price_minor_units >= 0', name='ck_plans_price_non_negative'),
    Index('idx_plans_is_default', 'is_default'),
    Index('idx_plans_pending_sync', 'pending_sync'),
)

# Account preferences (created during provisioning, updated by admins)
preferences = Table(
    'preferences',
    metadata,
    Column('preference_id', String(36), primary_key=True),
    Column('account_id', String(36), nullable=False, index=True),
    Column('data', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Billing-relevant projection of a user
accounts = Table(
    'accounts',
    metadata,
    Column('account_id', String(36), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('phone', String(32), nullable=False, unique=True),
    Column('name', Text, nullable=True),
    Column('password_hash', String(100), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('swipe_limit_snapshot', Integer, nullable=False),
    Column('external_customer_id', String(100), nullable=True, unique=True),
    Column('preference_id', String(36), ForeignKey('preferences.preference_id'), nullable=True),
    Column('profile', JSON, nullable=True),
    Column('last_active_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Index for finding all accounts on a plan (dashboard counts)
    Index('idx_accounts_plan_id', 'plan_id'),
)

# Per-account, per-month usage counters
activity_records = Table(
    'activity_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(36), nullable=False),
    Column('year', Integer, nullable=False),
    Column('month', Integer, nullable=False),
    Column('likes', Integer, nullable=False, default=0),
    Column('matches', Integer, nullable=False, default=0),
    Column('swipes', Integer, nullable=False, default=0),
    # The upsert conflict target
    UniqueConstraint('account_id', 'year', 'month', name='uq_activity_records_key'),
    CheckConstraint('month >= 1 AND month <= 12', name='ck_activity_records_month'),
    CheckConstraint('likes >= 0 AND matches >= 0 AND swipes >= 0', name='ck_activity_records_counters'),
    Index('idx_activity_records_account_year', 'account_id', 'year'),
)

# Idempotency keys table (provisioning identity claims)
idempotency_keys = Table(
    'idempotency_keys',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('scope', String(100), nullable=True, index=True),
    # Composite index for scope + created_at lookups
    Index('idx_idempotency_keys_scope_created', 'scope', 'created_at'),
)
