"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session factory construction
- Connection pooling with bounded waits and statement timeouts
- Table definitions for profiles and the billing event ledger
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, inspect, false
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from mealplan.core.config import Settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url(cfg: Settings) -> Optional[str]:
    """
    Get the database URL from settings.

    For testing, use TEST_DATABASE_URL if available.
    """
    return os.getenv("TEST_DATABASE_URL") or cfg.TEST_DATABASE_URL or cfg.DATABASE_URL


def build_engine(cfg: Settings, database_url: Optional[str] = None) -> Engine:
    """
    Create the SQLAlchemy engine.

    Args:
        cfg: Application settings (timeouts)
        database_url: Optional override for DATABASE_URL
    """
    url = database_url or get_database_url(cfg)

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": cfg.DB_POOL_TIMEOUT_SECONDS,
        }
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            return create_engine(url, poolclass=StaticPool, connect_args=connect_args)
        return create_engine(url, connect_args=connect_args)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=cfg.DB_POOL_TIMEOUT_SECONDS,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": cfg.DB_POOL_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={cfg.DB_STATEMENT_TIMEOUT_MS}",
        },
        echo=False,  # Set to True for SQL query logging
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker):
    """
    Context manager for database sessions.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)

    Commits on clean exit, rolls back on error.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def missing_tables(engine: Engine) -> list:
    inspector = inspect(engine)
    return [t.name for t in metadata.sorted_tables if not inspector.has_table(t.name)]


# Profiles: one row per identity-provider user
profiles = Table(
    'profiles',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('email', String(320), nullable=False),
    Column('subscription_tier', String(16), nullable=True),  # week, month, year
    Column('stripe_subscription_id', String(255), nullable=True, unique=True),
    Column('subscription_active', Boolean, nullable=False, default=False, server_default=false()),
)

# Billing event ledger: webhook deliveries and local subscription releases
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(255), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False),
    Column('subscription_id', String(255), nullable=True),
    Column('user_id', String(255), nullable=True, index=True),
    Column('event_created', Integer, nullable=False),  # provider unix timestamp
    Column('processed', Boolean, nullable=False, default=False),
    Column('outcome', String(32), nullable=True),
    Column('error', Text, nullable=True),
    Column('payload_hash', String(64), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    # Newest processed event per subscription (stale event guard)
    Index('idx_billing_events_sub_created', 'subscription_id', 'event_created'),
)
