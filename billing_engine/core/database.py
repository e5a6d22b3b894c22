"""
Database engine, sessions and table definitions.

Entitlement records live in `subscriptions` (one row per user). Webhook
bookkeeping lives in `billing_events`, admin actions in `billing_admin_audit`.
`app_users` belongs to the identity layer and is only read here.

PostgreSQL in production; file-backed SQLite in tests and local runs. Both
support the `INSERT ... ON CONFLICT` upserts the store relies on.
"""
from contextlib import contextmanager
from typing import Optional
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index, CheckConstraint
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func, select

from billing_engine.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

# Sized for the request pool plus the write-back workers.
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600
SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _connect_args(url: str) -> dict:
    if make_url(url).get_backend_name() != "sqlite":
        return {}
    # Worker threads share the pool; writers wait on the file lock instead of failing.
    return {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)create the engine and session factory. Disposes any previous engine."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    dispose_engine()
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=_connect_args(url),
    )
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_db_session():
    """
    One transaction: commits on normal exit, rolls back and re-raises on error.

        with get_db_session() as session:
            session.execute(...)
    """
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive. Tests and local development only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except (SQLAlchemyError, ValueError) as e:
        logger.warning("Database connection check failed: %s", e)
        return False
    return True


# Users table (owned by the identity layer; read here to validate admin targets)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Entitlement records: one row per user, materialized on first mutation
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan', String(20), nullable=False, server_default='collector'),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('billing_customer_id', String(255), nullable=True),
    Column('billing_subscription_id', String(255), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('scans_used', Integer, nullable=False, server_default='0'),
    Column('scans_reset_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('scans_used >= 0', name='ck_subscriptions_scans_used_non_negative'),
    CheckConstraint(
        "status <> 'trialing' OR trial_end IS NOT NULL",
        name='ck_subscriptions_trialing_has_trial_end',
    ),
    # Webhook resolution lookups
    Index('idx_subscriptions_billing_customer_id', 'billing_customer_id'),
    Index('idx_subscriptions_billing_subscription_id', 'billing_subscription_id'),
)

# Webhook ledger
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), unique=True, nullable=False, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('outcome', String(20), nullable=False, server_default='received'),  # received, processed, ignored, unresolved, failed
    Column('user_id', String(100), nullable=True, index=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_billing_events_type_outcome', 'event_type', 'outcome'),
)

# Admin audit trail
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(255), nullable=False, index=True),
    Column('auth_mechanism', String(20), nullable=True),
    Column('action', String(100), nullable=False, index=True),
    Column('target_user_id', String(100), nullable=True, index=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
