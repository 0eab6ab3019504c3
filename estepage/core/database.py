"""
Persistence for subscription state.

- One lazily built process-wide engine for the API and the worker
- Session factories: `get_db_session` for the global engine, and
  `make_session_factory(engine)` for components handed their own engine
- SQLAlchemy Core tables (tenants, listings, subscriptions, ledgers)
- UTC helpers; every stored timestamp is timezone-aware UTC
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, ContextManager, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    false,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from estepage.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 1800  # seconds

SessionFactory = Callable[[], ContextManager[Session]]

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. SQLite returns naive values, which are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL."""
    return settings.TEST_DATABASE_URL or settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
        # One shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the process-wide engine and session maker."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured (environment or .env)")

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.info("Database engine initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def _scope(SessionLocal: sessionmaker) -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Transactional session on the global engine: commits on success, rolls
    back and re-raises on error.

        with get_db_session() as session:
            session.execute(...)
    """
    yield from _scope(get_session_factory())


def make_session_factory(engine: Engine) -> SessionFactory:
    """A `get_db_session` equivalent bound to `engine`."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @contextmanager
    def session_scope() -> Iterator[Session]:
        yield from _scope(SessionLocal)

    return session_scope


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Create missing tables; existing ones are left alone."""
    metadata.create_all(bind=engine or get_engine())


# Tenants (accounts owning listings and a subscription)
tenants = Table(
    'tenants',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('email', String(255), nullable=False),
    Column('company_name', String(255), nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_tenants_email', 'email'),
)

# Property listings (owned by the listings collaborator; counted for quotas)
listings = Table(
    'listings',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False),
    Column('title', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_listings_tenant_id', 'tenant_id'),
)

# Listing images
listing_images = Table(
    'listing_images',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('listing_id', Integer, ForeignKey('listings.id'), nullable=False),
    Column('url', Text, nullable=False),
    Column('position', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_listing_images_listing_id', 'listing_id'),
)

# Tenant subscriptions: local cache of processor subscription state.
# Rows are never deleted; at most one row per tenant is active/cancelling.
CURRENT_SUBSCRIPTION_PREDICATE = text("status IN ('active', 'cancelling')")

tenant_subscriptions = Table(
    'tenant_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False),
    Column('external_subscription_id', String(255), nullable=False),
    Column('external_customer_id', String(255), nullable=True),
    Column('status', String(50), nullable=False),  # active, cancelling, cancelled, expired
    Column('external_plan_reference', String(255), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('cancellation_requested_at', DateTime(timezone=True), nullable=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('external_subscription_id', name='uq_tenant_subscriptions_external_id'),
    Index('idx_tenant_subscriptions_tenant_status', 'tenant_id', 'status'),
    Index('idx_tenant_subscriptions_status_period_end', 'status', 'period_end'),
    Index(
        'uq_tenant_subscriptions_current',
        'tenant_id',
        unique=True,
        postgresql_where=CURRENT_SUBSCRIPTION_PREDICATE,
        sqlite_where=CURRENT_SUBSCRIPTION_PREDICATE,
    ),
)

# Processed webhook events (idempotency ledger)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('external_event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('external_subscription_id', String(255), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('error', Text, nullable=True),
    UniqueConstraint('external_event_id', name='uq_billing_events_external_id'),
    Index('idx_billing_events_subscription', 'external_subscription_id'),
    Index('idx_billing_events_processed', 'processed'),
)

# Lifecycle notices already sent (one per record, kind, threshold and day)
subscription_notices = Table(
    'subscription_notices',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('tenant_subscriptions.id'), nullable=False),
    Column('kind', String(50), nullable=False),  # expiry_warning
    Column('threshold_days', Integer, nullable=False),
    Column('period_end_date', Date, nullable=False),
    Column('sent_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint(
        'subscription_id', 'kind', 'threshold_days', 'period_end_date',
        name='uq_subscription_notices_once',
    ),
)

# Scheduled job bookkeeping
lifecycle_runs = Table(
    'lifecycle_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(50), nullable=False),  # success, partial, failed
    Column('stats_json', Text, nullable=True),
    Index('idx_lifecycle_runs_job_started', 'job_name', 'started_at'),
)
