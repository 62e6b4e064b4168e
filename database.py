"""
Database setup and models for orders, provider jobs and webhook events.
"""
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from config import ConfigError, get_settings

Base = declarative_base()

ORDER_ID_PATTERN = r"^ORD-[0-9]{8}-[A-Z0-9]{4}$"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (OrderStatus.SUCCEEDED.value, OrderStatus.FAILED.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(20), primary_key=True)  # ORD-YYYYMMDD-XXXX
    shopify_order_id = Column(String(255), unique=True, index=True, nullable=False)
    image_url = Column(Text, nullable=False)
    style = Column(String(255), nullable=False)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    jobs = relationship("Job", back_populates="order", cascade="all, delete-orphan", passive_deletes=True)


class Job(Base):
    __tablename__ = "jobs"

    runpod_id = Column(String(255), primary_key=True)
    order_id = Column(String(20), ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    output_image_url = Column(Text)
    output_video_url = Column(Text)

    order = relationship("Order", back_populates="jobs")


class WebhookEvent(Base):
    """Idempotency ledger for inbound Shopify webhooks (insert-if-absent)."""
    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    topic = Column(String(255), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)


def get_database_url() -> str:
    db_url = (get_settings().database_url or "").strip()
    if not db_url:
        raise ConfigError("Missing SUPABASE_DB_URL (or DATABASE_URL) environment variable")
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


@lru_cache
def get_engine():
    db_url = get_database_url()
    if db_url.startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False})
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"connect_timeout": 10},
    )


@lru_cache
def get_sessionmaker():
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def SessionLocal():
    return get_sessionmaker()()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    # Creates orders, jobs, webhook_events
    Base.metadata.create_all(bind=get_engine())

