"""SQLAlchemy ORM models for the delivery ledger."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, INTEGER, TEXT, TIMESTAMP, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class WebhookDedupEvent(Base):
    """Webhook dedup gate table for delivery idempotency.

    Guarantees at most one entitlement write per (provider, dedup_key) pair
    even under concurrent redelivery of the same Kiwify order.

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      → row returned  : first/re-processing handler → continue
      → no row        : duplicate/concurrent → 200 immediately (zero side effects)
    """

    __tablename__ = "webhook_dedup_events"

    # BIGINT on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BIGINT().with_variant(INTEGER(), "sqlite"), primary_key=True, autoincrement=True
    )

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)     # kiwify
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)    # ord_<order_id> | ph_<sha256>

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed | unmatched

    # SHA-256 hex of request body (never raw payload)
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_provider_key"),
        Index("idx_webhook_dedup_status", "status"),
    )
