from sqlalchemy import Column, BigInteger, Boolean, DateTime, Integer, Text, Index, Uuid
from sqlalchemy.sql import func
from core.database import Base
import uuid


PLAN_FREE = "free"
PLAN_PRO = "pro"

STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_INCOMPLETE = "incomplete"
STATUS_PAST_DUE = "past_due"
STATUS_UNKNOWN = "unknown"

DELETED_REASON_EXPIRED_ACCESS = "expired_access"
DELETED_REASON_EXPIRED_CLEANUP = "expired_cleanup"


class FileLink(Base):
    """
    One shareable, payable download.

    Lifecycle: active -> soft-deleted (deleted_at set) -> hard-deleted (row
    removed). The last step requires storage_deleted=true, i.e. the object
    behind file_path is already gone from the bucket.
    """

    __tablename__ = "file_links"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(Text, nullable=False, unique=True, index=True)
    file_path = Column(Text, nullable=False)
    file_bytes = Column(BigInteger, nullable=True)  # snapshot at creation, reporting only
    days = Column(Integer, nullable=False, default=14)

    paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_session_id = Column(Text, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deleted_reason = Column(Text, nullable=True)
    storage_deleted = Column(Boolean, default=False, nullable=False)

    created_by_user_id = Column(Text, nullable=True, index=True)

    # Content-policy audit trail; never consulted for entitlement.
    flagged = Column(Boolean, default=False, nullable=False)
    flag_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Subscription(Base):
    """
    Stripe subscription mirror, at most one row per user.

    Stripe is the billing source of truth; this table stores a minimal, queryable
    mirror for entitlement decisions. plan is derived from status on every write.
    """

    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True, index=True)
    email = Column(Text, nullable=True)

    plan = Column(Text, default=PLAN_FREE, nullable=False)
    status = Column(Text, default=STATUS_UNKNOWN, nullable=False)

    stripe_customer_id = Column(Text, nullable=True)
    stripe_subscription_id = Column(Text, nullable=True)
    stripe_price_id = Column(Text, nullable=True)

    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_subscriptions_stripe_customer_id", "stripe_customer_id"),
        Index("ix_subscriptions_stripe_subscription_id", "stripe_subscription_id"),
    )

    @property
    def is_pro_active(self) -> bool:
        return self.plan == PLAN_PRO and self.status == STATUS_ACTIVE


class StripeEvent(Base):
    """
    Processed Stripe events (idempotency guard).

    Stripe retries webhook deliveries; storing event ids makes webhook handling safe.
    """

    __tablename__ = "stripe_events"

    event_id = Column(Text, primary_key=True)  # Stripe event id (e.g., evt_*)
    event_type = Column(Text, nullable=False)
    stripe_created = Column(BigInteger, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_stripe_events_event_type", "event_type"),
    )
