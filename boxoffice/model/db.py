"""
ORM models for the box office core.

Orders are immutable except for `status` and the fields stamped by a status
transition. Tier `sold` only moves through model.ledger.reserve / release.
"""
from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# Event statuses
EVENT_DRAFT = "draft"
EVENT_ACTIVE = "active"
EVENT_CANCELLED = "cancelled"
EVENT_COMPLETED = "completed"

# Order statuses
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

# Delivery statuses
DELIVERY_PENDING = "pending"
DELIVERY_PROCESSING = "processing"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"

DELIVERY_KIND_TICKET = "ticket"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    location = Column(String, nullable=False, default="")
    starts_at = Column(Float, nullable=True)
    # draft | active | cancelled | completed
    status = Column(String, nullable=False, default=EVENT_DRAFT)
    created_at = Column(Float, nullable=False)


class Tier(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="tier_capacity_nonneg"),
        CheckConstraint(
            "sold >= 0 AND sold <= capacity", name="tier_sold_within_capacity"
        ),
        CheckConstraint("max_per_order > 0", name="tier_max_per_order_pos"),
        Index("idx_tiers_event", "event_id"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")
    capacity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    max_per_order = Column(Integer, nullable=False, default=10)
    active = Column(Boolean, nullable=False, default=True)
    sale_starts_at = Column(Float, nullable=True)
    sale_ends_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_quantity_pos"),
        Index("idx_orders_event", "event_id"),
        Index("idx_orders_tier", "tier_id"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_created", "created_at"),
    )
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)

    # buyer (immutable)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    buyer_phone = Column(String, nullable=True)
    buyer_country = Column(String, nullable=True)

    # purchase (immutable)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents
    total_price = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")

    # pending | paid | cancelled | refunded
    status = Column(String, nullable=False, default=ORDER_PENDING)

    # sha256 of the one-time credential, the plaintext is never stored here
    credential_hash = Column(String(64), nullable=False, unique=True)

    payment_provider = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    payment_confirmed_at = Column(Float, nullable=True)
    payment_confirmed_by = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    cancelled_at = Column(Float, nullable=True)
    cancel_reason = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)
    refund_reason = Column(String, nullable=True)


class DeliveryObligation(Base):
    __tablename__ = "delivery_outbox"
    __table_args__ = (
        UniqueConstraint("order_id", "kind", name="uniq_delivery_per_order"),
        CheckConstraint("attempts <= 5", name="max_delivery_attempts"),
        Index("idx_delivery_status", "status"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    kind = Column(String, nullable=False, default=DELIVERY_KIND_TICKET)
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    # MUST be NULL after a confirmed send
    credential_plaintext = Column(Text, nullable=True)
    # pending | processing | sent | failed
    status = Column(String, nullable=False, default=DELIVERY_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(Float, nullable=True)
    sent_at = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)


class CheckinRecord(Base):
    __tablename__ = "checkins"
    __table_args__ = (
        UniqueConstraint("order_id", name="unique_order_checkin"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    checked_in_at = Column(Float, nullable=False)
    checked_in_by = Column(String, nullable=True)
    device_info = Column(String, nullable=True)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
