"""
SQLAlchemy ORM models for the Order Settlement Platform.

Tables:
    users               — customers, vendors, admins (cached coin balance)
    products            — catalog rows referenced by order lines (stock)
    orders              — order header, status machine, idempotency flags
    order_items         — line items with a price snapshot
    order_timeline      — append-only status history per order
    payments            — one gateway payment per order (1:1, upserted)
    coin_ledger         — append-only coin balance changes (source of truth)
    jobs                — durable job queue rows (all queues)
    notifications       — in-app push notifications written by the worker
    analytics_counters  — aggregated analytics event counts
    coupons / banners   — swept by the cleanup queue
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index,
)
from database import Base
from domain.enums import BackoffType, JobStatus, OrderStatus, PaymentMode, PaymentStatus, UserRole


class User(Base):
    """Platform accounts. coins_balance is a projection of coin_ledger."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    coins_balance = Column(BigInteger, nullable=False, default=0)
    referred_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    price = Column(BigInteger, nullable=False, default=0)  # minor units (paise)
    stock = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Orders
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    """
    Order header.

    status only moves through order_state_machine.validate_transition() and
    is always written with a conditional update on the previous status.
    coins_debited / stock_deducted flip False -> True exactly once.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(30), nullable=False, default=OrderStatus.CREATED.value, index=True)
    payment_mode = Column(String(10), nullable=False, default=PaymentMode.ONLINE.value)
    total_amount = Column(BigInteger, nullable=False, default=0)     # minor units
    coins_used = Column(BigInteger, nullable=False, default=0)
    payable_amount = Column(BigInteger, nullable=False, default=0)   # total - coins
    currency = Column(String(10), nullable=False, default="INR")
    coins_debited = Column(Boolean, nullable=False, default=False)
    stock_deducted = Column(Boolean, nullable=False, default=False)
    provider_order_id = Column(String(100), nullable=True, index=True)  # gateway intent id
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # For customer order history: filter by user_id, order by created_at DESC
        Index("ix_orders_user_created", "user_id", "created_at"),
        # For sweeps: filter by status, order by created_at
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(BigInteger, nullable=False, default=0)  # snapshot at checkout


class OrderTimeline(Base):
    """Append-only status history; one row per accepted transition."""
    __tablename__ = "order_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String(30), nullable=True)
    status = Column(String(30), nullable=False)
    notes = Column(Text, nullable=True)
    changed_by = Column(String(50), nullable=False, default="SYSTEM")
    actor_role = Column(String(20), nullable=False, default=UserRole.SYSTEM.value)
    is_override = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Payments
# ════════════════════════════════════════════════════════════════════

class Payment(Base):
    """
    Gateway payment for an order.

    Lifecycle:
        1. createIntent upserts the row to PENDING with the gateway intent id
        2. Client confirmation OR webhook flips it to SUCCESS / FAILED
        3. SUCCESS and REFUNDED are terminal for both reconciliation paths
        4. Refunds add to refunded_amount; the one that completes it sets REFUNDED
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    provider = Column(String(30), nullable=False, default="RAZORPAY")
    provider_order_id = Column(String(100), unique=True, nullable=True, index=True)  # intent id
    transaction_id = Column(String(100), nullable=True, index=True)  # set once on capture
    refund_id = Column(String(100), nullable=True)
    refunded_amount = Column(BigInteger, nullable=False, default=0)  # minor units, sum of refunds
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    amount = Column(BigInteger, nullable=False)  # minor units
    currency = Column(String(10), nullable=False, default="INR")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Coin Ledger
# ════════════════════════════════════════════════════════════════════

class CoinLedgerEntry(Base):
    """
    Append-only coin ledger.

    SUM(amount) per user must equal users.coins_balance. Rows are never
    updated or deleted.
    """
    __tablename__ = "coin_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)  # positive = credit, negative = debit
    source = Column(String(30), nullable=False)
    reference_id = Column(String(100), nullable=True, index=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_coin_ledger_reference_source", "reference_id", "source"),
    )


# ════════════════════════════════════════════════════════════════════
# Job Queue
# ════════════════════════════════════════════════════════════════════

class Job(Base):
    """
    Durable job row shared by every queue.

    Lifecycle:
        WAITING --claim--> ACTIVE --ok--> COMPLETED (or deleted)
                             |--error, attempts left--> WAITING (run_at = now + backoff)
                             |--error, attempts exhausted--> FAILED (dead-letter)
    """
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(30), nullable=False, index=True)
    job_type = Column(String(30), nullable=False)
    payload = Column(Text, nullable=False)  # JSON of the typed payload model
    status = Column(String(20), nullable=False, default=JobStatus.WAITING.value)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    backoff_type = Column(String(20), nullable=False, default=BackoffType.NONE.value)
    backoff_delay_ms = Column(Integer, nullable=False, default=0)
    remove_on_complete = Column(Boolean, nullable=False, default=False)
    run_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_error = Column(Text, nullable=True)
    reference_id = Column(String(100), nullable=True, index=True)  # order id etc. (weak ref)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # Claim query: WHERE queue = ? AND status = 'WAITING' AND run_at <= now
        Index("ix_jobs_queue_status_run_at", "queue", "status", "run_at"),
    )


# ════════════════════════════════════════════════════════════════════
# Side-effect targets
# ════════════════════════════════════════════════════════════════════

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    channel = Column(String(20), nullable=False, default="PUSH")
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class AnalyticsCounter(Base):
    """Aggregated event counts flushed from the analytics buffer."""
    __tablename__ = "analytics_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(100), nullable=False)
    event_type = Column(String(30), nullable=False)
    count = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "event_type", name="uq_analytics_counter"),
    )


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False)
    valid_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Banner(Base):
    __tablename__ = "banners"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
