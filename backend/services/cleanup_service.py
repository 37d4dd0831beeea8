"""
Cleanup sweeps — periodic, idempotent maintenance jobs.

Each sweep is safe to run any number of times; the cleanup queue never
retries a failed sweep because the scheduler runs it again next interval.

Sweeps:
    abandoned_orders      cancel CREATED / PENDING_PAYMENT orders left unpaid
    expired_coupons       deactivate coupons past valid_until
    expired_banners       deactivate banners past end_date
    purge_completed_jobs  delete COMPLETED jobs older than the retention
    reconcile_orders      re-enqueue stock / coin side effects that never landed
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Banner, Coupon, Job, Order
from domain.constants import SYSTEM_ACTOR
from domain.enums import CleanupKind, JobStatus, JobType, OrderStatus, UserRole
from domain.errors import DomainError
from services import queue_service
from services.queue_service import CleanupPayload

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100

# Orders whose stock and coin side effects must have been queued
CONFIRMED_STATES = (
    OrderStatus.PAID.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PACKED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)


async def sweep_abandoned_orders(db: AsyncSession, now: datetime | None = None) -> int:
    from services import order_service

    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=settings.abandoned_order_minutes)
    res = await db.execute(
        select(Order)
        .where(
            Order.status.in_([OrderStatus.CREATED.value, OrderStatus.PENDING_PAYMENT.value]),
            Order.created_at < cutoff,
        )
        .order_by(Order.created_at)
        .limit(SWEEP_BATCH_SIZE)
    )
    cancelled = 0
    for order in res.scalars().all():
        try:
            await order_service.transition_order(
                db,
                order,
                OrderStatus.CANCELLED,
                actor_id=SYSTEM_ACTOR,
                actor_role=UserRole.SYSTEM,
                notes="Checkout abandoned",
            )
            cancelled += 1
        except DomainError as e:
            # Paid or cancelled while the sweep ran
            logger.info(f"Skipping abandoned order {order.id}: {e.message}")

    if cancelled:
        logger.info(f"Cleanup: cancelled {cancelled} abandoned order(s)")
    return cancelled


async def sweep_expired_coupons(db: AsyncSession, now: datetime | None = None) -> int:
    res = await db.execute(
        update(Coupon)
        .where(Coupon.is_active.is_(True), Coupon.valid_until < (now or datetime.utcnow()))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info(f"Cleanup: deactivated {res.rowcount} expired coupon(s)")
    return res.rowcount


async def sweep_expired_banners(db: AsyncSession, now: datetime | None = None) -> int:
    res = await db.execute(
        update(Banner)
        .where(Banner.is_active.is_(True), Banner.end_date < (now or datetime.utcnow()))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info(f"Cleanup: deactivated {res.rowcount} expired banner(s)")
    return res.rowcount


async def purge_completed_jobs(db: AsyncSession, now: datetime | None = None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(days=settings.completed_job_retention_days)
    res = await db.execute(
        delete(Job)
        .where(Job.status == JobStatus.COMPLETED.value, Job.finished_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info(f"Cleanup: purged {res.rowcount} completed job(s)")
    return res.rowcount


async def _has_job(db: AsyncSession, job_type: JobType, reference_id: str) -> bool:
    # FAILED counts too: a dead-lettered job waits for an operator, not a sweep
    res = await db.execute(
        select(Job.id).where(
            Job.job_type == job_type.value,
            Job.reference_id == reference_id,
            Job.status.in_([JobStatus.WAITING.value, JobStatus.ACTIVE.value, JobStatus.FAILED.value]),
        ).limit(1)
    )
    return res.scalar_one_or_none() is not None


async def reconcile_orders(db: AsyncSession, now: datetime | None = None) -> int:
    """Re-enqueue missing stock deduction / coin debit jobs for confirmed orders."""
    requeued = 0

    res = await db.execute(
        select(Order)
        .where(Order.status.in_(CONFIRMED_STATES), Order.stock_deducted.is_(False))
        .limit(SWEEP_BATCH_SIZE)
    )
    for order in res.scalars().all():
        if await _has_job(db, JobType.STOCK_DEDUCTION, str(order.id)):
            continue
        await queue_service.enqueue(
            db, JobType.STOCK_DEDUCTION, {"order_id": order.id}, reference_id=str(order.id),
        )
        requeued += 1
        logger.warning(f"Reconcile: stock deduction re-queued for order {order.id}")

    res = await db.execute(
        select(Order)
        .where(
            Order.status.in_(CONFIRMED_STATES),
            Order.coins_used > 0,
            Order.coins_debited.is_(False),
        )
        .limit(SWEEP_BATCH_SIZE)
    )
    for order in res.scalars().all():
        if await _has_job(db, JobType.COIN_DEBIT, str(order.id)):
            continue
        await queue_service.enqueue(
            db,
            JobType.COIN_DEBIT,
            {"order_id": order.id, "user_id": order.user_id, "amount": order.coins_used},
            reference_id=str(order.id),
        )
        requeued += 1
        logger.warning(f"Reconcile: coin debit re-queued for order {order.id}")

    return requeued


SWEEPS = {
    CleanupKind.ABANDONED_ORDERS: sweep_abandoned_orders,
    CleanupKind.EXPIRED_COUPONS: sweep_expired_coupons,
    CleanupKind.EXPIRED_BANNERS: sweep_expired_banners,
    CleanupKind.PURGE_COMPLETED_JOBS: purge_completed_jobs,
    CleanupKind.RECONCILE_ORDERS: reconcile_orders,
}


async def handle_cleanup(db: AsyncSession, payload: CleanupPayload) -> dict:
    affected = await SWEEPS[payload.kind](db)
    return {"kind": payload.kind.value, "affected": affected}
