"""
Tests for the cleanup sweeps.

Tests: abandoned checkout cancellation, coupon/banner expiry, completed
job purge, side-effect reconciliation.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from db_models import Banner, Coupon, Job, Order, OrderTimeline
from domain.enums import CleanupKind, JobStatus, JobType, OrderStatus
from services import cleanup_service, queue_service
from services.queue_service import CleanupPayload


async def _order(db, user, status, created_at=None, **kwargs):
    order = Order(
        user_id=user.id, status=status, payment_mode=kwargs.pop("payment_mode", "ONLINE"),
        total_amount=1000, payable_amount=1000, created_at=created_at or datetime.utcnow(), **kwargs,
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)
    return order


class TestAbandonedOrders:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_old_unpaid_orders_cancelled(self, db_session, customer):
        old = datetime.utcnow() - timedelta(hours=3)
        stale = await _order(db_session, customer, OrderStatus.PENDING_PAYMENT.value, created_at=old)
        fresh = await _order(db_session, customer, OrderStatus.PENDING_PAYMENT.value)
        paid = await _order(db_session, customer, OrderStatus.PAID.value, created_at=old)

        assert await cleanup_service.sweep_abandoned_orders(db_session) == 1
        await db_session.commit()

        for order, expected in ((stale, "CANCELLED"), (fresh, "PENDING_PAYMENT"), (paid, "PAID")):
            await db_session.refresh(order)
            assert order.status == expected

        res = await db_session.execute(select(OrderTimeline).where(OrderTimeline.order_id == stale.id))
        entry = res.scalar_one()
        assert entry.actor_role == "SYSTEM"
        assert entry.notes == "Checkout abandoned"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, db_session, customer):
        await _order(
            db_session, customer, OrderStatus.PENDING_PAYMENT.value,
            created_at=datetime.utcnow() - timedelta(days=1),
        )
        assert await cleanup_service.sweep_abandoned_orders(db_session) == 1
        await db_session.commit()
        assert await cleanup_service.sweep_abandoned_orders(db_session) == 0


class TestExpiry:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_coupons_and_banners(self, db_session):
        now = datetime.utcnow()
        db_session.add_all([
            Coupon(code="OLD10", valid_until=now - timedelta(days=1)),
            Coupon(code="NEW10", valid_until=now + timedelta(days=1)),
            Coupon(code="FOREVER"),
            Banner(title="Diwali", end_date=now - timedelta(hours=1)),
            Banner(title="Winter", end_date=now + timedelta(days=30)),
        ])
        await db_session.commit()

        assert await cleanup_service.sweep_expired_coupons(db_session, now) == 1
        assert await cleanup_service.sweep_expired_banners(db_session, now) == 1
        await db_session.commit()

        db_session.expire_all()
        res = await db_session.execute(select(Coupon.code).where(Coupon.is_active.is_(True)))
        assert sorted(res.scalars().all()) == ["FOREVER", "NEW10"]


class TestPurge:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_old_completed_jobs_removed(self, db_session):
        now = datetime.utcnow()
        old = await queue_service.enqueue(db_session, JobType.STOCK_DEDUCTION, {"order_id": 1})
        recent = await queue_service.enqueue(db_session, JobType.STOCK_DEDUCTION, {"order_id": 2})
        failed = await queue_service.enqueue(db_session, JobType.STOCK_DEDUCTION, {"order_id": 3})
        old.status, old.finished_at = JobStatus.COMPLETED.value, now - timedelta(days=30)
        recent.status, recent.finished_at = JobStatus.COMPLETED.value, now - timedelta(hours=1)
        failed.status, failed.finished_at = JobStatus.FAILED.value, now - timedelta(days=30)
        await db_session.commit()

        assert await cleanup_service.purge_completed_jobs(db_session, now) == 1
        await db_session.commit()

        db_session.expire_all()
        res = await db_session.execute(select(Job.id).order_by(Job.id))
        assert res.scalars().all() == [recent.id, failed.id]


class TestReconcile:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_side_effects_requeued_once(self, db_session, customer):
        order = await _order(
            db_session, customer, OrderStatus.CONFIRMED.value, payment_mode="COD", coins_used=50,
        )

        assert await cleanup_service.reconcile_orders(db_session) == 2
        await db_session.commit()
        # Jobs are now pending, so a second pass adds nothing
        assert await cleanup_service.reconcile_orders(db_session) == 0

        res = await db_session.execute(select(Job.job_type).where(Job.reference_id == str(order.id)))
        assert sorted(res.scalars().all()) == [JobType.COIN_DEBIT.value, JobType.STOCK_DEDUCTION.value]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfirmed_orders_skipped(self, db_session, customer):
        await _order(db_session, customer, OrderStatus.PENDING_PAYMENT.value)
        assert await cleanup_service.reconcile_orders(db_session) == 0


class TestCleanupHandler:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatches_by_kind(self, db_session):
        result = await cleanup_service.handle_cleanup(db_session, CleanupPayload(kind=CleanupKind.EXPIRED_BANNERS))
        assert result == {"kind": "expired_banners", "affected": 0}

    @pytest.mark.unit
    def test_every_kind_has_a_sweep(self):
        assert set(cleanup_service.SWEEPS) == set(CleanupKind)
