"""
Order queue handlers — stock deduction and coin debit.

Both are redelivery-safe: each claims a per-order flag with a conditional
UPDATE in the same transaction as its side effect, so a retried or
duplicated job finds the flag set and does nothing.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Order, OrderItem, Product
from domain.errors import HandlerError
from services import coin_service
from services.cache_service import mark_order_changed
from services.queue_service import CoinDebitPayload, StockDeductionPayload

logger = logging.getLogger(__name__)


async def handle_stock_deduction(db: AsyncSession, payload: StockDeductionPayload) -> dict:
    claimed = await db.execute(
        update(Order)
        .where(Order.id == payload.order_id, Order.stock_deducted.is_(False))
        .values(stock_deducted=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        exists = await db.execute(select(Order.id).where(Order.id == payload.order_id))
        if exists.scalar_one_or_none() is None:
            raise HandlerError(f"Order {payload.order_id} not found for stock deduction")
        logger.info(f"Stock already deducted for order {payload.order_id}")
        return {"alreadyDeducted": True}

    res = await db.execute(select(OrderItem).where(OrderItem.order_id == payload.order_id))
    items = res.scalars().all()

    for item in items:
        # Stock may go negative on oversell; the order is already confirmed
        await db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock=Product.stock - item.quantity)
            .execution_options(synchronize_session=False)
        )
        logger.debug(f"  Product {item.product_id}: -{item.quantity}")

    mark_order_changed(db, payload.order_id)
    await db.flush()
    logger.info(f"Stock deducted for order {payload.order_id} ({len(items)} line(s))")
    return {"alreadyDeducted": False, "lines": len(items)}


async def handle_coin_debit(db: AsyncSession, payload: CoinDebitPayload) -> dict:
    # InsufficientBalanceError propagates; the job retries and then dead-letters
    return await coin_service.debit_for_order(
        db,
        order_id=payload.order_id,
        user_id=payload.user_id,
        amount=payload.amount,
    )
