"""
Order Lifecycle Service — checkout, payment convergence, status changes.

Every status change goes through order_state_machine.validate_transition()
and is persisted with a conditional UPDATE on the status the caller read.
A lost race raises StaleStateError instead of overwriting. The timeline
row is written in the same transaction, so timeline order is commit order.

Side-effect jobs (stock deduction, coin debit, confirmation notification)
are enqueued in the same transaction as the transition to CONFIRMED or
PAID. For online payments only the caller that actually moved the order
out of PENDING_PAYMENT enqueues them, so they are enqueued exactly once
even when the client confirmation and the webhook race.

Public entry points commit their own transaction; helpers prefixed with
an underscore, and transition_order(), join the caller's transaction.
"""
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, OrderItem, OrderTimeline, Payment, Product, User
from domain.constants import SYSTEM_ACTOR
from domain.enums import CoinSource, JobType, OrderStatus, PaymentMode, PaymentStatus, UserRole
from domain.errors import (
    DomainError,
    InsufficientBalanceError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
    ValidationError,
)
from services import coin_service, payment_service, queue_service
from services.cache_service import cache, invalidate_committed, mark_order_changed, order_key
from services.order_state_machine import ADMIN_ROLES, is_flow_override, validate_transition

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 100


# ════════════════════════════════════════════════════════════════════
# Serialization
# ════════════════════════════════════════════════════════════════════


def order_to_dict(order: Order, items: list[OrderItem] | None = None, payment: Payment | None = None) -> dict:
    data = {
        "id": order.id,
        "userId": order.user_id,
        "status": order.status,
        "paymentMode": order.payment_mode,
        "totalAmount": order.total_amount,
        "coinsUsed": order.coins_used,
        "payableAmount": order.payable_amount,
        "currency": order.currency,
        "coinsDebited": order.coins_debited,
        "stockDeducted": order.stock_deducted,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }
    if items is not None:
        data["items"] = [
            {"productId": i.product_id, "quantity": i.quantity, "unitPrice": i.unit_price}
            for i in items
        ]
    if payment is not None:
        data["payment"] = {
            "id": payment.id,
            "status": payment.status,
            "amount": payment.amount,
            "intentId": payment.provider_order_id,
            "transactionId": payment.transaction_id,
            "refundedAmount": payment.refunded_amount,
        }
    return data


def timeline_to_dict(entry: OrderTimeline) -> dict:
    return {
        "id": entry.id,
        "fromStatus": entry.from_status,
        "status": entry.status,
        "notes": entry.notes,
        "changedBy": entry.changed_by,
        "actorRole": entry.actor_role,
        "override": entry.is_override,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


# ════════════════════════════════════════════════════════════════════
# Transitions
# ════════════════════════════════════════════════════════════════════


async def _load_order(db: AsyncSession, order_id: int) -> Order:
    res = await db.execute(select(Order).where(Order.id == order_id))
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    return order


async def _vendor_owns_order(db: AsyncSession, vendor_id: int, order_id: int) -> bool:
    res = await db.execute(
        select(func.count(OrderItem.id))
        .join(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id == order_id, Product.vendor_id == vendor_id)
    )
    return res.scalar_one() > 0


async def transition_order(
    db: AsyncSession,
    order: Order,
    next_status: OrderStatus,
    *,
    actor_id: str,
    actor_role: UserRole,
    notes: str | None = None,
) -> Order:
    """
    Validate and apply one transition inside the caller's transaction.

    Raises the state machine's errors, or StaleStateError when another
    writer changed the status after it was read.
    """
    current = OrderStatus(order.status)
    next_status = OrderStatus(next_status)
    actor_role = UserRole(actor_role)

    validate_transition(current, next_status, actor_role, order.payment_mode)
    override = actor_role in ADMIN_ROLES and is_flow_override(current, next_status, order.payment_mode)

    res = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current.value)
        .values(status=next_status.value)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise StaleStateError(
            f"Order {order.id} changed concurrently; expected {current.value}",
            details={"orderId": order.id, "expected": current.value},
        )

    db.add(OrderTimeline(
        order_id=order.id,
        from_status=current.value,
        status=next_status.value,
        notes=notes,
        changed_by=str(actor_id),
        actor_role=actor_role.value,
        is_override=override,
    ))
    await db.flush()
    await db.refresh(order)
    mark_order_changed(db, order.id)

    if override:
        logger.warning(
            f"Admin override on order {order.id}: {current.value} -> {next_status.value} by {actor_id}"
        )
    else:
        logger.info(f"Order {order.id}: {current.value} -> {next_status.value} ({actor_role.value} {actor_id})")
    return order


async def _reward_referral(db: AsyncSession, order: Order) -> bool:
    """Credit the referral reward to buyer and referrer, once per order."""
    res = await db.execute(select(User.referred_by).where(User.id == order.user_id))
    referrer_id = res.scalar_one_or_none()
    if not referrer_id:
        return False

    reference = str(order.id)
    if await coin_service.has_entry(db, reference_id=reference, source=CoinSource.REFERRAL):
        return False

    amount = settings.referral_reward_coins
    await coin_service.credit(db, user_id=order.user_id, amount=amount, source=CoinSource.REFERRAL, reference_id=reference)
    await coin_service.credit(db, user_id=referrer_id, amount=amount, source=CoinSource.REFERRAL, reference_id=reference)
    logger.info(f"Referral reward for order {order.id}: user {order.user_id} and referrer {referrer_id} +{amount}")
    return True


async def _on_order_confirmed(db: AsyncSession, order: Order) -> None:
    """Enqueue the confirmation side effects inside the confirming transaction."""
    reference = str(order.id)

    await queue_service.enqueue(db, JobType.STOCK_DEDUCTION, {"order_id": order.id}, reference_id=reference)
    if order.coins_used > 0:
        await queue_service.enqueue(
            db,
            JobType.COIN_DEBIT,
            {"order_id": order.id, "user_id": order.user_id, "amount": order.coins_used},
            reference_id=reference,
        )
    await queue_service.enqueue(
        db,
        JobType.NOTIFICATION,
        {
            "user_id": order.user_id,
            "title": "Order confirmed",
            "body": f"Your order #{order.id} has been confirmed.",
        },
        reference_id=reference,
    )

    await _reward_referral(db, order)


async def _advance_paid_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    """PENDING_PAYMENT -> PAID after a captured payment. None if the order moved on."""
    order = await _load_order(db, order_id)
    try:
        order = await transition_order(
            db, order, OrderStatus.PAID,
            actor_id=SYSTEM_ACTOR, actor_role=UserRole.SYSTEM, notes="Payment captured",
        )
    except DomainError as e:
        # Captured money on an order that can no longer be paid (e.g. swept as abandoned)
        logger.error(f"Payment captured for order {order_id} in state {order.status}; manual refund required: {e.message}")
        return None

    await _on_order_confirmed(db, order)
    return order


# ════════════════════════════════════════════════════════════════════
# Checkout
# ════════════════════════════════════════════════════════════════════


async def checkout(
    db: AsyncSession,
    *,
    user_id: int,
    items: list[dict],
    payment_mode: PaymentMode = PaymentMode.ONLINE,
    coins_to_use: int = 0,
) -> dict:
    """
    Create an order from line items.

    COD orders are CONFIRMED immediately. ONLINE orders are committed as
    PENDING_PAYMENT before the gateway is called, so a gateway failure
    leaves a payable order the client can retry with create_payment_intent().

    Coins are worth one minor currency unit each.
    """
    payment_mode = PaymentMode(payment_mode)
    if not items:
        raise ValidationError("Order must contain at least one item", field="items")
    if coins_to_use < 0:
        raise ValidationError("Coins to use cannot be negative", field="coins_to_use")

    res = await db.execute(select(User).where(User.id == user_id))
    user = res.scalar_one_or_none()
    if not user:
        raise NotFoundError("User", str(user_id))

    quantities: dict[int, int] = {}
    for line in items:
        product_id = int(line["product_id"])
        quantity = int(line.get("quantity", 1))
        if quantity <= 0 or quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_LINE_QUANTITY}", field="quantity")
        quantities[product_id] = quantities.get(product_id, 0) + quantity

    res = await db.execute(select(Product).where(Product.id.in_(quantities.keys())))
    products = {p.id: p for p in res.scalars().all()}

    total = 0
    for product_id, quantity in quantities.items():
        product = products.get(product_id)
        if not product or not product.active:
            raise NotFoundError("Product", str(product_id))
        if product.stock < quantity:
            raise ValidationError(
                f"Only {product.stock} left in stock for {product.name}",
                details={"productId": product_id, "available": product.stock},
            )
        total += product.price * quantity

    if coins_to_use > total:
        raise ValidationError("Coins cannot exceed the order total", field="coins_to_use")
    if coins_to_use and user.coins_balance < coins_to_use:
        raise InsufficientBalanceError(required=coins_to_use, available=user.coins_balance)

    payable = total - coins_to_use
    if payment_mode == PaymentMode.ONLINE and payable <= 0:
        raise ValidationError("Nothing left to pay online; use COD for fully coin-paid orders", field="payment_mode")

    order = Order(
        user_id=user_id,
        status=OrderStatus.CREATED.value,
        payment_mode=payment_mode.value,
        total_amount=total,
        coins_used=coins_to_use,
        payable_amount=payable,
        currency=settings.default_currency,
    )
    db.add(order)
    await db.flush()

    for product_id, quantity in quantities.items():
        db.add(OrderItem(
            order_id=order.id,
            product_id=product_id,
            quantity=quantity,
            unit_price=products[product_id].price,
        ))
    await db.flush()

    intent = None
    if payment_mode == PaymentMode.COD:
        order = await transition_order(
            db, order, OrderStatus.CONFIRMED,
            actor_id=SYSTEM_ACTOR, actor_role=UserRole.SYSTEM, notes="Cash on delivery",
        )
        await _on_order_confirmed(db, order)
        await db.commit()
    else:
        order = await transition_order(
            db, order, OrderStatus.PENDING_PAYMENT,
            actor_id=SYSTEM_ACTOR, actor_role=UserRole.SYSTEM, notes="Awaiting payment",
        )
        await db.commit()
        intent = await payment_service.create_intent(db, user_id=user_id, order_id=order.id, amount=payable)
        await db.commit()
    await invalidate_committed(db)

    logger.info(f"Checkout: order {order.id} for user {user_id} ({payment_mode.value}, total={total}, coins={coins_to_use})")

    await queue_service.add_analytics_event(
        entity_type="order", entity_id=str(order.id), event_type="order_created", user_id=user_id,
    )

    return {"order": order_to_dict(order), "payment": intent}


async def create_payment_intent(db: AsyncSession, *, user_id: int, order_id: int) -> dict:
    """(Re)create a gateway intent for an order still awaiting payment."""
    order = await _load_order(db, order_id)
    if order.user_id != user_id:
        raise NotFoundError("Order", str(order_id))
    if order.status != OrderStatus.PENDING_PAYMENT.value:
        raise ValidationError(f"Order is {order.status}, not awaiting payment", field="order_id")

    intent = await payment_service.create_intent(db, user_id=user_id, order_id=order.id, amount=order.payable_amount)
    await db.commit()
    await invalidate_committed(db)
    return intent


# ════════════════════════════════════════════════════════════════════
# Payment Convergence
# ════════════════════════════════════════════════════════════════════


async def confirm_payment(
    db: AsyncSession,
    *,
    user_id: int,
    intent_id: str,
    transaction_id: str,
    signature: str,
) -> dict:
    """Client-side payment confirmation."""
    result = await payment_service.verify_client_confirmation(
        db,
        user_id=user_id,
        intent_id=intent_id,
        transaction_id=transaction_id,
        signature=signature,
    )

    order = None
    if result["applied"]:
        order = await _advance_paid_order(db, result["orderId"])
    await db.commit()
    await invalidate_committed(db)

    if order is None:
        order = await _load_order(db, result["orderId"])
    return {**result, "orderStatus": order.status}


async def handle_payment_webhook(db: AsyncSession, *, signature: str, raw_body: bytes) -> dict:
    """
    Gateway webhook. Only an invalid signature raises; everything else is
    answered with an "ok" / "ignored" result.
    """
    result = await payment_service.verify_webhook(db, signature=signature, raw_body=raw_body)

    if result.get("applied") and result.get("paymentStatus") == PaymentStatus.SUCCESS.value:
        await _advance_paid_order(db, result["orderId"])
    elif result.get("applied"):
        logger.info(f"Payment failed for order {result['orderId']}; order stays PENDING_PAYMENT")
    await db.commit()
    await invalidate_committed(db)
    return result


# ════════════════════════════════════════════════════════════════════
# Status Changes
# ════════════════════════════════════════════════════════════════════


async def update_status(
    db: AsyncSession,
    *,
    order_id: int,
    next_status: OrderStatus,
    actor_id: str,
    actor_role: UserRole,
    notes: str | None = None,
) -> Order:
    """Admin / vendor / system status change. Commits and invalidates the cache."""
    actor_role = UserRole(actor_role)
    order = await _load_order(db, order_id)

    if actor_role == UserRole.VENDOR and not await _vendor_owns_order(db, int(actor_id), order_id):
        raise PermissionDeniedError("Order does not contain products from this vendor")

    order = await transition_order(
        db, order, next_status, actor_id=actor_id, actor_role=actor_role, notes=notes,
    )
    await db.commit()
    await invalidate_committed(db)
    return order


async def cancel_order(db: AsyncSession, *, user_id: int, order_id: int, reason: str | None = None) -> Order:
    """Customer self-service cancellation (only before PACKED)."""
    order = await _load_order(db, order_id)
    if order.user_id != user_id:
        raise NotFoundError("Order", str(order_id))

    order = await transition_order(
        db, order, OrderStatus.CANCELLED,
        actor_id=str(user_id), actor_role=UserRole.CUSTOMER, notes=reason or "Cancelled by customer",
    )
    await db.commit()
    await invalidate_committed(db)
    return order


# ════════════════════════════════════════════════════════════════════
# Reads
# ════════════════════════════════════════════════════════════════════


async def get_order(db: AsyncSession, order_id: int, user_id: int | None = None) -> dict:
    """
    Order detail with items and payment, read through the cache.

    user_id restricts the lookup to that customer's orders; other users'
    orders are reported as not found.
    """
    key = order_key(order_id)
    data = await cache.get(key)
    if data is None:
        order = await _load_order(db, order_id)
        res = await db.execute(select(OrderItem).where(OrderItem.order_id == order_id))
        items = res.scalars().all()
        payment = await payment_service.get_payment_for_order(db, order_id)
        data = order_to_dict(order, items, payment)
        await cache.set(key, data)

    if user_id is not None and data["userId"] != user_id:
        raise NotFoundError("Order", str(order_id))
    return data


async def list_user_orders(db: AsyncSession, *, user_id: int, limit: int = 10, offset: int = 0) -> tuple[list[dict], int]:
    total = (await db.execute(select(func.count(Order.id)).where(Order.user_id == user_id))).scalar_one()
    res = await db.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return [order_to_dict(o) for o in res.scalars().all()], total


async def list_orders(
    db: AsyncSession,
    *,
    status: OrderStatus | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """All orders, optionally filtered by status (admin view)."""
    count_stmt = select(func.count(Order.id))
    stmt = select(Order)
    if status:
        count_stmt = count_stmt.where(Order.status == OrderStatus(status).value)
        stmt = stmt.where(Order.status == OrderStatus(status).value)

    total = (await db.execute(count_stmt)).scalar_one()
    res = await db.execute(stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit))
    return [order_to_dict(o) for o in res.scalars().all()], total


async def get_timeline(db: AsyncSession, order_id: int) -> list[dict]:
    await _load_order(db, order_id)
    res = await db.execute(
        select(OrderTimeline)
        .where(OrderTimeline.order_id == order_id)
        .order_by(OrderTimeline.id)
    )
    return [timeline_to_dict(e) for e in res.scalars().all()]
