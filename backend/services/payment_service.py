"""
Payment Reconciler — one Payment row per order, two confirmation paths.

Handles:
    1. Intent creation (gateway order + PENDING payment upsert)
    2. Client confirmation: HMAC over "intent_id|transaction_id"
    3. Gateway webhook: HMAC over the raw, unparsed request body
    4. Refunds of captured payments (partial refunds accumulate)

Both confirmation paths converge on the same row and only ever write it
with a conditional UPDATE guarded by "status not in (SUCCESS, REFUNDED)".
Whichever path lands first flips the payment; the other sees zero rows
updated and becomes an idempotent no-op. The transaction id is therefore
written exactly once.

Signature checks FAIL CLOSED when the corresponding secret is missing.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, Payment
from domain.constants import (
    CONFIRMATION_SEPARATOR,
    PAYMENT_PROVIDER,
    WEBHOOK_EVENT_CAPTURED,
    WEBHOOK_EVENT_FAILED,
)
from domain.enums import PaymentStatus
from domain.errors import (
    ConflictError,
    InvalidSignatureError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from services.cache_service import mark_order_changed
from services.gateway_client import PaymentGateway, gateway as _default_gateway

logger = logging.getLogger(__name__)

FINAL_PAYMENT_STATES = (PaymentStatus.SUCCESS.value, PaymentStatus.REFUNDED.value)

_gateway: PaymentGateway = _default_gateway


def get_gateway() -> PaymentGateway:
    return _gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Swap the gateway implementation (tests, sandbox)."""
    global _gateway
    _gateway = gateway


# ════════════════════════════════════════════════════════════════════
# Signatures
# ════════════════════════════════════════════════════════════════════


def compute_confirmation_signature(intent_id: str, transaction_id: str, secret: str | None = None) -> str:
    """Hex HMAC-SHA256 over "intent_id|transaction_id"."""
    key = secret if secret is not None else settings.gateway_key_secret
    message = f"{intent_id}{CONFIRMATION_SEPARATOR}{transaction_id}".encode("utf-8")
    return hmac.new(key.encode("utf-8"), message, hashlib.sha256).hexdigest()


def compute_webhook_signature(raw_body: bytes, secret: str | None = None) -> str:
    """Hex HMAC-SHA256 over the raw webhook body bytes."""
    key = secret if secret is not None else settings.gateway_webhook_secret
    return hmac.new(key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_confirmation_signature(intent_id: str, transaction_id: str, signature: str) -> bool:
    if not settings.gateway_key_secret:
        logger.error("GATEWAY_KEY_SECRET not configured, rejecting payment confirmation")
        return False
    if not signature:
        return False
    expected = compute_confirmation_signature(intent_id, transaction_id)
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: str) -> bool:
    """
    Verify a gateway webhook signature against the raw body.

    The body must not be parsed and re-serialized before this check; any
    change in byte layout invalidates the signature.
    """
    if not settings.gateway_webhook_secret:
        logger.error(
            "GATEWAY_WEBHOOK_SECRET not configured, rejecting webhook. "
            "Set GATEWAY_WEBHOOK_SECRET in .env to accept gateway webhooks."
        )
        return False
    if not signature:
        logger.warning("Webhook received without signature header")
        return False
    expected = compute_webhook_signature(raw_body)
    return hmac.compare_digest(expected, signature)


# ════════════════════════════════════════════════════════════════════
# Lookups
# ════════════════════════════════════════════════════════════════════


async def get_payment_for_order(db: AsyncSession, order_id: int) -> Payment | None:
    res = await db.execute(select(Payment).where(Payment.order_id == order_id))
    return res.scalar_one_or_none()


async def get_payment_by_intent(db: AsyncSession, intent_id: str) -> Payment | None:
    res = await db.execute(select(Payment).where(Payment.provider_order_id == intent_id))
    return res.scalar_one_or_none()


async def _reload(db: AsyncSession, payment: Payment) -> Payment:
    await db.refresh(payment)
    return payment


async def _mark_captured(db: AsyncSession, payment_id: int, transaction_id: str) -> bool:
    """Conditional PENDING/FAILED -> SUCCESS. True if this call won."""
    res = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.notin_(FINAL_PAYMENT_STATES))
        .values(status=PaymentStatus.SUCCESS.value, transaction_id=transaction_id)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _mark_failed(db: AsyncSession, payment_id: int) -> bool:
    res = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
        .values(status=PaymentStatus.FAILED.value)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# ════════════════════════════════════════════════════════════════════
# Intent Creation
# ════════════════════════════════════════════════════════════════════


async def create_intent(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    amount: int,
    currency: str | None = None,
) -> dict:
    """
    Create a gateway intent for an order and upsert its PENDING payment.

    Gateway failures surface as GatewayError; the client retries by
    re-running checkout. The caller commits.
    """
    currency = currency or settings.default_currency
    if amount <= 0:
        raise ValidationError("Payment amount must be positive", field="amount")

    res = await db.execute(select(Order).where(Order.id == order_id))
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.user_id != user_id:
        raise PermissionDeniedError("Order does not belong to user")

    existing = await get_payment_for_order(db, order_id)
    if existing and existing.status in FINAL_PAYMENT_STATES:
        raise ConflictError("Order is already paid", details={"paymentId": existing.id})

    intent = await get_gateway().create_intent(
        amount=amount,
        currency=currency,
        receipt=str(order_id),
        metadata={"userId": str(user_id), "internalOrderId": str(order_id)},
    )
    intent_id = intent["id"]

    if existing:
        res = await db.execute(
            update(Payment)
            .where(Payment.id == existing.id, Payment.status.notin_(FINAL_PAYMENT_STATES))
            .values(
                provider=PAYMENT_PROVIDER,
                provider_order_id=intent_id,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING.value,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise ConflictError("Order was paid while the intent was being created")
        payment = await _reload(db, existing)
    else:
        payment = Payment(
            order_id=order_id,
            provider=PAYMENT_PROVIDER,
            provider_order_id=intent_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING.value,
        )
        db.add(payment)
        try:
            await db.flush()
        except IntegrityError:
            # A concurrent checkout created the row first
            raise ConflictError("A payment for this order is already being created")

    order.provider_order_id = intent_id
    await db.flush()
    mark_order_changed(db, order_id)

    logger.info(f"Payment intent created: order={order_id} intent={intent_id} amount={amount} {currency}")

    return {
        "key": settings.gateway_key_id,
        "intentId": intent_id,
        "amount": intent.get("amount", amount),
        "currency": intent.get("currency", currency),
        "internalOrderId": order_id,
        "paymentId": payment.id,
    }


# ════════════════════════════════════════════════════════════════════
# Client Confirmation
# ════════════════════════════════════════════════════════════════════


async def verify_client_confirmation(
    db: AsyncSession,
    *,
    user_id: int,
    intent_id: str,
    transaction_id: str,
    signature: str,
) -> dict:
    """
    Verify a client-submitted payment confirmation.

    Returns a dict whose "applied" flag is True only for the call that
    actually moved the payment to SUCCESS.
    """
    if not verify_confirmation_signature(intent_id, transaction_id, signature):
        logger.warning(f"Signature verification failed for intent {intent_id}")
        raise InvalidSignatureError()

    payment = await get_payment_by_intent(db, intent_id)
    if not payment:
        raise NotFoundError("Payment", intent_id)

    res = await db.execute(select(Order.user_id).where(Order.id == payment.order_id))
    if res.scalar_one_or_none() != user_id:
        raise PermissionDeniedError("Unauthorized access to this payment")

    result = {
        "paymentId": payment.id,
        "orderId": payment.order_id,
        "intentId": intent_id,
    }

    if payment.status in FINAL_PAYMENT_STATES:
        logger.info(f"Payment {payment.id} already {payment.status}; confirmation is a no-op")
        return {**result, "status": payment.status, "applied": False,
                "transactionId": payment.transaction_id, "message": "Payment already verified"}

    applied = await _mark_captured(db, payment.id, transaction_id)
    payment = await _reload(db, payment)

    if applied:
        mark_order_changed(db, payment.order_id)
        logger.info(f"Payment {payment.id} verified via client confirmation (order {payment.order_id})")
    else:
        logger.info(f"Payment {payment.id} was settled concurrently; confirmation is a no-op")

    return {**result, "status": payment.status, "applied": applied, "transactionId": payment.transaction_id}


# ════════════════════════════════════════════════════════════════════
# Webhook
# ════════════════════════════════════════════════════════════════════


def parse_webhook_event(raw_body: bytes) -> dict | None:
    """Extract {event, intent_id, transaction_id} from a verified body, or None."""
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict):
        return None
    entity = ((body.get("payload") or {}).get("payment") or {}).get("entity")
    if not isinstance(entity, dict):
        return None
    return {
        "event": body.get("event", ""),
        "intent_id": entity.get("order_id"),
        "transaction_id": entity.get("id"),
        "gateway_status": entity.get("status"),
    }


async def verify_webhook(db: AsyncSession, *, signature: str, raw_body: bytes) -> dict:
    """
    Verify and apply a gateway webhook.

    Only a bad signature raises. Unknown payments, unhandled events and
    already-final payments return {"status": "ignored"} so the gateway
    stops redelivering.
    """
    if not verify_webhook_signature(raw_body, signature):
        logger.warning("Webhook signature verification failed")
        raise InvalidSignatureError("Invalid webhook signature")

    event = parse_webhook_event(raw_body)
    if not event:
        return {"status": "ignored", "applied": False, "reason": "no_payment_payload"}

    name = event["event"]
    intent_id = event["intent_id"]
    logger.info(f"Received webhook: {name} for intent {intent_id}")

    if name not in (WEBHOOK_EVENT_CAPTURED, WEBHOOK_EVENT_FAILED):
        return {"status": "ignored", "applied": False, "reason": f"unhandled_event_{name}"}

    payment = await get_payment_by_intent(db, intent_id) if intent_id else None
    if not payment:
        logger.warning(f"Webhook received for unknown intent: {intent_id}")
        return {"status": "ignored", "applied": False, "reason": "unknown_payment"}

    base = {"event": name, "paymentId": payment.id, "orderId": payment.order_id}

    if payment.status in FINAL_PAYMENT_STATES:
        logger.info(f"Payment {payment.id} already final: {payment.status}. Ignoring webhook.")
        return {**base, "status": "ignored", "applied": False, "reason": "already_processed",
                "paymentStatus": payment.status}

    if name == WEBHOOK_EVENT_CAPTURED:
        applied = await _mark_captured(db, payment.id, event["transaction_id"])
    else:
        applied = await _mark_failed(db, payment.id)

    payment = await _reload(db, payment)
    if not applied:
        logger.info(f"Payment {payment.id} changed concurrently ({payment.status}). Ignoring webhook.")
        return {**base, "status": "ignored", "applied": False, "reason": "already_processed",
                "paymentStatus": payment.status}

    mark_order_changed(db, payment.order_id)
    logger.info(f"Payment {payment.id} updated to {payment.status} via webhook")
    return {**base, "status": "ok", "applied": True, "paymentStatus": payment.status}


# ════════════════════════════════════════════════════════════════════
# Refunds
# ════════════════════════════════════════════════════════════════════


async def refund(db: AsyncSession, *, payment_id: int, amount: int | None = None, notes: dict | None = None) -> dict:
    """
    Refund a captured payment, in full or in part.

    Partial refunds accumulate in refunded_amount and leave the payment
    SUCCESS; the refund that covers the whole captured amount moves it to
    REFUNDED. amount defaults to everything not yet refunded. The caller
    commits.
    """
    res = await db.execute(select(Payment).where(Payment.id == payment_id))
    payment = res.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment", str(payment_id))
    if payment.status != PaymentStatus.SUCCESS.value or not payment.transaction_id:
        raise ConflictError(
            "Payment was not captured; nothing to refund",
            details={"paymentStatus": payment.status},
        )

    already_refunded = payment.refunded_amount or 0
    remaining = payment.amount - already_refunded
    amount = amount or remaining
    if amount <= 0 or amount > remaining:
        raise ValidationError(
            "Refund amount must be between 1 and the unrefunded amount",
            field="amount",
            details={"refundable": remaining},
        )

    gateway_refund = await get_gateway().refund(
        transaction_id=payment.transaction_id, amount=amount, notes=notes,
    )

    refunded_total = already_refunded + amount
    next_status = PaymentStatus.REFUNDED if refunded_total >= payment.amount else PaymentStatus.SUCCESS
    res = await db.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.status == PaymentStatus.SUCCESS.value,
            Payment.refunded_amount == already_refunded,
        )
        .values(
            status=next_status.value,
            refunded_amount=refunded_total,
            refund_id=gateway_refund.get("id"),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        logger.error(f"Refund {gateway_refund.get('id')} issued but payment {payment.id} changed concurrently")
    else:
        mark_order_changed(db, payment.order_id)
    await _reload(db, payment)

    logger.info(
        f"Payment {payment.id} refunded: {amount} (refund {gateway_refund.get('id')}), "
        f"{payment.refunded_amount}/{payment.amount} refunded"
    )
    return {
        "refundId": gateway_refund.get("id"),
        "status": gateway_refund.get("status"),
        "amount": gateway_refund.get("amount", amount),
        "refundedAmount": payment.refunded_amount,
        "paymentStatus": payment.status,
    }
