"""
Payment endpoints — intent creation, client confirmation, gateway webhook.

The webhook must read the raw request body: the signature covers the exact
bytes the gateway sent, so the body is never parsed before verification.
"""

import logging
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_customer
from domain.constants import WEBHOOK_SIGNATURE_HEADER
from domain.responses import success_response
from middleware.auth import CurrentUser
from middleware.rate_limit import rate_limit
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


class IntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: int = Field(..., gt=0, alias="orderId")


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intent_id: str = Field(..., min_length=1, max_length=100, alias="intentId")
    transaction_id: str = Field(..., min_length=1, max_length=100, alias="transactionId")
    signature: str = Field(..., min_length=1, max_length=256)


@router.post("/intent")
async def create_intent(
    request: IntentRequest,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """Re-create the gateway intent for an order still awaiting payment."""
    intent = await order_service.create_payment_intent(db, user_id=user.id, order_id=request.order_id)
    return success_response(data=intent)


@router.post("/verify")
async def verify_payment(
    request: VerifyRequest,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    _=Depends(rate_limit(20, 60)),
):
    result = await order_service.confirm_payment(
        db,
        user_id=user.id,
        intent_id=request.intent_id,
        transaction_id=request.transaction_id,
        signature=request.signature,
    )
    return success_response(data=result)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    signature: str | None = Header(None, alias=WEBHOOK_SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    """
    Gateway webhook.

    Answers 200 for everything except a bad signature (400), so the gateway
    stops redelivering events that can never be applied.
    """
    raw_body = await request.body()
    result = await order_service.handle_payment_webhook(db, signature=signature or "", raw_body=raw_body)
    return result
