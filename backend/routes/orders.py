"""
Order endpoints — customer checkout, order history, timeline, cancellation.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params, require_customer
from domain.enums import PaymentMode
from domain.responses import success_response, paginated_response
from middleware.auth import CurrentUser
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


class CartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(..., gt=0, alias="productId")
    quantity: int = Field(1, ge=1, le=100)


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[CartItem] = Field(..., min_length=1)
    payment_mode: PaymentMode = Field(PaymentMode.ONLINE, alias="paymentMode")
    coins_to_use: int = Field(0, ge=0, alias="coinsToUse")


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


@router.post("/checkout", status_code=201)
async def checkout(
    request: CheckoutRequest,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    result = await order_service.checkout(
        db,
        user_id=user.id,
        items=[{"product_id": i.product_id, "quantity": i.quantity} for i in request.items],
        payment_mode=request.payment_mode,
        coins_to_use=request.coins_to_use,
    )
    return success_response(data=result)


@router.get("")
async def list_my_orders(
    user: CurrentUser = Depends(require_customer),
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_user_orders(
        db, user_id=user.id, limit=page["limit"], offset=page["offset"],
    )
    return paginated_response(orders, limit=page["limit"], offset=page["offset"], total=total)


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    return success_response(data=await order_service.get_order(db, order_id, user_id=user.id))


@router.get("/{order_id}/timeline")
async def get_timeline(
    order_id: int,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    # Ownership check (raises NotFound for other users' orders)
    await order_service.get_order(db, order_id, user_id=user.id)
    return success_response(data=await order_service.get_timeline(db, order_id))


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    request: CancelRequest | None = None,
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.cancel_order(
        db, user_id=user.id, order_id=order_id, reason=request.reason if request else None,
    )
    return success_response(data=order_service.order_to_dict(order))
