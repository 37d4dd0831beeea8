"""
Admin endpoints — order status override, refunds, coin credits, queue operations.
"""

import logging
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params, require_admin
from domain.enums import CoinSource, OrderStatus, QueueName
from domain.errors import ValidationError
from domain.responses import success_response, paginated_response
from middleware.auth import CurrentUser
from services import coin_service, order_service, payment_service, queue_service
from services.cache_service import invalidate_committed

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

ADMIN_CREDIT_SOURCES = {CoinSource.ADMIN_CREDIT, CoinSource.ORDER_REWARD, CoinSource.REFERRAL}


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=200)


class CoinCreditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(..., gt=0, alias="userId")
    amount: int = Field(..., gt=0)
    source: CoinSource = CoinSource.ADMIN_CREDIT
    reference_id: str | None = Field(default=None, max_length=100, alias="referenceId")


# ── Orders ──────────────────────────────────────────────────────────


@router.get("/orders")
async def list_orders(
    status: OrderStatus | None = Query(None),
    page: Pagination = Depends(pagination_params),
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_orders(
        db, status=status, limit=page["limit"], offset=page["offset"],
    )
    return paginated_response(orders, limit=page["limit"], offset=page["offset"], total=total)


@router.get("/orders/{order_id}")
async def get_order(
    order_id: int,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    data = await order_service.get_order(db, order_id)
    data["timeline"] = await order_service.get_timeline(db, order_id)
    return success_response(data=data)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    request: StatusUpdateRequest,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.update_status(
        db,
        order_id=order_id,
        next_status=request.status,
        actor_id=str(admin.id),
        actor_role=admin.role,
        notes=request.notes,
    )
    return success_response(data=order_service.order_to_dict(order))


# ── Payments ────────────────────────────────────────────────────────


@router.post("/payments/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    request: RefundRequest,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await payment_service.refund(
        db,
        payment_id=payment_id,
        amount=request.amount,
        notes={"reason": request.reason or "Admin refund", "adminId": str(admin.id)},
    )
    await db.commit()
    await invalidate_committed(db)
    logger.info(f"Admin {admin.id} refunded payment {payment_id}")
    return success_response(data=result)


# ── Coins ───────────────────────────────────────────────────────────


@router.post("/coins/credit")
async def credit_coins(
    request: CoinCreditRequest,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.source not in ADMIN_CREDIT_SOURCES:
        raise ValidationError(f"{request.source.value} cannot be credited manually", field="source")

    balance = await coin_service.credit(
        db,
        user_id=request.user_id,
        amount=request.amount,
        source=request.source,
        reference_id=request.reference_id or f"admin:{admin.id}",
    )
    await db.commit()
    return success_response(data={"userId": request.user_id, "balance": balance})


@router.get("/coins/{user_id}/reconcile")
async def reconcile_coins(
    user_id: int,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return success_response(data=await coin_service.reconcile_balance(db, user_id))


# ── Queues ──────────────────────────────────────────────────────────


@router.get("/queues")
async def queue_stats(
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return success_response(data=await queue_service.get_queue_stats(db))


@router.get("/queues/failed")
async def failed_jobs(
    queue: QueueName | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    jobs = await queue_service.list_failed_jobs(db, queue=queue, limit=limit)
    return success_response(data=[queue_service.job_to_dict(j) for j in jobs])


@router.post("/queues/jobs/{job_id}/retry")
async def retry_job(
    job_id: int,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    job = await queue_service.retry_failed_job(db, job_id)
    await db.commit()
    logger.info(f"Admin {admin.id} retried job {job_id}")
    return success_response(data=queue_service.job_to_dict(job))
