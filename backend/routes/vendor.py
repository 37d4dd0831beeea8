"""
Vendor endpoints — fulfilment status updates (PACKED / SHIPPED).
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_vendor
from domain.enums import OrderStatus
from domain.responses import success_response
from middleware.auth import CurrentUser
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/vendor", tags=["vendor"])


class VendorStatusRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=500)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    request: VendorStatusRequest,
    vendor: CurrentUser = Depends(require_vendor),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.update_status(
        db,
        order_id=order_id,
        next_status=request.status,
        actor_id=str(vendor.id),
        actor_role=vendor.role,
        notes=request.notes,
    )
    return success_response(data=order_service.order_to_dict(order))
