"""
Coin endpoints — balance and ledger history for the signed-in user.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_customer
from domain.responses import success_response
from middleware.auth import CurrentUser
from services import coin_service

router = APIRouter(prefix="/coins", tags=["coins"])


@router.get("/balance")
async def get_balance(
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    return success_response(data={"balance": await coin_service.get_balance(db, user.id)})


@router.get("/ledger")
async def get_ledger(
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    entries = await coin_service.get_ledger(db, user.id, limit=limit)
    return success_response(data=[
        {
            "id": e.id,
            "amount": e.amount,
            "source": e.source,
            "referenceId": e.reference_id,
            "expiresAt": e.expires_at.isoformat() if e.expires_at else None,
            "createdAt": e.created_at.isoformat() if e.created_at else None,
        }
        for e in entries
    ])
