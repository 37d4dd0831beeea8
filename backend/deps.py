"""
Shared FastAPI dependencies.

Centralizes common dependencies so routers can import from a single place
(DB session, role guards, pagination).
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Depends, Query

from database import get_db  # noqa: F401  (re-exported for routers)
from domain.enums import UserRole
from domain.errors import PermissionDeniedError
from middleware.auth import CurrentUser, require_user
from services.order_state_machine import ADMIN_ROLES


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


async def require_customer(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    """Any authenticated account may act as a buyer on its own orders."""
    return user


async def require_vendor(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if user.role != UserRole.VENDOR:
        raise PermissionDeniedError("Vendor role required for this endpoint.")
    return user


async def require_admin(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if user.role not in ADMIN_ROLES:
        raise PermissionDeniedError("Admin role required for this endpoint.")
    return user
