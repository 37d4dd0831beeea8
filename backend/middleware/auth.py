"""
Bearer-token authentication helpers.

Access tokens are short-lived HS256 JWTs issued by the account service:
    sub   user id (string)
    role  CUSTOMER | VENDOR | ADMIN | SUPER_ADMIN
    iss   settings.jwt_issuer

Role checks live in deps.py; this module only authenticates.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from fastapi import HTTPException, Header
from typing import Optional

import jwt

from config import settings
from domain.enums import UserRole

logger = logging.getLogger(__name__)

# SYSTEM is internal only; tokens may never claim it
TOKEN_ROLES = {UserRole.CUSTOMER, UserRole.VENDOR, UserRole.ADMIN, UserRole.SUPER_ADMIN}


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: UserRole


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token expired.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token.")


def issue_access_token(*, user_id: int, role: UserRole | str) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "role": UserRole(role).value,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


async def require_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization: Bearer <token>.",
        )

    payload = decode_access_token(token)
    try:
        user_id = int(payload["sub"])
        role = UserRole(payload.get("role", UserRole.CUSTOMER.value))
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid access token.")

    if role not in TOKEN_ROLES:
        logger.warning(f"Rejected token for user {user_id} claiming role {role.value}")
        raise HTTPException(status_code=401, detail="Invalid access token.")

    return CurrentUser(id=user_id, role=role)
