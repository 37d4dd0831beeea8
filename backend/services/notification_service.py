"""
Notification Sender — in-app push rows and transactional email.

Push notifications are rows in the `notifications` table, read by the
client apps. Email goes through an HTTP email API when EMAIL_API_URL is
configured; otherwise the message is only logged (local development).

Delivery is fire-and-forget for the order flow: the notifications queue
retries failed sends and dead-letters them, nothing upstream waits.
"""
import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Notification, User
from domain.enums import NotificationChannel
from domain.errors import HandlerError
from services.queue_service import NotificationPayload

logger = logging.getLogger(__name__)

EMAIL_TIMEOUT_SECONDS = 10.0


async def push(db: AsyncSession, user_id: int, title: str, body: str) -> Notification:
    notification = Notification(
        user_id=user_id,
        title=title,
        body=body,
        channel=NotificationChannel.PUSH.value.upper(),
    )
    db.add(notification)
    await db.flush()
    logger.info(f"Push notification {notification.id} stored for user {user_id}: {title}")
    return notification


async def email(address: str, subject: str, body: str) -> bool:
    """
    Send a transactional email.

    Returns False when no email API is configured (message logged only).
    Raises HandlerError on delivery failure so the job is retried.
    """
    if not settings.email_api_url:
        logger.info(f"Email API not configured; would send to {address}: {subject}")
        return False

    try:
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.email_api_url,
                headers={"Authorization": f"Bearer {settings.email_api_key}"},
                json={
                    "from": settings.email_from,
                    "to": [address],
                    "subject": subject,
                    "text": body,
                },
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Email delivery to {address} failed: {e}")
        raise HandlerError(f"Email delivery failed: {e}")

    logger.info(f"Email sent to {address}: {subject}")
    return True


async def handle_notification(db: AsyncSession, payload: NotificationPayload) -> dict:
    if payload.channel == NotificationChannel.PUSH:
        notification = await push(db, payload.user_id, payload.title, payload.body)
        return {"channel": "push", "notificationId": notification.id}

    res = await db.execute(select(User.email).where(User.id == payload.user_id))
    address = res.scalar_one_or_none()
    if not address:
        # Retrying cannot produce an address
        logger.warning(f"User {payload.user_id} has no email address; skipping email '{payload.title}'")
        return {"channel": "email", "sent": False}

    sent = await email(address, payload.title, payload.body)
    return {"channel": "email", "sent": sent}
