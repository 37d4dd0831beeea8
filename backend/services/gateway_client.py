"""
Payment gateway client — thin async wrapper around the gateway REST API.

Every call carries settings.gateway_timeout_seconds. A timeout is reported
as GatewayTimeoutError because the gateway may have applied the request
anyway; nothing local is ever advanced from a create/refund response alone.
"""

from __future__ import annotations

import logging

import httpx

from config import settings
from domain.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


class PaymentGateway:
    """Creates payment intents and refunds against the gateway."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.key_id = key_id if key_id is not None else settings.gateway_key_id
        self.key_secret = key_secret if key_secret is not None else settings.gateway_key_secret
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post(self, path: str, body: dict, action: str) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(path, json=body)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway {action} timed out after {self.timeout}s: {e}")
            raise GatewayTimeoutError(details={"action": action})
        except httpx.HTTPStatusError as e:
            description = None
            try:
                description = e.response.json().get("error", {}).get("description")
            except ValueError:
                pass
            logger.error(f"Gateway {action} rejected ({e.response.status_code}): {description or e}")
            raise GatewayError(
                f"Payment gateway rejected {action}",
                details={"action": action, "gatewayStatus": e.response.status_code},
            )
        except httpx.HTTPError as e:
            logger.error(f"Gateway {action} failed: {e}")
            raise GatewayError(f"Failed to reach payment gateway for {action}", details={"action": action})

    async def create_intent(self, *, amount: int, currency: str, receipt: str, metadata: dict | None = None) -> dict:
        """Create a gateway order (intent). Amount is in minor units."""
        return await self._post(
            "/v1/orders",
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": metadata or {}},
            "create_intent",
        )

    async def refund(self, *, transaction_id: str, amount: int, notes: dict | None = None) -> dict:
        return await self._post(
            f"/v1/payments/{transaction_id}/refund",
            {"amount": amount, "notes": notes or {}, "speed": "normal"},
            "refund",
        )


# Singleton used by the services; tests swap it via payment_service.set_gateway()
gateway = PaymentGateway()
