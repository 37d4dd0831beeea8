"""
Tests for the payment gateway HTTP client and notification sender.

Gateway calls run against httpx.MockTransport; no network access.
"""
import json

import httpx
import pytest

from config import settings
from domain.errors import GatewayError, GatewayTimeoutError, HandlerError
from services import notification_service
from services.gateway_client import PaymentGateway


def _gateway(handler) -> PaymentGateway:
    return PaymentGateway(
        base_url="https://gateway.test",
        key_id="rzp_test_key",
        key_secret="secret",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestPaymentGateway:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_intent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200, json={"id": "order_abc", "amount": 1500, "currency": "INR"})

        intent = await _gateway(handler).create_intent(amount=1500, currency="INR", receipt="12")

        assert intent["id"] == "order_abc"
        assert seen["path"] == "/v1/orders"
        assert seen["body"] == {"amount": 1500, "currency": "INR", "receipt": "12", "notes": {}}
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_path(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1/refund"
            return httpx.Response(200, json={"id": "rfnd_1", "status": "processed"})

        refund = await _gateway(handler).refund(transaction_id="pay_1", amount=100)
        assert refund["id"] == "rfnd_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejection_maps_to_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"description": "amount too small"}})

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).create_intent(amount=1, currency="INR", receipt="1")
        assert exc.value.status_code == 502
        assert exc.value.details["gatewayStatus"] == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_maps_to_504(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTimeoutError) as exc:
            await _gateway(handler).create_intent(amount=100, currency="INR", receipt="1")
        assert exc.value.status_code == 504


class TestNotifications:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_email_without_api_only_logs(self, monkeypatch):
        monkeypatch.setattr(settings, "email_api_url", "")
        assert await notification_service.email("a@example.com", "Hi", "Body") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_email_failure_is_retryable(self, monkeypatch):
        monkeypatch.setattr(settings, "email_api_url", "http://127.0.0.1:9/send")

        class FailingClient:
            def __init__(self, *args, **kwargs):
                pass

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return False

            async def post(self, url, **kwargs):
                raise httpx.ConnectError("refused")

        monkeypatch.setattr(notification_service.httpx, "AsyncClient", FailingClient)
        with pytest.raises(HandlerError):
            await notification_service.email("a@example.com", "Hi", "Body")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_push_handler_stores_row(self, db_session, customer):
        from services.queue_service import NotificationPayload

        result = await notification_service.handle_notification(
            db_session, NotificationPayload(user_id=customer.id, title="Shipped", body="On its way"),
        )
        assert result["channel"] == "push"
        assert result["notificationId"] is not None
