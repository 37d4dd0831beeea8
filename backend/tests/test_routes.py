"""
Tests for API route endpoints.

Tests: health, auth guards, checkout / payment / webhook over HTTP,
vendor and admin status changes, coin and queue admin endpoints,
error envelope shape.
"""
import json

import pytest

from domain.constants import WEBHOOK_SIGNATURE_HEADER
from services.payment_service import compute_webhook_signature


async def _checkout(api_client, headers, product, mode="COD", quantity=1):
    response = await api_client.post(
        "/orders/checkout",
        json={"items": [{"productId": product.id, "quantity": quantity}], "paymentMode": mode},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealthEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_health_returns_status(self, api_client):
        response = await api_client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["cache_backend"] == "memory"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_worker_status(self, api_client):
        response = await api_client.get("/worker/status")
        assert response.status_code == 200
        assert set(response.json()["queues"]) == {"analytics", "notifications", "orders", "cleanup"}


class TestAuthGuards:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_missing_token(self, api_client):
        response = await api_client.get("/orders")
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_invalid_token(self, api_client):
        response = await api_client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_customer_cannot_use_admin_routes(self, api_client, customer, auth_headers):
        response = await api_client.get("/admin/orders", headers=auth_headers(customer))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "permissiondenied"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_customer_cannot_use_vendor_routes(self, api_client, customer, auth_headers):
        response = await api_client.patch(
            "/vendor/orders/1/status", json={"status": "PACKED"}, headers=auth_headers(customer),
        )
        assert response.status_code == 403


class TestOrderEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_checkout_and_read_back(self, api_client, customer, product, auth_headers):
        headers = auth_headers(customer)
        data = await _checkout(api_client, headers, product, quantity=2)
        order_id = data["order"]["id"]
        assert data["order"]["status"] == "CONFIRMED"
        assert data["order"]["totalAmount"] == 2000

        response = await api_client.get(f"/orders/{order_id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["items"][0]["quantity"] == 2

        response = await api_client.get("/orders", headers=headers)
        body = response.json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["id"] == order_id

        response = await api_client.get(f"/orders/{order_id}/timeline", headers=headers)
        assert [e["status"] for e in response.json()["data"]] == ["CONFIRMED"]

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_checkout_validation_envelope(self, api_client, customer, auth_headers):
        response = await api_client.post(
            "/orders/checkout", json={"items": [], "paymentMode": "COD"}, headers=auth_headers(customer),
        )
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "request_validation"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_customer_gets_404(self, api_client, customer, referrer, product, auth_headers):
        data = await _checkout(api_client, auth_headers(customer), product)
        response = await api_client.get(f"/orders/{data['order']['id']}", headers=auth_headers(referrer))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "notfound"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_cancel(self, api_client, customer, product, auth_headers):
        headers = auth_headers(customer)
        data = await _checkout(api_client, headers, product)
        response = await api_client.post(
            f"/orders/{data['order']['id']}/cancel", json={"reason": "Ordered twice"}, headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "CANCELLED"


class TestFulfilmentEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vendor_then_admin_flow(self, api_client, customer, vendor, admin, product, auth_headers):
        data = await _checkout(api_client, auth_headers(customer), product)
        order_id = data["order"]["id"]

        for status in ("PACKED", "SHIPPED"):
            response = await api_client.patch(
                f"/vendor/orders/{order_id}/status", json={"status": status}, headers=auth_headers(vendor),
            )
            assert response.status_code == 200, response.text
            assert response.json()["data"]["status"] == status

        response = await api_client.patch(
            f"/vendor/orders/{order_id}/status", json={"status": "DELIVERED"}, headers=auth_headers(vendor),
        )
        assert response.status_code == 403

        response = await api_client.patch(
            f"/admin/orders/{order_id}/status", json={"status": "DELIVERED"}, headers=auth_headers(admin),
        )
        assert response.status_code == 200

        response = await api_client.get(f"/admin/orders/{order_id}", headers=auth_headers(admin))
        timeline = response.json()["data"]["timeline"]
        assert [e["status"] for e in timeline] == ["CONFIRMED", "PACKED", "SHIPPED", "DELIVERED"]

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_regression_rejected(self, api_client, customer, vendor, product, auth_headers):
        data = await _checkout(api_client, auth_headers(customer), product)
        order_id = data["order"]["id"]
        await api_client.patch(
            f"/vendor/orders/{order_id}/status", json={"status": "PACKED"}, headers=auth_headers(vendor),
        )
        response = await api_client.patch(
            f"/vendor/orders/{order_id}/status", json={"status": "PACKED"}, headers=auth_headers(vendor),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalidtransition"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_admin_filters_by_status(self, api_client, customer, admin, product, auth_headers):
        await _checkout(api_client, auth_headers(customer), product)
        response = await api_client.get("/admin/orders?status=CONFIRMED", headers=auth_headers(admin))
        assert response.json()["meta"]["total"] == 1
        response = await api_client.get("/admin/orders?status=SHIPPED", headers=auth_headers(admin))
        assert response.json()["meta"]["total"] == 0


class TestPaymentEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_online_checkout_verify(
        self, api_client, customer, product, auth_headers, mock_gateway, sign_confirmation,
    ):
        headers = auth_headers(customer)
        data = await _checkout(api_client, headers, product, mode="ONLINE")
        intent_id = data["payment"]["intentId"]

        response = await api_client.post(
            "/payments/verify",
            json={
                "intentId": intent_id,
                "transactionId": "pay_http_1",
                "signature": sign_confirmation(intent_id, "pay_http_1"),
            },
            headers=headers,
        )
        assert response.status_code == 200, response.text
        result = response.json()["data"]
        assert result["applied"] is True
        assert result["orderStatus"] == "PAID"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_verify_bad_signature(self, api_client, customer, product, auth_headers, mock_gateway):
        headers = auth_headers(customer)
        data = await _checkout(api_client, headers, product, mode="ONLINE")
        response = await api_client.post(
            "/payments/verify",
            json={"intentId": data["payment"]["intentId"], "transactionId": "pay_x", "signature": "bad"},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalidsignature"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_uses_raw_body(self, api_client, customer, product, auth_headers, mock_gateway):
        data = await _checkout(api_client, auth_headers(customer), product, mode="ONLINE")
        # Deliberately unusual spacing; the signature covers these exact bytes
        raw = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_wh", "order_id": data["payment"]["intentId"]}}},
        }, indent=3).encode()

        response = await api_client.post(
            "/payments/webhook",
            content=raw,
            headers={WEBHOOK_SIGNATURE_HEADER: compute_webhook_signature(raw), "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        replay = await api_client.post(
            "/payments/webhook",
            content=raw,
            headers={WEBHOOK_SIGNATURE_HEADER: compute_webhook_signature(raw), "Content-Type": "application/json"},
        )
        assert replay.status_code == 200
        assert replay.json()["status"] == "ignored"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self, api_client):
        response = await api_client.post(
            "/payments/webhook", content=b"{}", headers={WEBHOOK_SIGNATURE_HEADER: "nope"},
        )
        assert response.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_admin_refund(self, api_client, customer, admin, product, auth_headers, mock_gateway):
        data = await _checkout(api_client, auth_headers(customer), product, mode="ONLINE")
        raw = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_ref", "order_id": data["payment"]["intentId"]}}},
        }).encode()
        await api_client.post(
            "/payments/webhook", content=raw, headers={WEBHOOK_SIGNATURE_HEADER: compute_webhook_signature(raw)},
        )
        order_url = f"/orders/{data['order']['id']}"
        cached = await api_client.get(order_url, headers=auth_headers(customer))
        assert cached.json()["data"]["payment"]["status"] == "SUCCESS"

        response = await api_client.post(
            f"/admin/payments/{data['payment']['paymentId']}/refund",
            json={"reason": "Damaged"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200, response.text
        assert response.json()["data"]["paymentStatus"] == "REFUNDED"

        # The cached order view was dropped with the refund
        payment = (await api_client.get(order_url, headers=auth_headers(customer))).json()["data"]["payment"]
        assert payment["status"] == "REFUNDED"
        assert payment["refundedAmount"] == 1000


class TestCoinEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_admin_credit_and_balance(self, api_client, customer, admin, auth_headers):
        response = await api_client.post(
            "/admin/coins/credit",
            json={"userId": customer.id, "amount": 250, "source": "ADMIN_CREDIT"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["data"]["balance"] == 250

        response = await api_client.get("/coins/balance", headers=auth_headers(customer))
        assert response.json()["data"]["balance"] == 250

        response = await api_client.get("/coins/ledger", headers=auth_headers(customer))
        assert [e["amount"] for e in response.json()["data"]] == [250]

        response = await api_client.get(f"/admin/coins/{customer.id}/reconcile", headers=auth_headers(admin))
        assert response.json()["data"]["consistent"] is True

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_order_payment_source_not_creditable(self, api_client, customer, admin, auth_headers):
        response = await api_client.post(
            "/admin/coins/credit",
            json={"userId": customer.id, "amount": 5, "source": "ORDER_PAYMENT"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 400


class TestQueueEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_queue_stats(self, api_client, customer, admin, product, auth_headers):
        await _checkout(api_client, auth_headers(customer), product)
        response = await api_client.get("/admin/queues", headers=auth_headers(admin))
        stats = response.json()["data"]
        assert stats["orders"]["waiting"] == 1
        assert stats["notifications"]["waiting"] == 1

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_retry_unknown_job(self, api_client, admin, auth_headers):
        response = await api_client.post("/admin/queues/jobs/12345/retry", headers=auth_headers(admin))
        assert response.status_code == 404
