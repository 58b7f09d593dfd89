"""HTTP tests for the payments router."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.modules.payment_gateway.dispatcher import DispatchOutcome, DispatchResult
from app.modules.payment_gateway.errors import (
    GatewayRejected,
    GatewayUnavailable,
    OrderNotFound,
)
from app.modules.payment_gateway.interface import EmbeddedCheckout, RedirectCheckout
from app.modules.payment_gateway.router import get_checkout_service, get_dispatcher, router


@pytest.fixture
def service():
    return MagicMock(
        create_checkout=AsyncMock(),
        get_order_status=AsyncMock(),
        list_history=AsyncMock(return_value=[]),
    )


@pytest.fixture
def dispatcher():
    return MagicMock(dispatch=AsyncMock(return_value=DispatchResult(DispatchOutcome.APPLIED)))


@pytest.fixture
def client(service, dispatcher):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_checkout_service] = lambda: service
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return TestClient(app)


USER = {"X-User-ID": str(uuid.uuid4())}


def checkout_body(**overrides) -> dict:
    body = {"plan_id": str(uuid.uuid4()), "gateway": "telebirr"}
    body.update(overrides)
    return body


class TestCheckoutEndpoint:
    def test_hosted(self, client, service, ledger_store):
        order = ledger_store.add_order()
        service.create_checkout.return_value = (
            order, RedirectCheckout(session_id="prepay-1", checkout_url="https://pay.example/1")
        )

        response = client.post("/payments/checkout", json=checkout_body(), headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["external_order_id"] == order.external_order_id
        assert data["checkout_mode"] == "hosted"
        assert data["checkout_url"] == "https://pay.example/1"
        assert data["client_secret"] is None

    def test_embedded(self, client, service, ledger_store):
        order = ledger_store.add_order(gateway="stripe")
        service.create_checkout.return_value = (
            order, EmbeddedCheckout(session_id="cs_1", client_secret="cs_1_secret")
        )

        response = client.post(
            "/payments/checkout",
            json=checkout_body(gateway="stripe", checkout_mode="embedded"),
            headers=USER,
        )

        assert response.status_code == 200
        assert response.json()["client_secret"] == "cs_1_secret"
        assert service.create_checkout.call_args.kwargs["mode"].value == "embedded"

    @pytest.mark.parametrize(
        "error,code",
        [
            (GatewayRejected("Invalid merchant"), 400),
            (GatewayUnavailable("timeout"), 503),
            (ValueError("Plan not found: x"), 404),
            (ValueError("Gateway not available: stripe"), 400),
        ],
    )
    def test_error_mapping(self, client, service, error, code):
        service.create_checkout.side_effect = error

        response = client.post("/payments/checkout", json=checkout_body(), headers=USER)

        assert response.status_code == code

    def test_requires_user_header(self, client):
        response = client.post("/payments/checkout", json=checkout_body())

        assert response.status_code == 422

    def test_unknown_gateway_is_invalid(self, client):
        response = client.post("/payments/checkout", json=checkout_body(gateway="paypal"), headers=USER)

        assert response.status_code == 422


class TestCallbackEndpoints:
    def test_telebirr_callback_passes_raw_body(self, client, dispatcher):
        response = client.post(
            "/payments/telebirr/callback",
            content=b'{"merch_order_id":"A1"}',
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        gateway, raw_body, _ = dispatcher.dispatch.call_args.args
        assert gateway == "telebirr"
        assert raw_body == b'{"merch_order_id":"A1"}'

    def test_stripe_webhook_forwards_signature_header(self, client, dispatcher):
        client.post("/payments/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

        gateway, _, headers = dispatcher.dispatch.call_args.args
        assert gateway == "stripe"
        assert headers["stripe-signature"] == "t=1,v1=x"

    def test_invalid_signature_is_400(self, client, dispatcher):
        dispatcher.dispatch.return_value = DispatchResult(DispatchOutcome.REJECTED)

        response = client.post("/payments/stripe/webhook", content=b"{}")

        assert response.status_code == 400

    @pytest.mark.parametrize(
        "outcome",
        [DispatchOutcome.ALREADY_PROCESSED, DispatchOutcome.ORDER_NOT_FOUND, DispatchOutcome.IGNORED],
    )
    def test_non_applied_outcomes_are_acknowledged(self, client, dispatcher, outcome):
        dispatcher.dispatch.return_value = DispatchResult(outcome)

        response = client.post("/payments/telebirr/callback", content=b"{}")

        assert response.status_code == 200

    def test_processing_error_is_acknowledged(self, client, dispatcher):
        dispatcher.dispatch.side_effect = RuntimeError("database down")

        response = client.post("/payments/telebirr/callback", content=b"{}")

        assert response.status_code == 200
        assert response.json() == {"success": True}


class TestOrderEndpoints:
    def test_status(self, client, service, ledger_store):
        order = ledger_store.add_order()
        service.get_order_status.return_value = order

        response = client.get(f"/payments/status/{order.external_order_id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["gateway"] == "telebirr"

    def test_status_not_found(self, client, service):
        service.get_order_status.side_effect = OrderNotFound("Order not found: x")

        response = client.get("/payments/status/x", headers=USER)

        assert response.status_code == 404

    def test_history(self, client, service, ledger_store):
        service.list_history.return_value = [ledger_store.add_order(), ledger_store.add_order()]

        response = client.get("/payments/history?limit=5&offset=10", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert len(data["items"]) == 2
        assert (data["limit"], data["offset"]) == (5, 10)
        assert service.list_history.call_args.kwargs == {"limit": 5, "offset": 10}

    def test_history_limit_is_bounded(self, client):
        response = client.get("/payments/history?limit=500", headers=USER)

        assert response.status_code == 422
