from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from apps.api.main import create_app
from core.config import Settings
from core.errors import UpstreamError, UpstreamTimeout
from domains.orders.store import OrderBackupStore

CART = {
    "items": [
        {
            "productId": "brisco-white-tee",
            "name": "ignored",
            "price": 1,
            "size": "M",
            "quantity": 2,
        },
    ],
    "customerEmail": "buyer@example.com",
    "shippingOption": "express",
}


def test_checkout_returns_session_and_backs_up(
    client: TestClient, store: OrderBackupStore, gateway: MagicMock
) -> None:
    resp = client.post("/checkout", json=CART, headers={"User-Agent": "pytest-ua"})

    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "success": True,
        "sessionId": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }

    # client-sent price is ignored: 2 shirts -> $110 + $12 express
    params = gateway.create_session.call_args.args[0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 11000
    assert params["line_items"][1]["price_data"]["unit_amount"] == 1200

    # background task has run by the time TestClient returns
    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "pending"
    assert order["totalAmount"] == 122.0
    assert order["userAgent"] == "pytest-ua"


def test_checkout_validation_errors(client: TestClient, gateway: MagicMock) -> None:
    resp = client.post("/checkout", json={**CART, "items": []})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Missing items"}

    resp = client.post("/checkout", json={"items": CART["items"]})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing email"

    resp = client.post("/checkout", json={**CART, "customerEmail": "not-an-email"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid email"

    # an empty cart is reported before a malformed address
    resp = client.post("/checkout", json={"items": [], "customerEmail": "nope"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Missing items"}

    gateway.create_session.assert_not_called()


def test_checkout_rejects_non_positive_quantity(
    client: TestClient, gateway: MagicMock
) -> None:
    cart = {**CART, "items": [{"productId": "brisco-white-tee", "quantity": 0}]}

    resp = client.post("/checkout", json=cart)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"].startswith("Invalid items.0.quantity:")
    assert "detail" not in body
    gateway.create_session.assert_not_called()


def test_checkout_malformed_json_uses_checkout_envelope(client: TestClient) -> None:
    resp = client.post(
        "/checkout",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Invalid JSON body"}


def test_checkout_without_stripe_key(
    settings: Settings, store: OrderBackupStore
) -> None:
    unconfigured = settings.model_copy(update={"stripe_secret_key": None})
    app = create_app(settings=unconfigured, store=store)
    client = TestClient(app)

    resp = client.post("/checkout", json=CART)

    assert resp.status_code == 500
    assert resp.json() == {
        "success": False,
        "error": "Stripe not configured",
        "configured": False,
    }
    assert store.list_all() == []


def test_checkout_stripe_failure(
    client: TestClient, gateway: MagicMock, store: OrderBackupStore
) -> None:
    gateway.create_session.side_effect = UpstreamError(
        "Invalid API Key provided",
        details={"type": "AuthenticationError", "code": None},
    )

    resp = client.post("/checkout", json=CART)

    assert resp.status_code == 502
    assert resp.json()["error"] == "Invalid API Key provided"
    assert resp.json()["type"] == "AuthenticationError"
    assert store.list_all() == []


def test_checkout_stripe_timeout(client: TestClient, gateway: MagicMock) -> None:
    gateway.create_session.side_effect = UpstreamTimeout("no response")

    resp = client.post("/checkout", json=CART)

    assert resp.status_code == 504
    assert resp.json()["success"] is False


def test_checkout_survives_backup_failure(
    client: TestClient, store: OrderBackupStore
) -> None:
    store.orders_file.write_text("corrupted", encoding="utf-8")

    resp = client.post("/checkout", json=CART)

    assert resp.status_code == 200
    assert resp.json()["sessionId"] == "cs_test_123"
    assert store.orders_file.read_text(encoding="utf-8") == "corrupted"


def test_cors_allows_storefront_origin_only(client: TestClient) -> None:
    preflight = {
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "Content-Type",
    }

    ok = client.options(
        "/checkout", headers={"Origin": "https://www.brisclothing.com", **preflight}
    )
    assert ok.status_code == 200
    assert ok.headers["access-control-allow-origin"] == "https://www.brisclothing.com"

    denied = client.options(
        "/checkout", headers={"Origin": "https://evil.example", **preflight}
    )
    assert denied.status_code == 400
    assert "access-control-allow-origin" not in denied.headers
