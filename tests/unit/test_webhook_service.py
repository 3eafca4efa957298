from typing import Any, Dict
from unittest.mock import MagicMock

import pytest
import redis

from core.config import Settings
from core.errors import UpstreamError
from domains.checkout.schemas import CheckoutRequest
from domains.checkout.service import CheckoutService
from domains.orders.store import OrderBackupStore
from domains.webhook.service import (
    WebhookService,
    build_confirmation,
    format_address,
)


def _session(**extra: Any) -> Dict[str, Any]:
    session = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "amount_total": 17000,
        "currency": "usd",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_123",
        "customer": "cus_123",
        "customer_email": "buyer@example.com",
        "customer_details": {
            "email": "buyer@example.com",
            "name": "Jamie Rivera",
            "phone": "+15555550100",
        },
        "shipping_details": {
            "name": "Jamie Rivera",
            "address": {
                "line1": "1 Main St",
                "line2": None,
                "city": "Austin",
                "state": "TX",
                "postal_code": "78701",
                "country": "US",
            },
        },
        "total_details": {"amount_shipping": 0},
        "metadata": {
            "source": "brisco_website",
            "totalQuantity": "3",
            "effectivePrice": "55",
            "originalPrice": "195",
            "totalSavings": "30",
            "shippingOption": "standard",
            "itemsSummary": "brisco-white-tee:M:2|brisco-black-tee:L:1",
        },
    }
    session.update(extra)
    return session


def _event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _pending_record() -> Dict[str, Any]:
    return {
        "sessionId": "cs_test_123",
        "customerEmail": "buyer@example.com",
        "items": [{"name": "BRISCO White Tee", "size": "M", "quantity": 2}],
        "subtotal": 165.0,
        "shippingCost": 5.0,
        "totalAmount": 170.0,
        "fulfillmentStatus": "pending",
        "notes": "gift wrap",
        "timestamp": "2024-06-01T12:00:00Z",
    }


@pytest.fixture
def service(store: OrderBackupStore, gateway: MagicMock) -> WebhookService:
    return WebhookService(store, gateway=gateway)


def test_completed_session_marks_order_ready_to_ship(
    service: WebhookService, store: OrderBackupStore
) -> None:
    store.append(_pending_record())

    result = service.handle_event(_event("checkout.session.completed", _session()))

    assert result == {"received": True}
    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "ready_to_ship"
    assert order["orderStatus"] == "paid"
    assert order["customerName"] == "Jamie Rivera"
    assert order["customerPhone"] == "+15555550100"
    assert order["shippingAddress"] == "1 Main St, Austin, TX 78701, US"
    assert order["stripePaymentIntentId"] == "pi_123"
    assert order["totalAmount"] == 170.0
    assert "paidAt" in order
    # untouched by the confirmation
    assert order["shippingCost"] == 5.0
    assert order["notes"] == "gift wrap"
    assert order["items"] == [{"name": "BRISCO White Tee", "size": "M", "quantity": 2}]
    assert len(store.list_all()) == 1


def test_confirmation_without_checkout_backup_creates_record(
    service: WebhookService, store: OrderBackupStore
) -> None:
    service.handle_event(_event("checkout.session.completed", _session()))

    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "ready_to_ship"
    assert order["totalQuantity"] == 3
    assert order["subtotal"] == 165.0
    assert order["shippingCost"] == 5.0
    assert [item["productId"] for item in order["items"]] == [
        "brisco-white-tee",
        "brisco-black-tee",
    ]
    assert order["internalOrderId"].startswith("BRISCO-")


def test_expanded_session_from_stripe_is_preferred(
    service: WebhookService, store: OrderBackupStore, gateway: MagicMock
) -> None:
    store.append(_pending_record())
    gateway.retrieve_session.side_effect = None
    gateway.retrieve_session.return_value = _session(
        payment_intent={
            "id": "pi_123",
            "latest_charge": {"receipt_url": "https://pay.stripe.com/receipts/r1"},
        }
    )

    service.handle_event(_event("checkout.session.completed", {"id": "cs_test_123"}))

    gateway.retrieve_session.assert_called_once_with("cs_test_123")
    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["receiptUrl"] == "https://pay.stripe.com/receipts/r1"
    assert order["stripePaymentIntentId"] == "pi_123"


@pytest.mark.parametrize(
    "event_type",
    [
        "payment_intent.payment_failed",
        "checkout.session.async_payment_failed",
        "customer.created",
    ],
)
def test_other_events_do_not_touch_the_store(
    service: WebhookService, store: OrderBackupStore, event_type: str
) -> None:
    store.append(_pending_record())
    before = store.orders_file.read_text(encoding="utf-8")

    result = service.handle_event(_event(event_type, {"id": "pi_or_cs"}))

    assert result == {"received": True}
    assert store.orders_file.read_text(encoding="utf-8") == before


def test_async_payment_succeeded_is_a_payment(
    service: WebhookService, store: OrderBackupStore
) -> None:
    store.append(_pending_record())

    service.handle_event(
        _event("checkout.session.async_payment_succeeded", _session())
    )

    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "ready_to_ship"


def test_backup_failure_is_still_acknowledged(
    gateway: MagicMock,
) -> None:
    broken_store = MagicMock()
    broken_store.find_by_session_id.return_value = None
    broken_store.merge.side_effect = OSError("read-only file system")
    service = WebhookService(broken_store, gateway=gateway)

    result = service.handle_event(_event("checkout.session.completed", _session()))

    assert result == {"received": True}


def test_duplicate_delivery_is_skipped_with_redis(
    store: OrderBackupStore, gateway: MagicMock
) -> None:
    mock_redis = MagicMock()
    # first SET NX wins, the redelivery finds the key
    mock_redis.set.side_effect = [True, None]
    service = WebhookService(store, gateway=gateway, redis_client=mock_redis)
    store.append(_pending_record())
    event = _event("checkout.session.completed", _session(), event_id="evt_dup")

    assert service.handle_event(event) == {"received": True}
    store.merge("cs_test_123", {"fulfillmentStatus": "shipped"})
    assert service.handle_event(event) == {"received": True, "duplicate": True}

    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "shipped"
    key = mock_redis.set.call_args_list[0].args[0]
    assert key == "processed:evt_dup"
    assert mock_redis.set.call_args_list[0].kwargs["nx"] is True


def test_redis_outage_does_not_block_processing(
    store: OrderBackupStore, gateway: MagicMock
) -> None:
    mock_redis = MagicMock()
    mock_redis.set.side_effect = redis.ConnectionError("connection refused")
    service = WebhookService(store, gateway=gateway, redis_client=mock_redis)
    store.append(_pending_record())

    service.handle_event(_event("checkout.session.completed", _session()))

    order = store.find_by_session_id("cs_test_123")
    assert order is not None
    assert order["fulfillmentStatus"] == "ready_to_ship"


def test_paid_order_is_forwarded_to_crm_when_enabled(
    store: OrderBackupStore, gateway: MagicMock
) -> None:
    relay = MagicMock()
    service = WebhookService(
        store, gateway=gateway, crm_relay=relay, forward_orders=True
    )

    service.handle_event(_event("checkout.session.completed", _session()))

    relay.forward_order.assert_called_once()
    forwarded = relay.forward_order.call_args.args[0]
    assert forwarded["sessionId"] == "cs_test_123"


def test_retrieve_failure_falls_back_to_payload(
    service: WebhookService, gateway: MagicMock
) -> None:
    gateway.retrieve_session.side_effect = UpstreamError("stripe down")

    assert service.on_payment_succeeded(_session()) is True


def test_build_confirmation_drops_unknown_fields() -> None:
    update = build_confirmation(
        {"id": "cs_1", "customer_email": "x@example.com", "amount_total": None}
    )

    assert update["customerEmail"] == "x@example.com"
    assert "customerName" not in update
    assert "totalAmount" not in update
    assert "shippingCost" not in update


def test_build_confirmation_reads_collected_information() -> None:
    session = _session(
        shipping_details=None,
        collected_information={
            "shipping_details": {
                "name": "Sam Lee",
                "address": {"line1": "9 Elm", "city": "Toronto", "country": "CA"},
            }
        },
        total_details={"amount_shipping": 1200},
    )

    update = build_confirmation(session)

    assert update["customerName"] == "Sam Lee"
    assert update["shippingAddress"] == "9 Elm, Toronto, CA"
    assert update["shippingCost"] == 12.0


def test_format_address_empty() -> None:
    assert format_address(None) is None
    assert format_address({}) is None


def test_checkout_backup_after_confirmation_keeps_one_paid_record(
    service: WebhookService,
    store: OrderBackupStore,
    gateway: MagicMock,
    settings: Settings,
) -> None:
    checkout = CheckoutService(gateway, store, settings)
    request = CheckoutRequest.model_validate(
        {
            "items": [{"productId": "brisco-white-tee", "size": "M", "quantity": 2}],
            "customerEmail": "buyer@example.com",
        }
    )
    result = checkout.create_checkout(request, user_agent="pytest-ua")

    # webhook wins the race against the post-response backup
    service.handle_event(_event("checkout.session.completed", _session()))
    assert checkout.backup(result.record) is True

    orders = store.list_all()
    assert len(orders) == 1
    assert orders[0]["fulfillmentStatus"] == "ready_to_ship"
    assert orders[0]["userAgent"] == "pytest-ua"


def test_crash_releases_the_dedup_key(gateway: MagicMock) -> None:
    mock_redis = MagicMock()
    mock_redis.set.return_value = True
    broken_store = MagicMock()
    broken_store.find_by_session_id.side_effect = RuntimeError("disk gone")
    service = WebhookService(broken_store, gateway=gateway, redis_client=mock_redis)
    event = _event("checkout.session.completed", _session(), event_id="evt_x")

    with pytest.raises(RuntimeError):
        service.handle_event(event)

    mock_redis.delete.assert_called_once_with("processed:evt_x")


def test_release_failure_keeps_the_original_error(gateway: MagicMock) -> None:
    mock_redis = MagicMock()
    mock_redis.set.return_value = True
    mock_redis.delete.side_effect = redis.ConnectionError("connection refused")
    broken_store = MagicMock()
    broken_store.find_by_session_id.side_effect = RuntimeError("disk gone")
    service = WebhookService(broken_store, gateway=gateway, redis_client=mock_redis)

    with pytest.raises(RuntimeError, match="disk gone"):
        service.handle_event(_event("checkout.session.completed", _session()))


def test_processed_event_keeps_its_dedup_key(
    store: OrderBackupStore, gateway: MagicMock
) -> None:
    mock_redis = MagicMock()
    mock_redis.set.return_value = True
    service = WebhookService(store, gateway=gateway, redis_client=mock_redis)

    service.handle_event(_event("checkout.session.completed", _session()))

    mock_redis.delete.assert_not_called()
