import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import redis

from core.errors import UpstreamError
from domains.checkout.catalog import DEFAULT_SHIPPING, SHIPPING_RATES
from domains.checkout.gateway import StripeGateway
from domains.checkout.service import decode_items_summary
from domains.crm.relay import CrmRelay
from domains.orders.model import (
    FULFILLMENT_READY_TO_SHIP,
    ORDER_SOURCE,
    ORDER_STATUS_PAID,
    cents_to_dollars,
    new_internal_order_id,
    utc_now_iso,
)
from domains.orders.store import OrderBackupStore

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)
PAYMENT_FAILED_EVENTS = frozenset(
    {"payment_intent.payment_failed", "checkout.session.async_payment_failed"}
)
DEDUP_TTL = timedelta(hours=24)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id or, when expanded, the object itself"""
    if isinstance(value, dict):
        return value.get("id")
    return value


def format_address(address: Optional[Dict[str, Any]]) -> Optional[str]:
    if not address:
        return None
    city_line = " ".join(
        part for part in (address.get("state"), address.get("postal_code")) if part
    )
    parts = [
        address.get("line1"),
        address.get("line2"),
        address.get("city"),
        city_line,
        address.get("country"),
    ]
    return ", ".join(part for part in parts if part) or None


def _shipping_details(session: Dict[str, Any]) -> Dict[str, Any]:
    # newer API versions moved it under collected_information
    collected = session.get("collected_information") or {}
    return collected.get("shipping_details") or session.get("shipping_details") or {}


def _receipt_url(session: Dict[str, Any]) -> Optional[str]:
    intent = session.get("payment_intent")
    if not isinstance(intent, dict):
        return None
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        return None
    return charge.get("receipt_url")


def build_confirmation(session: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fields confirmed by Stripe once the session is paid
    """
    customer = session.get("customer_details") or {}
    shipping = _shipping_details(session)
    address = shipping.get("address") or customer.get("address")

    update: Dict[str, Any] = {
        "sessionId": session["id"],
        "customerEmail": customer.get("email") or session.get("customer_email"),
        "customerName": shipping.get("name") or customer.get("name"),
        "customerPhone": customer.get("phone"),
        "shippingAddress": format_address(address),
        "stripePaymentIntentId": _id_of(session.get("payment_intent")),
        "stripeCustomerId": _id_of(session.get("customer")),
        "paymentStatus": session.get("payment_status"),
        "receiptUrl": _receipt_url(session),
        "orderStatus": ORDER_STATUS_PAID,
        "fulfillmentStatus": FULFILLMENT_READY_TO_SHIP,
        "paidAt": utc_now_iso(),
    }
    if session.get("amount_total") is not None:
        update["totalAmount"] = cents_to_dollars(session["amount_total"])
    shipping_cents = (session.get("total_details") or {}).get("amount_shipping")
    if shipping_cents:
        update["shippingCost"] = cents_to_dollars(shipping_cents)

    # keep what we already know when Stripe has nothing for a field
    return {k: v for k, v in update.items() if v is not None}


def build_creation_fields(session: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fields a record needs when the confirmation arrives before (or without)
    the checkout-time backup: rebuilt from the session metadata
    """
    metadata = session.get("metadata") or {}
    items = decode_items_summary(metadata.get("itemsSummary"))
    shipping_option = metadata.get("shippingOption") or DEFAULT_SHIPPING
    shipping_cost = SHIPPING_RATES.get(shipping_option, 0) / 100
    total_quantity = sum(item.quantity for item in items)
    try:
        unit_price = float(metadata.get("effectivePrice") or 0)
    except ValueError:
        unit_price = 0.0

    return {
        "items": [item.model_dump(by_alias=True) for item in items],
        "totalQuantity": total_quantity,
        "subtotal": round(unit_price * total_quantity, 2),
        "shippingCost": shipping_cost,
        "currency": session.get("currency") or "usd",
        "originalPrice": metadata.get("originalPrice", "0"),
        "effectivePrice": metadata.get("effectivePrice", "0"),
        "totalSavings": metadata.get("totalSavings", "0"),
        "shippingMethod": shipping_option,
        "timestamp": utc_now_iso(),
        "source": ORDER_SOURCE,
        "stripeMode": session.get("mode"),
        "stripeMetadata": dict(metadata),
        "notes": "",
        "internalOrderId": new_internal_order_id(),
    }


class WebhookService:
    """
    Handles one verified Stripe event. Signature checks happen before this
    (core.security); everything here is acknowledged even if the backup fails.
    """

    def __init__(
        self,
        store: OrderBackupStore,
        gateway: Optional[StripeGateway] = None,
        redis_client: Optional[Any] = None,
        crm_relay: Optional[CrmRelay] = None,
        forward_orders: bool = False,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.redis_client = redis_client
        self.crm_relay = crm_relay
        self.forward_orders = forward_orders

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_id = event.get("id", "unknown")
        event_type = event.get("type", "unknown")
        data_object = (event.get("data") or {}).get("object") or {}
        logger.info(f" 📬 [Webhook] Processing event {event_type} ({event_id})")

        if not self._claim(event_id):
            logger.info(f" ♻️ [Webhook] Event {event_id} already processed.")
            return {"received": True, "duplicate": True}

        try:
            if event_type in PAYMENT_SUCCEEDED_EVENTS:
                self.on_payment_succeeded(data_object)
            elif event_type in PAYMENT_FAILED_EVENTS:
                logger.warning(
                    f" ❌ [Webhook] Payment failed: {data_object.get('id')}"
                )
            else:
                logger.info(f" [Webhook] Unhandled event type: {event_type}")
        except Exception:
            # unclaim so a redelivery is processed
            self._release(event_id)
            raise

        return {"received": True}

    def on_payment_succeeded(self, session_object: Dict[str, Any]) -> bool:
        session_id = session_object.get("id")
        if not session_id:
            logger.error(" ❌ [Webhook] Session object without id, ignoring.")
            return False

        session = self._fetch_session(session_id) or session_object
        amount = cents_to_dollars(session.get("amount_total"))
        logger.info(f" ✅ [Webhook] Payment successful: {session_id} (${amount})")

        update = build_confirmation(session)
        if self.store.find_by_session_id(session_id) is None:
            update = {**build_creation_fields(session), **update}

        try:
            saved = self.store.merge(session_id, update)
        except Exception as e:  # noqa: BLE001
            logger.error(f" ❌ [Webhook] Backup merge crashed for {session_id}: {e}")
            saved = False

        if self.forward_orders and self.crm_relay is not None:
            order = self.store.find_by_session_id(session_id) or update
            self.crm_relay.forward_order(order)
        return saved

    def _fetch_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Full session detail (customer, shipping, receipt), best-effort"""
        if self.gateway is None:
            return None
        try:
            return self.gateway.retrieve_session(session_id)
        except UpstreamError:
            logger.warning(f" ⚠️ [Webhook] Using event payload for {session_id}.")
            return None

    def _claim(self, event_id: str) -> bool:
        """
        SET NX on processed:<event id>. True -> first delivery, go ahead.
        Without redis every delivery is processed (merge is idempotent enough).
        """
        if self.redis_client is None:
            return True
        try:
            is_first = self.redis_client.set(
                f"processed:{event_id}", "1", nx=True, ex=DEDUP_TTL
            )
        except redis.RedisError as e:
            logger.warning(f" ⚠️ [Redis] De-duplication skipped: {e}")
            return True
        return bool(is_first)

    def _release(self, event_id: str) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.delete(f"processed:{event_id}")
        except redis.RedisError as e:
            logger.warning(f" ⚠️ [Redis] Could not release {event_id}: {e}")
