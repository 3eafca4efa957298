import re
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FULFILLMENT_PENDING = "pending"
FULFILLMENT_READY_TO_SHIP = "ready_to_ship"
ORDER_STATUS_PAID = "paid"
ORDER_SOURCE = "brisco_website"

_ID_ALPHABET = string.ascii_uppercase + string.digits
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def record_date(record: Dict[str, Any]) -> str:
    """
    YYYY-MM-DD of the record's own timestamp (falls back to the backup time)
    """
    for key in ("timestamp", "backupTimestamp"):
        value = record.get(key)
        if isinstance(value, str) and DATE_RE.match(value[:10]):
            return value[:10]
    return utc_now_iso()[:10]


def new_internal_order_id() -> str:
    """
    Human-readable id, independent of the Stripe session id
    e.g. BRISCO-1718000000000-K3J9QZ0AB
    """
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"BRISCO-{millis}-{suffix}"


def cents_to_dollars(cents: Optional[int]) -> float:
    return round((cents or 0) / 100, 2)


class OrderLineItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    quantity: int = Field(ge=1)
    size: Optional[str] = None
    product_id: Optional[str] = None


class OrderRecord(BaseModel):
    """
    Local representation of one checkout attempt.
    Serialized with camelCase keys (sessionId, fulfillmentStatus, ...)
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    # Stripe
    session_id: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    # Customer
    customer_email: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None

    # Order
    items: List[OrderLineItem] = Field(default_factory=list)
    total_quantity: int = 0

    # Money (USD)
    subtotal: float = 0.0
    shipping_cost: float = 0.0
    total_amount: float = 0.0
    currency: str = "usd"
    original_price: float = 0.0
    effective_price: float = 0.0
    total_savings: float = 0.0

    shipping_method: str = "standard"
    shipping_address: Optional[str] = None

    order_status: str = ORDER_STATUS_PAID
    fulfillment_status: str = FULFILLMENT_PENDING
    timestamp: str = Field(default_factory=utc_now_iso)
    source: str = ORDER_SOURCE

    stripe_mode: Optional[str] = None
    payment_method_types: List[str] = Field(default_factory=list)
    stripe_metadata: Dict[str, str] = Field(default_factory=dict)

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    notes: str = ""
    internal_order_id: str = Field(default_factory=new_internal_order_id)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _metadata_number(metadata: Dict[str, Any], key: str) -> float:
    try:
        return float(metadata.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def build_order_record(
    session: Dict[str, Any],
    items: List[OrderLineItem],
    shipping_option: str,
    subtotal: float,
    shipping_cost: float,
    customer_email: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> OrderRecord:
    """
    Order record written right after the Stripe session is created.
    subtotal and shipping_cost come from server-side pricing, Stripe's
    amount_subtotal already includes the shipping line.
    """
    metadata = session.get("metadata") or {}
    amount_total = session.get("amount_total")
    total_amount = (
        cents_to_dollars(amount_total)
        if amount_total is not None
        else round(subtotal + shipping_cost, 2)
    )

    return OrderRecord(
        session_id=session["id"],
        stripe_payment_intent_id=session.get("payment_intent"),
        stripe_customer_id=session.get("customer"),
        customer_email=session.get("customer_email") or customer_email or "",
        items=items,
        total_quantity=sum(item.quantity for item in items),
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        total_amount=total_amount,
        currency=session.get("currency") or "usd",
        original_price=_metadata_number(metadata, "originalPrice"),
        effective_price=_metadata_number(metadata, "effectivePrice"),
        total_savings=_metadata_number(metadata, "totalSavings"),
        shipping_method=shipping_option,
        stripe_mode=session.get("mode"),
        payment_method_types=list(session.get("payment_method_types") or []),
        stripe_metadata={str(k): str(v) for k, v in metadata.items()},
        user_agent=user_agent,
        ip_address=ip_address,
    )
