import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.config import Settings
from core.errors import ClientInputError, ConfigurationError
from domains.checkout.catalog import (
    COLLECTION_DESCRIPTION,
    COLLECTION_IMAGE,
    COLLECTION_NAME,
    DEFAULT_SHIPPING,
    SHIPPING_RATES,
    get_product,
    shipping_label,
)
from domains.checkout.gateway import StripeGateway
from domains.checkout.schemas import CartItem, CheckoutRequest
from domains.orders.model import ORDER_SOURCE, OrderLineItem, build_order_record
from domains.orders.store import OrderBackupStore
from domains.pricing import engine as pricing

logger = logging.getLogger(__name__)

CURRENCY = "usd"
ALLOWED_SHIPPING_COUNTRIES = ["US", "CA"]
LINE_ITEM_STRATEGIES = ("aggregate", "per_product")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Stripe caps metadata values at 500 characters
ITEMS_SUMMARY_LIMIT = 500
_NO_SIZE = "-"


def _clean(value: str) -> str:
    return value.replace("|", "/").replace(":", "/").strip()


def encode_items_summary(
    items: List[CartItem], limit: int = ITEMS_SUMMARY_LIMIT
) -> str:
    """
    Compact cart summary: "product:size:qty|product:size:qty".
    Whole entries only; when the budget runs out a "+N" marker counts the rest.
    """
    entries = []
    for item in items:
        size = _clean(item.size) if item.size else _NO_SIZE
        entries.append(f"{_clean(item.product_id)}:{size}:{item.quantity}")
    kept: List[str] = []
    for i, entry in enumerate(entries):
        remaining = len(entries) - i - 1
        marker = f"|+{remaining}" if remaining else ""
        candidate = "|".join(kept + [entry])
        if len(candidate) + len(marker) > limit:
            break
        kept.append(entry)

    summary = "|".join(kept)
    dropped = len(entries) - len(kept)
    if dropped:
        marker = f"+{dropped}"
        summary = f"{summary}|{marker}" if summary else marker
    return summary[:limit]


def decode_items_summary(summary: Optional[str]) -> List[OrderLineItem]:
    """Inverse of encode_items_summary; unknown products keep their id as name"""
    items: List[OrderLineItem] = []
    for entry in (summary or "").split("|"):
        parts = entry.split(":")
        if len(parts) != 3:
            continue
        product_id, size, quantity = parts
        try:
            qty = int(quantity)
        except ValueError:
            continue
        if qty < 1:
            continue
        product = get_product(product_id)
        items.append(
            OrderLineItem(
                name=product.name if product else product_id,
                size=None if size == _NO_SIZE else size,
                quantity=qty,
                product_id=product_id,
            )
        )
    return items


def _order_line_item(item: CartItem) -> OrderLineItem:
    product = get_product(item.product_id)
    return OrderLineItem(
        name=product.name if product else item.product_id,
        size=item.size,
        quantity=item.quantity,
        product_id=item.product_id,
    )


@dataclass
class CheckoutResult:
    session_id: str
    url: str
    record: Dict[str, Any]


class CheckoutService:
    def __init__(
        self,
        gateway: Optional[StripeGateway],
        store: OrderBackupStore,
        settings: Settings,
    ) -> None:
        if settings.line_item_strategy not in LINE_ITEM_STRATEGIES:
            raise ValueError(
                f"Unknown line item strategy: {settings.line_item_strategy!r}"
            )
        self.gateway = gateway
        self.store = store
        self.settings = settings

    # ------------------------------------------------------------------

    def validate(self, request: CheckoutRequest) -> List[CartItem]:
        if not request.items:
            raise ClientInputError("Missing items")
        email = (request.customer_email or "").strip()
        if not email:
            raise ClientInputError("Missing email")
        if not EMAIL_RE.match(email):
            raise ClientInputError("Invalid email")
        if request.shipping_option not in SHIPPING_RATES:
            raise ClientInputError(
                f"Unknown shipping option: {request.shipping_option}"
            )
        unknown = sorted(
            {i.product_id for i in request.items if not get_product(i.product_id)}
        )
        if unknown:
            raise ClientInputError(f"Unknown product: {', '.join(unknown)}")
        return request.items

    def build_line_items(
        self, items: List[CartItem], shipping_option: str
    ) -> List[Dict[str, Any]]:
        total_quantity = sum(item.quantity for item in items)
        image = f"{self.settings.site_url}{COLLECTION_IMAGE}"

        if self.settings.line_item_strategy == "aggregate":
            noun = "shirt" if total_quantity == 1 else "shirts"
            line_items = [
                {
                    "price_data": {
                        "currency": CURRENCY,
                        "product_data": {
                            "name": f"{COLLECTION_NAME} ({total_quantity} {noun})",
                            "description": COLLECTION_DESCRIPTION,
                            "images": [image],
                        },
                        "unit_amount": pricing.to_cents(
                            pricing.total(total_quantity)
                        ),
                    },
                    "quantity": 1,
                }
            ]
        else:
            # tier is chosen on the whole cart, then applied to every line
            unit_amount = pricing.to_cents(pricing.effective_price(total_quantity))
            line_items = []
            for item in items:
                product = get_product(item.product_id)
                if product is None:
                    raise ClientInputError(f"Unknown product: {item.product_id}")
                name = product.name
                if item.size:
                    name = f"{product.name} (Size: {item.size})"
                image_url = f"{self.settings.site_url}{product.image_path}"
                line_items.append(
                    {
                        "price_data": {
                            "currency": CURRENCY,
                            "product_data": {
                                "name": name,
                                "description": product.description,
                                "images": [image_url],
                                "metadata": {
                                    "productId": product.product_id,
                                    "size": item.size or "",
                                },
                            },
                            "unit_amount": unit_amount,
                        },
                        "quantity": item.quantity,
                    }
                )

        shipping_cents = SHIPPING_RATES[shipping_option]
        if shipping_cents > 0:
            line_items.append(
                {
                    "price_data": {
                        "currency": CURRENCY,
                        "product_data": {"name": shipping_label(shipping_option)},
                        "unit_amount": shipping_cents,
                    },
                    "quantity": 1,
                }
            )
        return line_items

    @staticmethod
    def build_metadata(
        items: List[CartItem], shipping_option: str = DEFAULT_SHIPPING
    ) -> Dict[str, str]:
        total_quantity = sum(item.quantity for item in items)
        discount = pricing.savings(total_quantity)
        return {
            "source": ORDER_SOURCE,
            "totalQuantity": str(total_quantity),
            "effectivePrice": str(pricing.effective_price(total_quantity)),
            "originalPrice": str(pricing.original_price(total_quantity)),
            "totalSavings": str(discount),
            "discountApplied": str(discount),
            "shippingOption": shipping_option,
            "itemsSummary": encode_items_summary(items),
        }

    def build_session_params(self, request: CheckoutRequest) -> Dict[str, Any]:
        items = self.validate(request)
        site = self.settings.site_url
        return {
            "payment_method_types": ["card"],
            "line_items": self.build_line_items(items, request.shipping_option),
            "mode": "payment",
            "success_url": f"{site}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{site}/cancel",
            "customer_email": request.customer_email,
            "metadata": self.build_metadata(items, request.shipping_option),
            "shipping_address_collection": {
                "allowed_countries": ALLOWED_SHIPPING_COUNTRIES
            },
            "billing_address_collection": "required",
            "phone_number_collection": {"enabled": True},
        }

    # ------------------------------------------------------------------

    def create_checkout(
        self,
        request: CheckoutRequest,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Validate, price on the server, open a Stripe session.
        The backup record is returned, not written: see backup().
        """
        params = self.build_session_params(request)
        if self.gateway is None:
            raise ConfigurationError("Stripe not configured")

        logger.info(
            f"🛒 [Checkout] {request.customer_email}: "
            f"{params['metadata']['totalQuantity']} item(s), {request.shipping_option}"
        )
        session = self.gateway.create_session(params)
        if not session.get("metadata"):
            session["metadata"] = params["metadata"]

        line_items = [_order_line_item(item) for item in request.items or []]
        total_quantity = sum(item.quantity for item in line_items)
        record = build_order_record(
            session,
            line_items,
            request.shipping_option,
            subtotal=float(pricing.total(total_quantity)),
            shipping_cost=SHIPPING_RATES[request.shipping_option] / 100,
            customer_email=request.customer_email,
            user_agent=user_agent,
            ip_address=ip_address,
        ).to_record()

        logger.info(f"✅ [Checkout] Session {session['id']} created.")
        return CheckoutResult(
            session_id=session["id"], url=session.get("url") or "", record=record
        )

    def backup(self, record: Dict[str, Any]) -> bool:
        """
        Best-effort: a failed backup never fails the checkout
        """
        session_id = record.get("sessionId")
        try:
            saved = self.store.append(record)
        except Exception as e:  # noqa: BLE001
            logger.error(f" ❌ [Checkout] Backup crashed for {session_id}: {e}")
            return False
        if not saved:
            logger.warning(f" ⚠️ [Checkout] Order {session_id} not backed up.")
        return saved
