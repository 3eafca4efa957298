from collections import Counter
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from domains.orders.model import record_date, utc_now_iso

Record = Dict[str, Any]

STATS_WINDOW_DAYS = 30
POPULAR_ITEMS_LIMIT = 10


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _dollars(value: Any) -> str:
    return f"${_money(value).quantize(Decimal('0.01'))}"


def _parse_timestamp(record: Record) -> Optional[datetime]:
    raw = record.get("timestamp")
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_items(items: Iterable[Record]) -> str:
    return ", ".join(
        f"{item.get('name')} (Size: {item.get('size') or 'N/A'}) "
        f"x{item.get('quantity')}"
        for item in items
    )


def format_order_summary(order: Record) -> Dict[str, Any]:
    """
    Flattened view of an order for the operator: one glance, no Stripe dashboard
    """
    savings = order.get("totalSavings")
    return {
        "orderNumber": order.get("sessionId"),
        "internalOrderId": order.get("internalOrderId"),
        "date": record_date(order),
        "customer": {
            "name": order.get("customerName") or "N/A",
            "email": order.get("customerEmail"),
            "phone": order.get("customerPhone") or "N/A",
        },
        "items": format_items(order.get("items") or []),
        "pricing": {
            "subtotal": _dollars(order.get("subtotal")),
            "shipping": _dollars(order.get("shippingCost")),
            "total": _dollars(order.get("totalAmount")),
            "savings": _dollars(savings) if savings else "$0.00",
        },
        "shipping": {
            "method": order.get("shippingMethod") or "standard",
            "address": order.get("shippingAddress") or "Address will be in Stripe",
        },
        "status": order.get("fulfillmentStatus") or "pending",
        "receiptUrl": order.get("receiptUrl"),
        "notes": order.get("notes") or "",
    }


def recent_orders(
    orders: List[Record], days: int = 7, now: Optional[datetime] = None
) -> List[Record]:
    """Orders from the last `days` days, newest first"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    recent = []
    for order in orders:
        ts = _parse_timestamp(order)
        if ts is not None and ts >= cutoff:
            recent.append((ts, order))
    recent.sort(key=lambda pair: pair[0], reverse=True)
    return [order for _, order in recent]


def compute_stats(orders: List[Record], today: Optional[date] = None) -> Dict[str, Any]:
    today = today or datetime.now(timezone.utc).date()

    total_orders = len(orders)
    total_revenue = sum((_money(o.get("totalAmount")) for o in orders), Decimal("0"))
    average = (
        total_revenue / total_orders if total_orders else Decimal("0")
    ).quantize(Decimal("0.01"))

    status_breakdown: Counter[str] = Counter(
        o.get("fulfillmentStatus") or "pending" for o in orders
    )

    # 30-day series, oldest first, zero-order days included
    per_day: Dict[str, List[Record]] = {}
    for order in orders:
        per_day.setdefault(record_date(order), []).append(order)
    last_30_days = []
    for offset in range(STATS_WINDOW_DAYS - 1, -1, -1):
        day = (today - timedelta(days=offset)).isoformat()
        day_orders = per_day.get(day, [])
        revenue = sum((_money(o.get("totalAmount")) for o in day_orders), Decimal("0"))
        last_30_days.append(
            {"date": day, "orders": len(day_orders), "revenue": float(revenue)}
        )

    item_counts: Counter[str] = Counter()
    for order in orders:
        for item in order.get("items") or []:
            key = f"{item.get('name')} ({item.get('size') or 'N/A'})"
            try:
                item_counts[key] += int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                continue
    popular_items = [
        {"item": item, "count": count}
        for item, count in item_counts.most_common(POPULAR_ITEMS_LIMIT)
    ]

    return {
        "totalOrders": total_orders,
        "totalRevenue": str(total_revenue.quantize(Decimal("0.01"))),
        "averageOrderValue": str(average),
        "statusBreakdown": dict(status_breakdown),
        "last30Days": last_30_days,
        "popularItems": popular_items,
        "lastUpdated": utc_now_iso(),
    }
