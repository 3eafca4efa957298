from typing import Tuple

# (minimum total quantity, unit price in USD), highest bracket first
PRICE_TIERS: Tuple[Tuple[int, int], ...] = (
    (4, 50),
    (2, 55),
    (1, 65),
)
BASE_UNIT_PRICE = 65


def _check_quantity(total_quantity: int) -> None:
    if isinstance(total_quantity, bool) or not isinstance(total_quantity, int):
        raise TypeError("total_quantity must be an int")
    if total_quantity < 1:
        raise ValueError("total_quantity must be >= 1")


def effective_price(total_quantity: int) -> int:
    """
    Per-unit price for a cart holding `total_quantity` items across all lines
    """
    _check_quantity(total_quantity)
    for minimum, unit_price in PRICE_TIERS:
        if total_quantity >= minimum:
            return unit_price
    # unreachable: the last tier starts at 1
    return BASE_UNIT_PRICE


def total(total_quantity: int) -> int:
    return total_quantity * effective_price(total_quantity)


def original_price(total_quantity: int) -> int:
    """What the cart would cost at the single-item price"""
    _check_quantity(total_quantity)
    return total_quantity * BASE_UNIT_PRICE


def savings(total_quantity: int) -> int:
    return original_price(total_quantity) - total(total_quantity)


def to_cents(amount: int) -> int:
    return amount * 100
