# payments/pricing.py
# ============================================================================
# TOWN TREASURE GROCERIES — TOTALS & ORDER NUMBERS
# ============================================================================
# Shared by the checkout client and the server-side order handlers so both
# sides compute the same subtotal / delivery fee / total.
# ============================================================================

import secrets
import time
from typing import Iterable, Optional, Tuple

from payments.delivery_zones import get_delivery_fee
from schemas.payments import OrderItem

ORDER_NUMBER_PREFIX = "TTG"


def compute_subtotal(items: Iterable[OrderItem]) -> float:
    return sum(item.price * item.quantity for item in items)


def compute_totals(items: Iterable[OrderItem], address: Optional[str]) -> Tuple[float, int, float]:
    """Return (subtotal, delivery_fee, total) for a basket delivered to address."""
    subtotal = compute_subtotal(items)
    delivery_fee = get_delivery_fee(address)
    return subtotal, delivery_fee, subtotal + delivery_fee


def generate_order_number(now: Optional[float] = None) -> str:
    """Storefront-style number: prefix plus the last six digits of the epoch millis."""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{ORDER_NUMBER_PREFIX}-{millis % 1_000_000:06d}"


def regenerate_order_number(now: Optional[float] = None) -> str:
    """Collision-retry variant with a random suffix."""
    return f"{generate_order_number(now)}-{secrets.token_hex(2).upper()}"
