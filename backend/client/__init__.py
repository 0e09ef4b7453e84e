# client/__init__.py
# ============================================================================
# TOWN TREASURE GROCERIES — STOREFRONT CLIENT
# ============================================================================
# Cart, order submission and M-Pesa confirmation polling
# ============================================================================

from client.cart import CartItem, CartStore
from client.checkout_client import OrderSubmissionClient
from client.poller import PaymentStatusPoller, PollOutcome, PollResult

__all__ = [
    "CartItem",
    "CartStore",
    "OrderSubmissionClient",
    "PaymentStatusPoller",
    "PollOutcome",
    "PollResult",
]
