# payments/__init__.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENTS MODULE
# ============================================================================
# M-Pesa initiation / callback / status handlers and order services
# ============================================================================

from payments.callback import PaymentCallbackHandler
from payments.checkout import CheckoutService
from payments.errors import (
    DuplicateOrderNumberError,
    NotFoundError,
    OrderStoreError,
    OrderUpdateError,
    PaymentError,
    PaymentTimeoutError,
    ProviderInitiationError,
    ReconciliationError,
    ValidationError,
)
from payments.initiation import PaymentInitiationHandler
from payments.mpesa_client import DarajaClient, MpesaConfig, normalize_phone
from payments.orders import OrderService
from payments.status import PaymentStatusHandler

__all__ = [
    # Handlers
    "PaymentInitiationHandler",
    "PaymentCallbackHandler",
    "PaymentStatusHandler",
    "CheckoutService",
    "OrderService",
    # Provider
    "DarajaClient",
    "MpesaConfig",
    "normalize_phone",
    # Errors
    "PaymentError",
    "ValidationError",
    "ProviderInitiationError",
    "ReconciliationError",
    "NotFoundError",
    "PaymentTimeoutError",
    "OrderStoreError",
    "DuplicateOrderNumberError",
    "OrderUpdateError",
]
