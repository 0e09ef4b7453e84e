# payments/errors.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENT ERROR TAXONOMY
# ============================================================================
# Every error carries the HTTP status the API answers with and a message
# that is safe to show to the shopper.
# ============================================================================

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for storefront payment/order errors."""

    status_code: int = 500
    default_message: str = "An internal server error occurred."

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(PaymentError):
    """Bad or missing caller input; the shopper can correct it."""

    status_code = 400
    default_message = "Missing required fields"


class ProviderInitiationError(PaymentError):
    """M-Pesa rejected (or never answered) the STK push request."""

    status_code = 502
    default_message = "Failed to initiate M-Pesa payment."


class ReconciliationError(PaymentError):
    """A store write failed while a callback was being reconciled."""

    status_code = 500
    default_message = "Failed to reconcile payment callback."


class NotFoundError(PaymentError):
    status_code = 404
    default_message = "Not found."


class PaymentTimeoutError(PaymentError, TimeoutError):
    """Client-side only: polling exceeded its time budget."""

    status_code = 408
    default_message = "Payment timed out. Please try again or check your M-Pesa account."


class OrderStoreError(PaymentError):
    status_code = 500
    default_message = "Order store operation failed."


class DuplicateOrderNumberError(OrderStoreError):
    status_code = 409
    default_message = "Order number already exists."


class OrderUpdateError(PaymentError):
    """An edit to an unpaid order was refused."""

    status_code = 400
    default_message = "Order could not be updated."

    def __init__(self, message: Optional[str] = None, action: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.action = action

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.action:
            body["action"] = self.action
        return body
