# payments/status.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENT STATUS POLL
# ============================================================================
# Read-only. A missing PublicStatus is a NotFoundError (404); the polling
# client decides whether that still means "initializing" or "invalid id".
# ============================================================================

from typing import Any, Dict, Union

import pydantic
import structlog

from payments.errors import NotFoundError, ValidationError
from schemas.payments import PaymentStatus, PaymentStatusRequest, PaymentStatusResponse
from storage.base import IOrderStore, IPaymentStateStore

logger = structlog.get_logger().bind(component="payment_status")

STATUS_MESSAGES = {
    PaymentStatus.PENDING: "Waiting for M-Pesa confirmation.",
    PaymentStatus.PAID: "Payment confirmed.",
    PaymentStatus.FAILED: "Payment failed.",
    PaymentStatus.CANCELLED: "Payment was cancelled.",
}


class PaymentStatusHandler:
    def __init__(self, state_store: IPaymentStateStore, order_store: IOrderStore):
        self.state = state_store
        self.orders = order_store

    async def get_status(self, payload: Union[PaymentStatusRequest, Dict[str, Any], str]) -> PaymentStatusResponse:
        checkout_request_id = self._checkout_request_id(payload)

        status = await self.state.get_status(checkout_request_id)
        if status is None:
            logger.debug("payment_status_missing", checkout_request_id=checkout_request_id)
            raise NotFoundError("Payment not found.", checkout_request_id=checkout_request_id)

        final_order = None
        if status.status is PaymentStatus.PAID:
            final_order = await self.orders.get_paid_by_checkout_id(checkout_request_id)
            if final_order is None:
                logger.warning("paid_order_missing", checkout_request_id=checkout_request_id)

        return PaymentStatusResponse(
            status=status.status,
            message=status.reason or STATUS_MESSAGES[status.status],
            final_order=final_order,
        )

    @staticmethod
    def _checkout_request_id(payload: Union[PaymentStatusRequest, Dict[str, Any], str]) -> str:
        if isinstance(payload, str):
            if not payload:
                raise ValidationError("Missing checkoutRequestID")
            return payload
        if isinstance(payload, PaymentStatusRequest):
            return payload.checkout_request_id
        try:
            return PaymentStatusRequest.model_validate(payload).checkout_request_id
        except pydantic.ValidationError as e:
            raise ValidationError("Missing checkoutRequestID") from e
