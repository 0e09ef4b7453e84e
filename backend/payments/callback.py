# payments/callback.py
# ============================================================================
# TOWN TREASURE GROCERIES — M-PESA CALLBACK RECONCILIATION
# ============================================================================
# Purpose: Turn the provider's asynchronous STK result into a final order
#
# Delivery is at-least-once and may race with itself:
# - Unknown / already-reaped CheckoutRequestIDs are acknowledged, no writes
# - A per-id processing lock serializes concurrent duplicates; the loser
#   acknowledges immediately
# - The PendingPayment is deleted in a finally block, whatever step 3 did
# - paid_orders is UNIQUE on checkout_request_id, so a replay after the lock
#   expired still inserts at most one row
# ============================================================================

import uuid
from typing import Any, Dict, Optional

import pydantic
import structlog

from payments.errors import DuplicateOrderNumberError, ReconciliationError
from payments.pricing import regenerate_order_number
from schemas.payments import (
    CALLBACK_ACK,
    CallbackEnvelope,
    Order,
    PaymentMethod,
    PaymentStatus,
    PendingPayment,
    StkCallback,
)
from storage.base import IOrderStore, IPaymentStateStore

RECEIPT_SENTINEL = "N/A"
MAX_ORDER_NUMBER_ATTEMPTS = 3


class PaymentCallbackHandler:
    """Idempotent consumer of Daraja STK callbacks."""

    def __init__(
        self,
        state_store: IPaymentStateStore,
        order_store: IOrderStore,
        lock_ttl_seconds: int = 30,
    ):
        self.state = state_store
        self.orders = order_store
        self.lock_ttl_seconds = lock_ttl_seconds
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="payment_callback",
            correlation_id=correlation_id or "unknown",
        )

    async def handle(self, payload: Any) -> Dict[str, Any]:
        """
        Reconcile one callback delivery.

        Returns the provider acknowledgement. Raises ReconciliationError when a
        store write fails; the PendingPayment has been deleted by then.
        """
        callback = self._parse(payload)
        if callback is None:
            return dict(CALLBACK_ACK)

        checkout_request_id = callback.checkout_request_id
        log = self._get_logger(checkout_request_id)
        log.info("callback_received", result_code=callback.result_code)

        if await self.state.get_pending(checkout_request_id) is None:
            log.info("callback_unknown_checkout_id")
            return dict(CALLBACK_ACK)

        holder_id = str(uuid.uuid4())
        if not await self.state.acquire_lock(checkout_request_id, holder_id, self.lock_ttl_seconds):
            log.info("callback_already_processing")
            return dict(CALLBACK_ACK)

        try:
            # A duplicate may have finished between the lookup and the lock
            pending = await self.state.get_pending(checkout_request_id)
            if pending is None:
                log.info("callback_already_handled")
                return dict(CALLBACK_ACK)

            try:
                if callback.succeeded:
                    await self._on_success(pending, callback, log)
                else:
                    await self._on_failure(pending, callback, log)
            except Exception as e:
                log.error("callback_reconciliation_failed", error=str(e), error_type=type(e).__name__)
                raise ReconciliationError(checkout_request_id=checkout_request_id) from e
            finally:
                deleted = await self.state.delete_pending(checkout_request_id)
                log.debug("pending_payment_deleted", deleted=deleted)
        finally:
            await self.state.release_lock(checkout_request_id, holder_id)

        return dict(CALLBACK_ACK)

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    async def _on_success(self, pending: PendingPayment, callback: StkCallback, log):
        details = pending.order_details
        receipt = callback.metadata_value("MpesaReceiptNumber")
        if not receipt:
            log.warning("callback_receipt_missing")
            receipt = RECEIPT_SENTINEL

        order = Order.from_details(
            details,
            payment_method=PaymentMethod.MPESA.value,
            payment_status=PaymentStatus.PAID.value,
            mpesa_receipt_number=str(receipt),
            checkout_request_id=pending.checkout_request_id,
            source_unpaid_order_id=pending.unpaid_order_id,
        )

        stored = await self._insert_paid(order, log)
        if stored is None:
            log.info("paid_order_already_recorded")
        else:
            log.info(
                "paid_order_recorded",
                order_number=stored.order_number,
                user_id=stored.user_id,
                receipt=stored.mpesa_receipt_number,
            )

        if pending.unpaid_order_id:
            removed = await self.orders.delete_unpaid(pending.unpaid_order_id, user_id=details.user_id)
            log.info("unpaid_order_removed", unpaid_order_id=pending.unpaid_order_id, removed=removed)

        await self.state.transition_status(
            pending.checkout_request_id,
            PaymentStatus.PAID,
            user_id=details.user_id,
        )

    async def _on_failure(self, pending: PendingPayment, callback: StkCallback, log):
        log.info("payment_failed", result_code=callback.result_code, reason=callback.result_desc)
        await self.state.transition_status(
            pending.checkout_request_id,
            PaymentStatus.FAILED,
            reason=callback.result_desc,
            user_id=pending.order_details.user_id,
        )

    async def _insert_paid(self, order: Order, log) -> Optional[Order]:
        for attempt in range(1, MAX_ORDER_NUMBER_ATTEMPTS + 1):
            try:
                return await self.orders.insert_paid(order)
            except DuplicateOrderNumberError:
                if attempt == MAX_ORDER_NUMBER_ATTEMPTS:
                    raise
                replacement = regenerate_order_number()
                log.warning("order_number_collision", order_number=order.order_number, replacement=replacement)
                order = order.model_copy(update={"order_number": replacement})
        return None

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def _parse(self, payload: Any) -> Optional[StkCallback]:
        try:
            return CallbackEnvelope.model_validate(payload).body.stk_callback
        except pydantic.ValidationError as e:
            self._get_logger().warning("callback_malformed", errors=len(e.errors()))
            return None
