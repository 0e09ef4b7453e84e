# payments/initiation.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENT INITIATION
# ============================================================================
# Purpose: Start an M-Pesa STK push and record what the callback will need
#
# Flow:
#   1. Validate {phone, amount, orderDetails, unpaidOrderId?}
#   2. Normalize the phone number and make sure the order number is free
#   3. Push to the payer's handset via DarajaClient
#   4. Write PendingPayment + PublicStatus(pending) under the returned
#      CheckoutRequestID as one unit
# ============================================================================

import uuid
from typing import Any, Dict, Optional, Union

import pydantic
import structlog

from payments.errors import DuplicateOrderNumberError, NotFoundError, PaymentError, ValidationError
from payments.mpesa_client import DarajaClient, normalize_phone
from payments.pricing import regenerate_order_number
from schemas.payments import (
    InitiatePaymentRequest,
    OrderDetails,
    PaymentStatus,
    PendingPayment,
    PublicStatus,
)
from storage.base import IOrderStore, IPaymentStateStore

MAX_ORDER_NUMBER_ATTEMPTS = 3


class PaymentInitiationHandler:
    """
    The only component that talks to the provider's token/push endpoints.

    Example:
        handler = PaymentInitiationHandler(state_store, order_store, daraja)
        checkout_request_id = await handler.initiate(body)
    """

    def __init__(
        self,
        state_store: IPaymentStateStore,
        order_store: IOrderStore,
        daraja: DarajaClient,
    ):
        self.state = state_store
        self.orders = order_store
        self.daraja = daraja
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="payment_initiation",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def initiate(self, payload: Union[InitiatePaymentRequest, Dict[str, Any]]) -> str:
        """Push the payment request and return the CheckoutRequestID."""
        request = self._parse(payload)
        log = self._get_logger()

        phone = normalize_phone(request.phone)
        details = await self._ensure_unique_order_number(request.order_details, request.unpaid_order_id)

        log.info(
            "payment_initiation_started",
            order_number=details.order_number,
            user_id=details.user_id,
            amount=request.amount,
            unpaid_order_id=request.unpaid_order_id,
        )

        result = await self.daraja.stk_push(
            phone=phone,
            amount=request.amount,
            account_reference=details.order_number,
            description=f"Payment for Order {details.order_number}",
        )
        checkout_request_id = result.checkout_request_id
        log = self._get_logger(checkout_request_id)

        pending = PendingPayment(
            checkout_request_id=checkout_request_id,
            order_details=details,
            unpaid_order_id=request.unpaid_order_id,
        )
        status = PublicStatus(
            checkout_request_id=checkout_request_id,
            status=PaymentStatus.PENDING,
            user_id=details.user_id,
        )

        try:
            created = await self.state.create_pending(pending, status)
        except Exception as e:
            log.error("pending_payment_write_failed", error=str(e))
            raise PaymentError("Failed to record pending payment.") from e

        if not created:
            log.warning("pending_payment_already_exists")
        else:
            log.info("pending_payment_recorded", order_number=details.order_number)

        return checkout_request_id

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse(payload: Union[InitiatePaymentRequest, Dict[str, Any]]) -> InitiatePaymentRequest:
        if isinstance(payload, InitiatePaymentRequest):
            return payload
        if not isinstance(payload, dict):
            raise ValidationError()
        try:
            return InitiatePaymentRequest.model_validate(payload)
        except pydantic.ValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(fields=fields) from e

    async def _ensure_unique_order_number(
        self,
        details: OrderDetails,
        unpaid_order_id: Optional[str],
    ) -> OrderDetails:
        """Keep the client's number unless another order already uses it.

        A referenced unpaid order must belong to the payer.
        """
        if unpaid_order_id:
            unpaid = await self.orders.get_unpaid(unpaid_order_id, user_id=details.user_id)
            if unpaid is None:
                raise NotFoundError("Order not found.", unpaid_order_id=unpaid_order_id)
            if unpaid.order_number == details.order_number:
                return details

        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            if not await self.orders.order_number_exists(details.order_number):
                return details
            replacement = regenerate_order_number()
            self._get_logger().info(
                "order_number_regenerated",
                previous=details.order_number,
                order_number=replacement,
            )
            details = details.model_copy(update={"order_number": replacement})

        raise DuplicateOrderNumberError(order_number=details.order_number)
