# payments/checkout.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAY-ON-DELIVERY CHECKOUT
# ============================================================================
# Writes an unpaid order straight into unpaid_orders. Order numbers are
# client-generated from a truncated timestamp, so a UNIQUE violation is
# answered by regenerating the number and retrying.
# ============================================================================

from typing import Any, Dict, Union

import pydantic
import structlog

from payments.errors import DuplicateOrderNumberError, ValidationError
from payments.pricing import compute_totals, regenerate_order_number
from schemas.payments import Order, PaymentMethod, UnpaidOrderRequest
from storage.base import IOrderStore

logger = structlog.get_logger().bind(component="checkout_service")

MAX_ORDER_NUMBER_ATTEMPTS = 3


class CheckoutService:
    def __init__(self, order_store: IOrderStore):
        self.orders = order_store

    async def submit_unpaid(self, payload: Union[UnpaidOrderRequest, Dict[str, Any]]) -> Order:
        """Record a pay-on-delivery order and return the stored row."""
        if isinstance(payload, UnpaidOrderRequest):
            request = payload
        else:
            try:
                request = UnpaidOrderRequest.model_validate(payload)
            except pydantic.ValidationError as e:
                raise ValidationError(fields=[str(err["loc"]) for err in e.errors()]) from e

        details = request.order_details
        subtotal, delivery_fee, total = compute_totals(details.items, details.address)
        order = Order.from_details(
            details,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
            payment_method=PaymentMethod.DELIVERY.value,
            payment_status="unpaid",
        )

        for attempt in range(1, MAX_ORDER_NUMBER_ATTEMPTS + 1):
            try:
                # Table constraints are per table, paid numbers are checked here
                if await self.orders.order_number_exists(order.order_number):
                    raise DuplicateOrderNumberError(order_number=order.order_number)
                stored = await self.orders.insert_unpaid(order)
            except DuplicateOrderNumberError:
                if attempt == MAX_ORDER_NUMBER_ATTEMPTS:
                    logger.error("order_number_exhausted", order_number=order.order_number)
                    raise
                replacement = regenerate_order_number()
                logger.warning("order_number_collision", order_number=order.order_number, replacement=replacement)
                order = order.model_copy(update={"order_number": replacement})
                continue

            logger.info(
                "unpaid_order_created",
                order_id=stored.id,
                order_number=stored.order_number,
                user_id=stored.user_id,
                total=stored.total,
            )
            return stored

        raise DuplicateOrderNumberError(order_number=order.order_number)
