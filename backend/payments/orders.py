# payments/orders.py
# ============================================================================
# TOWN TREASURE GROCERIES — UNPAID ORDER MANAGEMENT
# ============================================================================
# Cancel, remove-item and receipt verification for the "My Orders" page.
# Only unpaid orders are editable; paid orders are immutable.
# ============================================================================

from typing import Any, Dict, Type, TypeVar, Union

import pydantic
import structlog

from payments.errors import NotFoundError, OrderUpdateError, ValidationError
from payments.pricing import compute_totals
from schemas.payments import (
    CancelOrderRequest,
    Order,
    RemoveItemRequest,
    VerifyReceiptRequest,
)
from storage.base import IOrderStore

logger = structlog.get_logger().bind(component="order_service")

RequestT = TypeVar("RequestT", bound=pydantic.BaseModel)


def _parse(model: Type[RequestT], payload: Union[RequestT, Dict[str, Any]]) -> RequestT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(fields=[str(err["loc"]) for err in e.errors()]) from e


class OrderService:
    def __init__(self, order_store: IOrderStore):
        self.orders = order_store

    async def cancel(self, payload: Union[CancelOrderRequest, Dict[str, Any]]) -> None:
        request = _parse(CancelOrderRequest, payload)
        deleted = await self.orders.delete_unpaid(request.order_id, user_id=request.user_id)
        if not deleted:
            raise NotFoundError("Order not found.", order_id=request.order_id)
        logger.info("order_cancelled", order_id=request.order_id, user_id=request.user_id)

    async def remove_item(self, payload: Union[RemoveItemRequest, Dict[str, Any]]) -> Order:
        """Drop one line and recompute subtotal, delivery fee and total."""
        request = _parse(RemoveItemRequest, payload)

        order = await self.orders.get_unpaid(request.order_id, user_id=request.user_id)
        if order is None:
            raise NotFoundError("Order not found.", order_id=request.order_id)

        remaining = [item for item in order.items if item.id != request.item_id]
        if len(remaining) == len(order.items):
            raise NotFoundError("Item not found in order.", item_id=request.item_id)
        if not remaining:
            raise OrderUpdateError(
                "Cannot remove the last item. Cancel the order instead.",
                action="cancel",
            )

        subtotal, delivery_fee, total = compute_totals(remaining, order.address)
        updated = await self.orders.update_unpaid_items(
            order.id,
            remaining,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
        )
        if updated is None:
            # Cancelled concurrently
            raise NotFoundError("Order not found.", order_id=request.order_id)

        logger.info(
            "order_item_removed",
            order_id=order.id,
            item_id=request.item_id,
            items_left=len(remaining),
            total=total,
        )
        return updated

    async def verify_receipt(self, payload: Union[VerifyReceiptRequest, Dict[str, Any]]) -> bool:
        request = _parse(VerifyReceiptRequest, payload)
        genuine = await self.orders.order_number_exists(request.order_number)
        logger.info("receipt_verified", order_number=request.order_number, genuine=genuine)
        return genuine
