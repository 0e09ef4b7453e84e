# client/checkout_client.py
# ============================================================================
# TOWN TREASURE GROCERIES — ORDER SUBMISSION CLIENT
# ============================================================================
# Builds orderDetails from the cart, then either records a pay-on-delivery
# order or starts an M-Pesa payment and waits for its confirmation.
# ============================================================================

from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from client.cart import CartStore
from client.poller import PaymentStatusPoller, PollResult
from payments.errors import PaymentError, ProviderInitiationError, ValidationError
from payments.pricing import compute_totals, generate_order_number
from schemas.payments import OrderDetails, OrderItem, PaymentMethod

logger = structlog.get_logger().bind(component="order_submission")

_ERRORS_BY_STATUS = {
    400: ValidationError,
    502: ProviderInitiationError,
}


class OrderSubmissionClient:
    """
    Example:
        async with httpx.AsyncClient(base_url="https://shop.example") as http:
            client = OrderSubmissionClient(http, cart, catalogue)
            details = client.build_order_details("u1", "Jane", "0712345678", "Kilimani", "mpesa")
            result = await client.place_order(details)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cart: CartStore,
        catalogue: Mapping[str, Mapping[str, Any]],
        poller: Optional[PaymentStatusPoller] = None,
    ):
        self.http = http_client
        self.cart = cart
        self.catalogue = catalogue
        self.poller = poller or PaymentStatusPoller(http_client, cart=cart)

    def build_order_details(
        self,
        user_id: str,
        full_name: str,
        phone: str,
        address: str,
        payment_method: str = PaymentMethod.MPESA.value,
    ) -> OrderDetails:
        if self.cart.is_empty:
            raise ValidationError("Your cart is empty.")

        items = []
        for line in self.cart.items:
            product = self.catalogue.get(line.id, {})
            items.append(OrderItem(
                id=line.id,
                name=product.get("name", line.name),
                price=product.get("price", line.price),
                unit=product.get("unit", line.unit),
                quantity=line.quantity,
            ))

        subtotal, delivery_fee, total = compute_totals(items, address)
        return OrderDetails(
            order_number=generate_order_number(),
            user_id=user_id,
            full_name=full_name,
            phone=phone,
            address=address,
            items=items,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
            payment_method=payment_method,
        )

    async def place_order(self, details: OrderDetails, unpaid_order_id: Optional[str] = None):
        if details.payment_method == PaymentMethod.MPESA.value:
            return await self.pay_with_mpesa(details, unpaid_order_id=unpaid_order_id)
        return await self.submit_pay_on_delivery(details)

    async def submit_pay_on_delivery(self, details: OrderDetails) -> Dict[str, Any]:
        body = await self._post("/orders/unpaid", {"orderDetails": _wire(details)})
        self.cart.clear()
        logger.info("unpaid_order_submitted", order_number=body["order"]["order_number"])
        return body["order"]

    async def pay_with_mpesa(self, details: OrderDetails, unpaid_order_id: Optional[str] = None) -> PollResult:
        """Initiate the STK push, then poll until a terminal status or timeout."""
        payload: Dict[str, Any] = {
            "phone": details.phone,
            "amount": details.computed_total(),
            "orderDetails": _wire(details),
        }
        if unpaid_order_id:
            payload["unpaidOrderId"] = unpaid_order_id

        body = await self._post("/initiateMpesaPayment", payload)
        checkout_request_id = body.get("checkoutRequestID")
        if not checkout_request_id:
            raise ProviderInitiationError("Received an empty response from the payment service.")

        logger.info("mpesa_payment_started", order_number=details.order_number, checkout_request_id=checkout_request_id)
        return await self.poller.wait_for_confirmation(checkout_request_id)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http.post(path, json=payload)
        except httpx.HTTPError as e:
            raise PaymentError(f"Could not reach the store: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or body.get("error"):
            message = body.get("error") or f"Request failed with status {response.status_code}"
            error_cls = _ERRORS_BY_STATUS.get(response.status_code, PaymentError)
            logger.warning("request_rejected", path=path, status=response.status_code, error=message)
            raise error_cls(message)
        return body


def _wire(details: OrderDetails) -> Dict[str, Any]:
    return details.model_dump(mode="json", by_alias=True, exclude_none=True)
