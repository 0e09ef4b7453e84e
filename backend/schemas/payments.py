# schemas/payments.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENT & ORDER SCHEMAS
# ============================================================================
# Purpose: Type-safe records for the M-Pesa confirmation flow
#
# - Checkout payloads as the storefront sends them (camelCase on the wire)
# - PendingPayment / PublicStatus records keyed by CheckoutRequestID
# - Paid / unpaid order rows
# - Daraja STK callback envelope (PascalCase on the wire)
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    DELIVERY = "delivery"


# ============================================================================
# SECTION 2: CHECKOUT PAYLOADS
# ============================================================================

class WireModel(BaseModel):
    """Accepts either the wire alias or the attribute name."""
    model_config = ConfigDict(populate_by_name=True)


class OrderItem(WireModel):
    """One cart line frozen at checkout time."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: Optional[str] = None
    price: float = Field(default=0, ge=0)
    quantity: int = Field(default=1, ge=1)
    unit: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


class OrderDetails(WireModel):
    """Order snapshot assembled by the checkout page; unknown keys are kept."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_number: str = Field(alias="orderNumber", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    full_name: Optional[str] = Field(default=None, alias="fullName")
    phone: Optional[str] = None
    address: Optional[str] = None
    items: List[OrderItem] = Field(min_length=1)
    subtotal: Optional[float] = None
    delivery_fee: float = Field(default=0, alias="deliveryFee")
    total: Optional[float] = None
    payment_method: str = Field(default=PaymentMethod.MPESA.value, alias="paymentMethod")

    def snapshot(self) -> Dict[str, Any]:
        """Wire form of exactly what the client submitted."""
        return self.model_dump(by_alias=True, exclude_unset=True)

    def computed_subtotal(self) -> float:
        if self.subtotal is not None:
            return self.subtotal
        return sum(item.line_total for item in self.items)

    def computed_total(self) -> float:
        if self.total is not None:
            return self.total
        return self.computed_subtotal() + self.delivery_fee


# ============================================================================
# SECTION 3: PAYMENT STATE RECORDS
# ============================================================================

class PendingPayment(BaseModel):
    """Bridges an STK push to its asynchronous callback."""
    checkout_request_id: str
    order_details: OrderDetails
    unpaid_order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_storage(self) -> Dict[str, Any]:
        return {
            "checkout_request_id": self.checkout_request_id,
            "order_details": self.order_details.snapshot(),
            "unpaid_order_id": self.unpaid_order_id,
            "created_at": self.created_at.isoformat(),
        }


class PublicStatus(BaseModel):
    """The only payment record a polling client may read."""
    checkout_request_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    reason: Optional[str] = None
    user_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 4: ORDER ROWS
# ============================================================================

class Order(BaseModel):
    """A row in either the paid_orders or the unpaid_orders table."""
    id: Optional[str] = None
    order_number: str
    user_id: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = 0
    delivery_fee: float = 0
    total: float = 0
    payment_method: str = PaymentMethod.MPESA.value
    payment_status: str = "unpaid"
    mpesa_receipt_number: Optional[str] = None
    checkout_request_id: Optional[str] = None
    source_unpaid_order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_details(cls, details: OrderDetails, **overrides: Any) -> "Order":
        fields: Dict[str, Any] = {
            "order_number": details.order_number,
            "user_id": details.user_id,
            "full_name": details.full_name,
            "phone": details.phone,
            "address": details.address,
            "items": [item.model_copy() for item in details.items],
            "subtotal": details.computed_subtotal(),
            "delivery_fee": details.delivery_fee,
            "total": details.computed_total(),
            "payment_method": details.payment_method,
        }
        fields.update(overrides)
        return cls(**fields)


# ============================================================================
# SECTION 5: DARAJA STK CALLBACK ENVELOPE
# ============================================================================

class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    def metadata_value(self, name: str) -> Any:
        if not self.callback_metadata:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class CallbackEnvelope(BaseModel):
    body: CallbackBody = Field(alias="Body")


CALLBACK_ACK: Dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}


# ============================================================================
# SECTION 6: API REQUESTS / RESPONSES
# ============================================================================

class InitiatePaymentRequest(WireModel):
    phone: str = Field(min_length=1)
    amount: float = Field(gt=0)
    order_details: OrderDetails = Field(alias="orderDetails")
    unpaid_order_id: Optional[str] = Field(default=None, alias="unpaidOrderId")


class InitiatePaymentResponse(WireModel):
    checkout_request_id: str = Field(alias="checkoutRequestID")


class PaymentStatusRequest(WireModel):
    checkout_request_id: str = Field(alias="checkoutRequestID", min_length=1)


class PaymentStatusResponse(WireModel):
    status: PaymentStatus
    message: Optional[str] = None
    final_order: Optional[Order] = Field(default=None, alias="finalOrder")


class UnpaidOrderRequest(WireModel):
    order_details: OrderDetails = Field(alias="orderDetails")


class CancelOrderRequest(WireModel):
    order_id: str = Field(alias="orderId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)


class RemoveItemRequest(WireModel):
    order_id: str = Field(alias="orderId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    item_id: str = Field(alias="itemId", min_length=1)

    @field_validator("item_id", mode="before")
    @classmethod
    def _coerce_item_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class VerifyReceiptRequest(WireModel):
    order_number: str = Field(alias="orderNumber", min_length=1)
