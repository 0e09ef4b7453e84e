"""
Storage Interfaces
==================
Two deliberately separate abstractions:

- IPaymentStateStore: fast key-value state addressed by CheckoutRequestID
  (PendingPayment, PublicStatus, per-id processing lock). Redis in
  production.
- IOrderStore: durable tabular paid/unpaid order rows. PostgreSQL in
  production.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from schemas.payments import Order, OrderItem, PaymentStatus, PendingPayment, PublicStatus


class IPaymentStateStore(ABC):
    """Per-key atomic payment state shared by all handler instances."""

    @abstractmethod
    async def create_pending(self, pending: PendingPayment, status: PublicStatus) -> bool:
        """
        Write PendingPayment and its PublicStatus as one unit.
        Returns False (writing nothing) if a PendingPayment already exists for the id.
        """

    @abstractmethod
    async def get_pending(self, checkout_request_id: str) -> Optional[PendingPayment]:
        pass

    @abstractmethod
    async def delete_pending(self, checkout_request_id: str) -> bool:
        """Returns False if the record was already gone."""

    @abstractmethod
    async def list_pending(self, created_before: datetime) -> List[PendingPayment]:
        pass

    @abstractmethod
    async def acquire_lock(self, checkout_request_id: str, holder_id: str, ttl_seconds: int) -> bool:
        """Equivalent to: SET lock holder_id NX EX ttl"""

    @abstractmethod
    async def release_lock(self, checkout_request_id: str, holder_id: str) -> bool:
        """Release only if holder_id still owns the lock."""

    @abstractmethod
    async def get_status(self, checkout_request_id: str) -> Optional[PublicStatus]:
        pass

    @abstractmethod
    async def transition_status(
        self,
        checkout_request_id: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PublicStatus:
        """
        Move a status forward and return the stored record.
        A terminal record is never changed; the existing record is returned as-is.
        """

    async def close(self):
        pass


class IOrderStore(ABC):
    """paid_orders / unpaid_orders tables."""

    @abstractmethod
    async def insert_paid(self, order: Order) -> Optional[Order]:
        """
        Insert into paid_orders. Returns None if a row for the same
        checkout_request_id already exists. Raises DuplicateOrderNumberError
        if the order number is taken by another paid order.
        """

    @abstractmethod
    async def insert_unpaid(self, order: Order) -> Order:
        """Raises DuplicateOrderNumberError if the order number is taken."""

    @abstractmethod
    async def get_paid_by_checkout_id(self, checkout_request_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_unpaid(self, order_id: str, user_id: Optional[str] = None) -> Optional[Order]:
        pass

    @abstractmethod
    async def delete_unpaid(self, order_id: str, user_id: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    async def update_unpaid_items(
        self,
        order_id: str,
        items: List[OrderItem],
        subtotal: float,
        delivery_fee: float,
        total: float,
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def order_number_exists(self, order_number: str) -> bool:
        """True if the number is used in either table."""

    @abstractmethod
    async def find_superseded_unpaid(self, limit: int = 100) -> List[Order]:
        """Unpaid rows that a paid row was created from."""

    async def close(self):
        pass
