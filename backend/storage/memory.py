"""
In-Memory Storage
=================
asyncio.Lock-guarded implementations of the storage interfaces for
development and tests. Swap for Redis/Postgres in production.
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from payments.errors import DuplicateOrderNumberError
from storage.base import IOrderStore, IPaymentStateStore
from schemas.payments import (
    Order,
    OrderItem,
    PaymentStatus,
    PendingPayment,
    PublicStatus,
    utcnow,
)


class InMemoryPaymentStateStore(IPaymentStateStore):
    """Single-process stand-in for the Redis payment state store."""

    def __init__(self, clock=None):
        self._pending: Dict[str, PendingPayment] = {}
        self._statuses: Dict[str, PublicStatus] = {}
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.monotonic

    async def create_pending(self, pending: PendingPayment, status: PublicStatus) -> bool:
        async with self._lock:
            if pending.checkout_request_id in self._pending:
                return False
            self._pending[pending.checkout_request_id] = pending
            self._statuses[status.checkout_request_id] = status
            return True

    async def get_pending(self, checkout_request_id: str) -> Optional[PendingPayment]:
        async with self._lock:
            return self._pending.get(checkout_request_id)

    async def delete_pending(self, checkout_request_id: str) -> bool:
        async with self._lock:
            return self._pending.pop(checkout_request_id, None) is not None

    async def list_pending(self, created_before: datetime) -> List[PendingPayment]:
        async with self._lock:
            return [p for p in self._pending.values() if p.created_at < created_before]

    async def acquire_lock(self, checkout_request_id: str, holder_id: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = self._clock()
            current = self._locks.get(checkout_request_id)
            if current and current[1] > now:
                return False
            self._locks[checkout_request_id] = (holder_id, now + ttl_seconds)
            return True

    async def release_lock(self, checkout_request_id: str, holder_id: str) -> bool:
        async with self._lock:
            current = self._locks.get(checkout_request_id)
            if not current or current[0] != holder_id:
                return False
            del self._locks[checkout_request_id]
            return True

    async def get_status(self, checkout_request_id: str) -> Optional[PublicStatus]:
        async with self._lock:
            return self._statuses.get(checkout_request_id)

    async def transition_status(
        self,
        checkout_request_id: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PublicStatus:
        async with self._lock:
            current = self._statuses.get(checkout_request_id)
            if current and current.status.is_terminal:
                return current
            updated = PublicStatus(
                checkout_request_id=checkout_request_id,
                status=status,
                reason=reason,
                user_id=user_id or (current.user_id if current else None),
                updated_at=utcnow(),
            )
            self._statuses[checkout_request_id] = updated
            return updated

    async def close(self):
        pass


class InMemoryOrderStore(IOrderStore):
    """Two dicts standing in for paid_orders / unpaid_orders."""

    def __init__(self):
        self._paid: Dict[str, Order] = {}
        self._unpaid: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    @property
    def paid_orders(self) -> List[Order]:
        return list(self._paid.values())

    @property
    def unpaid_orders(self) -> List[Order]:
        return list(self._unpaid.values())

    async def insert_paid(self, order: Order) -> Optional[Order]:
        async with self._lock:
            if order.checkout_request_id and any(
                o.checkout_request_id == order.checkout_request_id for o in self._paid.values()
            ):
                return None
            if any(o.order_number == order.order_number for o in self._paid.values()):
                raise DuplicateOrderNumberError(order_number=order.order_number)
            stored = order.model_copy(update={"id": order.id or str(uuid.uuid4())})
            self._paid[stored.id] = stored
            return stored

    async def insert_unpaid(self, order: Order) -> Order:
        async with self._lock:
            if any(o.order_number == order.order_number for o in self._unpaid.values()):
                raise DuplicateOrderNumberError(order_number=order.order_number)
            stored = order.model_copy(update={"id": order.id or str(uuid.uuid4())})
            self._unpaid[stored.id] = stored
            return stored

    async def get_paid_by_checkout_id(self, checkout_request_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._paid.values():
                if order.checkout_request_id == checkout_request_id:
                    return order
            return None

    async def get_unpaid(self, order_id: str, user_id: Optional[str] = None) -> Optional[Order]:
        async with self._lock:
            order = self._unpaid.get(order_id)
            if order and user_id is not None and order.user_id != user_id:
                return None
            return order

    async def delete_unpaid(self, order_id: str, user_id: Optional[str] = None) -> bool:
        async with self._lock:
            order = self._unpaid.get(order_id)
            if not order or (user_id is not None and order.user_id != user_id):
                return False
            del self._unpaid[order_id]
            return True

    async def update_unpaid_items(
        self,
        order_id: str,
        items: List[OrderItem],
        subtotal: float,
        delivery_fee: float,
        total: float,
    ) -> Optional[Order]:
        async with self._lock:
            order = self._unpaid.get(order_id)
            if not order:
                return None
            updated = order.model_copy(update={
                "items": list(items),
                "subtotal": subtotal,
                "delivery_fee": delivery_fee,
                "total": total,
            })
            self._unpaid[order_id] = updated
            return updated

    async def order_number_exists(self, order_number: str) -> bool:
        async with self._lock:
            return any(
                o.order_number == order_number
                for o in list(self._paid.values()) + list(self._unpaid.values())
            )

    async def find_superseded_unpaid(self, limit: int = 100) -> List[Order]:
        async with self._lock:
            sources = {
                (o.source_unpaid_order_id, o.user_id)
                for o in self._paid.values()
                if o.source_unpaid_order_id
            }
            return [o for oid, o in self._unpaid.items() if (oid, o.user_id) in sources][:limit]

    async def close(self):
        pass
