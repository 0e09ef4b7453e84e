"""
Tests: Pay-on-delivery checkout, unpaid order management and pricing.
"""

import re

import pytest

from conftest import order_details
from payments.checkout import CheckoutService
from payments.delivery_zones import find_zone, get_delivery_fee
from payments.errors import DuplicateOrderNumberError, NotFoundError, OrderUpdateError, ValidationError
from payments.orders import OrderService
from payments.pricing import compute_totals, generate_order_number, regenerate_order_number
from schemas.payments import Order, OrderItem
from storage.memory import InMemoryOrderStore


# ============================================================================
# Pricing
# ============================================================================


class TestDeliveryFees:

    @pytest.mark.parametrize("address, fee", [
        ("Westlands, Nairobi", 150),
        ("Apartment 4, Kilimani", 250),
        ("kasarani mwiki road", 350),
        ("Karen", 450),
        ("Kitengela town", 600),
        ("Thika", 800),
        ("Kibera, Olympic", 200),
        ("Somewhere unknown", 0),
        ("", 0),
        (None, 0),
    ])
    def test_fee_by_address(self, address, fee):
        assert get_delivery_fee(address) == fee

    def test_first_matching_zone_wins(self):
        assert find_zone("Ngong Road") == "Zone 3"
        assert find_zone("Ngong town") == "Zone 6"


def test_compute_totals():
    items = [OrderItem(id="p1", price=30, quantity=2), OrderItem(id="p2", price=60)]
    assert compute_totals(items, "Westlands") == (120, 150, 270)


def test_order_numbers():
    assert generate_order_number(now=1_700_000_123.5) == "TTG-123500"
    assert re.fullmatch(r"TTG-\d{6}-[0-9A-F]{4}", regenerate_order_number())


# ============================================================================
# Checkout
# ============================================================================


class AlwaysDuplicateStore(InMemoryOrderStore):
    async def insert_unpaid(self, order):
        raise DuplicateOrderNumberError(order_number=order.order_number)


class TestCheckoutService:

    @pytest.mark.asyncio
    async def test_records_unpaid_delivery_order(self, order_store):
        service = CheckoutService(order_store)

        order = await service.submit_unpaid({"orderDetails": order_details(address="Kilimani")})

        assert order.id
        assert order.payment_status == "unpaid"
        assert order.payment_method == "delivery"
        assert (order.subtotal, order.delivery_fee, order.total) == (120, 250, 370)
        assert order_store.unpaid_orders == [order]

    @pytest.mark.asyncio
    async def test_regenerates_taken_order_number(self, order_store):
        service = CheckoutService(order_store)
        await service.submit_unpaid({"orderDetails": order_details()})

        second = await service.submit_unpaid({"orderDetails": order_details(userId="u2")})

        assert second.order_number != "TTG-123456"
        assert len(order_store.unpaid_orders) == 2

    @pytest.mark.asyncio
    async def test_avoids_number_of_a_paid_order(self, order_store):
        await order_store.insert_paid(Order(order_number="TTG-123456", user_id="u2", checkout_request_id="ws_CO_1"))

        order = await CheckoutService(order_store).submit_unpaid({"orderDetails": order_details()})

        assert order.order_number != "TTG-123456"
        assert re.fullmatch(r"TTG-\d{6}-[0-9A-F]{4}", order.order_number)

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self):
        with pytest.raises(DuplicateOrderNumberError):
            await CheckoutService(AlwaysDuplicateStore()).submit_unpaid({"orderDetails": order_details()})

    @pytest.mark.asyncio
    async def test_rejects_invalid_payload(self, order_store):
        with pytest.raises(ValidationError):
            await CheckoutService(order_store).submit_unpaid({"orderDetails": {"orderNumber": "TTG-1"}})


# ============================================================================
# Order management
# ============================================================================


class TestOrderService:

    @pytest.mark.asyncio
    async def test_cancel_own_order(self, order_store):
        order = await order_store.insert_unpaid(Order(order_number="TTG-1", user_id="u1"))

        await OrderService(order_store).cancel({"orderId": order.id, "userId": "u1"})

        assert order_store.unpaid_orders == []

    @pytest.mark.asyncio
    async def test_cannot_cancel_someone_elses_order(self, order_store):
        order = await order_store.insert_unpaid(Order(order_number="TTG-1", user_id="u1"))

        with pytest.raises(NotFoundError):
            await OrderService(order_store).cancel({"orderId": order.id, "userId": "intruder"})
        assert len(order_store.unpaid_orders) == 1

    @pytest.mark.asyncio
    async def test_remove_item_recomputes_totals(self, order_store):
        order = await order_store.insert_unpaid(Order(
            order_number="TTG-2",
            user_id="u1",
            address="Westlands",
            items=[OrderItem(id="p1", price=30, quantity=2), OrderItem(id="p2", price=60)],
            subtotal=120,
            delivery_fee=150,
            total=270,
        ))

        updated = await OrderService(order_store).remove_item({"orderId": order.id, "userId": "u1", "itemId": "p1"})

        assert [item.id for item in updated.items] == ["p2"]
        assert (updated.subtotal, updated.delivery_fee, updated.total) == (60, 150, 210)

    @pytest.mark.asyncio
    async def test_removing_last_item_asks_to_cancel(self, order_store):
        order = await order_store.insert_unpaid(Order(
            order_number="TTG-3",
            user_id="u1",
            items=[OrderItem(id="7", price=30)],
        ))

        with pytest.raises(OrderUpdateError) as exc_info:
            await OrderService(order_store).remove_item({"orderId": order.id, "userId": "u1", "itemId": 7})

        assert exc_info.value.to_dict()["action"] == "cancel"
        assert len(order_store.unpaid_orders[0].items) == 1

    @pytest.mark.asyncio
    async def test_remove_unknown_item(self, order_store):
        order = await order_store.insert_unpaid(Order(
            order_number="TTG-4",
            user_id="u1",
            items=[OrderItem(id="p1", price=30), OrderItem(id="p2", price=60)],
        ))

        with pytest.raises(NotFoundError):
            await OrderService(order_store).remove_item({"orderId": order.id, "userId": "u1", "itemId": "p9"})

    @pytest.mark.asyncio
    async def test_verify_receipt(self, order_store):
        await order_store.insert_unpaid(Order(order_number="TTG-5", user_id="u1"))
        await order_store.insert_paid(Order(order_number="TTG-6", user_id="u1", checkout_request_id="ws_CO_6"))
        service = OrderService(order_store)

        assert await service.verify_receipt({"orderNumber": "TTG-5"})
        assert await service.verify_receipt({"orderNumber": "TTG-6"})
        assert not await service.verify_receipt({"orderNumber": "TTG-000000"})
