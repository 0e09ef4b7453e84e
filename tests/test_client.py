"""
Tests: Cart store and order submission client.
"""

import json

import httpx
import pytest

from client.cart import CartStore
from client.checkout_client import OrderSubmissionClient
from client.poller import PaymentStatusPoller, PollOutcome
from payments.errors import ProviderInitiationError, ValidationError

CATALOGUE = {
    "p1": {"name": "Sukuma Wiki", "price": 30, "unit": "bunch"},
    "p2": {"name": "Milk 500ml", "price": 60, "unit": "packet"},
}


# ============================================================================
# Cart
# ============================================================================


class TestCartStore:

    def test_add_update_remove(self):
        cart = CartStore()
        cart.add({"id": "p1", "name": "Sukuma Wiki", "price": 30})
        cart.add({"id": "p1", "name": "Sukuma Wiki", "price": 30})
        cart.add({"id": "p2", "name": "Milk 500ml", "price": 60})

        assert [(item.id, item.quantity) for item in cart.items] == [("p1", 2), ("p2", 1)]
        assert cart.subtotal() == 120

        cart.update_quantity("p2", 3)
        assert cart.get("p2").quantity == 3

        cart.update_quantity("p2", 0)
        assert cart.get("p2") is None
        assert cart.remove("p1")
        assert cart.is_empty

    def test_stock_limit(self):
        cart = CartStore()
        cart.add({"id": "p1", "name": "Eggs"}, stock=1)
        with pytest.raises(ValueError, match="Max stock reached"):
            cart.add({"id": "p1", "name": "Eggs"}, stock=1)

    def test_persists_to_json_file(self, tmp_path):
        path = tmp_path / "cart.json"
        cart = CartStore(path)
        cart.add({"id": 5, "name": "Bread", "price": 65, "unit": "loaf"}, quantity=2)

        reloaded = CartStore(path)
        assert [(item.id, item.quantity, item.unit) for item in reloaded.items] == [("5", 2, "loaf")]

        reloaded.clear()
        assert json.loads(path.read_text()) == []

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "cart.json"
        path.write_text("{not json")
        assert CartStore(path).is_empty


# ============================================================================
# Order submission
# ============================================================================


class Storefront:
    """MockTransport handler for the storefront API."""

    def __init__(self, statuses=None, initiate=None):
        self.statuses = list(statuses or [{"status": "paid", "finalOrder": {"order_number": "TTG-1"}}])
        self.initiate = initiate or (200, {"checkoutRequestID": "ws_CO_1"})
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append((request.url.path, body))
        if request.url.path == "/initiateMpesaPayment":
            return httpx.Response(self.initiate[0], json=self.initiate[1])
        if request.url.path == "/getPaymentStatus":
            polls = sum(1 for path, _ in self.calls if path == "/getPaymentStatus")
            return httpx.Response(200, json=self.statuses[min(polls, len(self.statuses)) - 1])
        if request.url.path == "/orders/unpaid":
            order = {"id": "o1", "order_number": body["orderDetails"]["orderNumber"]}
            return httpx.Response(200, json={"success": True, "order": order})
        return httpx.Response(404, json={"error": "Not found."})


def make_client(storefront, cart):
    http = httpx.AsyncClient(transport=httpx.MockTransport(storefront), base_url="https://shop.example")
    now = [0.0]

    async def sleep(seconds):
        now[0] += seconds

    poller = PaymentStatusPoller(http, cart=cart, clock=lambda: now[0], sleep=sleep)
    return OrderSubmissionClient(http, cart, CATALOGUE, poller=poller)


@pytest.fixture
def cart():
    cart = CartStore()
    cart.add({"id": "p1"}, quantity=2)
    cart.add({"id": "p2"})
    return cart


class TestOrderSubmissionClient:

    def test_builds_order_details_from_catalogue(self, cart):
        client = make_client(Storefront(), cart)

        details = client.build_order_details("u1", "Jane Wanjiku", "0712345678", "Westlands")

        assert details.order_number.startswith("TTG-")
        assert [(i.name, i.price, i.unit) for i in details.items] == [
            ("Sukuma Wiki", 30, "bunch"),
            ("Milk 500ml", 60, "packet"),
        ]
        assert (details.subtotal, details.delivery_fee, details.total) == (120, 150, 270)

    def test_empty_cart(self):
        with pytest.raises(ValidationError):
            make_client(Storefront(), CartStore()).build_order_details("u1", "Jane", "0712345678", "Westlands")

    @pytest.mark.asyncio
    async def test_mpesa_payment_polls_until_paid(self, cart):
        storefront = Storefront(statuses=[
            {"status": "pending"},
            {"status": "paid", "finalOrder": {"order_number": "TTG-1"}},
        ])
        client = make_client(storefront, cart)
        details = client.build_order_details("u1", "Jane", "0712345678", "Westlands")

        result = await client.place_order(details)

        assert result.outcome is PollOutcome.PAID
        assert result.requests == 2
        path, body = storefront.calls[0]
        assert path == "/initiateMpesaPayment"
        assert body["phone"] == "0712345678"
        assert body["amount"] == 270
        assert body["orderDetails"]["orderNumber"] == details.order_number
        assert body["orderDetails"]["userId"] == "u1"
        assert cart.is_empty

    @pytest.mark.asyncio
    async def test_initiation_error_carries_server_message(self, cart):
        storefront = Storefront(initiate=(502, {"error": "Bad Request - Invalid PhoneNumber"}))
        client = make_client(storefront, cart)
        details = client.build_order_details("u1", "Jane", "0712345678", "Westlands")

        with pytest.raises(ProviderInitiationError, match="Invalid PhoneNumber"):
            await client.place_order(details)

        assert [path for path, _ in storefront.calls] == ["/initiateMpesaPayment"]
        assert not cart.is_empty

    @pytest.mark.asyncio
    async def test_pay_on_delivery_clears_cart(self, cart):
        storefront = Storefront()
        client = make_client(storefront, cart)
        details = client.build_order_details("u1", "Jane", "0712345678", "Westlands", payment_method="delivery")

        order = await client.place_order(details)

        assert order["order_number"] == details.order_number
        assert storefront.calls[0][0] == "/orders/unpaid"
        assert cart.is_empty
