"""
Shared test fixtures and helpers for the payments test suite.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from payments.mpesa_client import DarajaClient, MpesaConfig
from storage.memory import InMemoryOrderStore, InMemoryPaymentStateStore


# ============================================================================
# Daraja stub
# ============================================================================


class DarajaStub:
    """MockTransport handler imitating the token and STK push endpoints."""

    def __init__(self, checkout_request_id: str = "ws_CO_1"):
        self.checkout_request_id = checkout_request_id
        self.token_calls = 0
        self.stk_payloads: List[Dict[str, Any]] = []
        self.stk_headers: List[httpx.Headers] = []
        self.stk_response: Optional[Tuple[int, Dict[str, Any]]] = None
        self.token_response: Optional[Tuple[int, Dict[str, Any]]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            if self.token_response:
                return httpx.Response(self.token_response[0], json=self.token_response[1])
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            self.stk_payloads.append(json.loads(request.content))
            self.stk_headers.append(request.headers)
            if self.stk_response:
                return httpx.Response(self.stk_response[0], json=self.stk_response[1])
            return httpx.Response(200, json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": self.checkout_request_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        return httpx.Response(404, json={"errorMessage": "unknown path"})


def make_daraja(stub: DarajaStub, config: MpesaConfig, clock=None) -> DarajaClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(stub), base_url=config.base_url)
    if clock is None:
        return DarajaClient(config, http_client=http)
    return DarajaClient(config, http_client=http, clock=clock)


# ============================================================================
# Payload builders
# ============================================================================


def order_details(order_number: str = "TTG-123456", user_id: str = "u1", **extra: Any) -> Dict[str, Any]:
    details = {
        "orderNumber": order_number,
        "userId": user_id,
        "items": [
            {"id": "p1", "name": "Sukuma Wiki", "price": 30, "quantity": 2, "unit": "bunch"},
            {"id": "p2", "name": "Milk 500ml", "price": 60, "quantity": 1, "unit": "packet"},
        ],
    }
    details.update(extra)
    return details


def initiation_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "phone": "0712345678",
        "amount": 500,
        "orderDetails": order_details(),
    }
    payload.update(overrides)
    return payload


def callback_payload(
    checkout_request_id: str = "ws_CO_1",
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: Optional[str] = "NLJ7RT61SV",
) -> Dict[str, Any]:
    stk_callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": 500.0},
            {"Name": "TransactionDate", "Value": 20240101120000},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]
        if receipt is not None:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        stk_callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk_callback}}


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mpesa_config() -> MpesaConfig:
    return MpesaConfig(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="passkey",
        callback_base_url="https://shop.example",
    )


@pytest.fixture
def daraja_stub() -> DarajaStub:
    return DarajaStub()


@pytest.fixture
def daraja(daraja_stub, mpesa_config) -> DarajaClient:
    return make_daraja(daraja_stub, mpesa_config)


@pytest.fixture
def state_store() -> InMemoryPaymentStateStore:
    return InMemoryPaymentStateStore()


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()
