# payments/mpesa_client.py
# ============================================================================
# TOWN TREASURE GROCERIES — SAFARICOM DARAJA CLIENT
# ============================================================================
# Purpose: The only code that talks to the M-Pesa token / STK push endpoints
#
# - OAuth client-credentials token, cached until shortly before expiry
# - Lipa Na M-Pesa Online (STK push) with the derived request password
# - Provider rejections surface as ProviderInitiationError with the
#   provider's own message
# ============================================================================

import asyncio
import base64
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from payments.errors import ProviderInitiationError, ValidationError

logger = structlog.get_logger().bind(component="daraja_client")

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"
TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Kenya has no daylight saving; Daraja expects EAT timestamps.
EAT = timezone(timedelta(hours=3))

COUNTRY_CODE = "254"
_MSISDN_RE = re.compile(r"^254\d{9}$")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

@dataclass
class MpesaConfig:
    """Daraja credentials and endpoints."""
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_base_url: str
    env: str = "sandbox"
    timeout_seconds: float = 30.0
    token_refresh_margin_seconds: int = 60

    @classmethod
    def from_env(cls) -> "MpesaConfig":
        return cls(
            consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
            consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
            shortcode=os.getenv("MPESA_SHORTCODE", ""),
            passkey=os.getenv("MPESA_PASSKEY", ""),
            callback_base_url=os.getenv("MPESA_CALLBACK_BASE_URL", "http://localhost:8000"),
            env=os.getenv("MPESA_ENV", "sandbox"),
            timeout_seconds=float(os.getenv("MPESA_TIMEOUT", "30.0")),
        )

    @property
    def base_url(self) -> str:
        return SANDBOX_BASE_URL if self.env == "sandbox" else PRODUCTION_BASE_URL

    @property
    def callback_url(self) -> str:
        return f"{self.callback_base_url.rstrip('/')}/mpesaCallback"


# ============================================================================
# SECTION 2: REQUEST HELPERS
# ============================================================================

def normalize_phone(phone: str) -> str:
    """07XXXXXXXX / +2547XXXXXXXX / 2547XXXXXXXX -> 2547XXXXXXXX."""
    cleaned = re.sub(r"[\s\-()]", "", phone or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("0"):
        cleaned = COUNTRY_CODE + cleaned[1:]
    if not _MSISDN_RE.match(cleaned):
        raise ValidationError(f"Invalid phone number: {phone}", field="phone")
    return cleaned


def build_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAT)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


class StkPushResult(BaseModel):
    """Accepted STK push."""
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    response_description: Optional[str] = None
    customer_message: Optional[str] = None


def _provider_message(body: Dict[str, Any], fallback: str) -> str:
    for key in ("errorMessage", "ResponseDescription", "CustomerMessage"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return fallback


# ============================================================================
# SECTION 3: CLIENT
# ============================================================================

class DarajaClient:
    """
    Async Daraja API client.

    Construct once per process and pass it to the initiation handler; the
    underlying httpx client and the cached token live as long as this object.
    """

    def __init__(
        self,
        config: MpesaConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self):
        await self._client.aclose()

    async def get_access_token(self) -> str:
        """Return a cached OAuth token, fetching a new one when close to expiry."""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            try:
                response = await self._client.get(
                    TOKEN_PATH,
                    auth=(self.config.consumer_key, self.config.consumer_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                logger.error("token_request_failed", error=str(e))
                raise ProviderInitiationError("Could not get M-Pesa auth token.") from e

            if response.status_code != 200:
                logger.error("token_rejected", status=response.status_code, body=response.text[:200])
                raise ProviderInitiationError("Could not get M-Pesa auth token.")

            try:
                data = response.json()
            except ValueError as e:
                raise ProviderInitiationError("Could not get M-Pesa auth token.") from e

            token = data.get("access_token")
            if not token:
                logger.error("token_missing", keys=list(data.keys()))
                raise ProviderInitiationError("Could not get M-Pesa auth token.")

            expires_in = int(data.get("expires_in", 3599))
            self._token = token
            self._token_expires_at = self._clock() + max(
                expires_in - self.config.token_refresh_margin_seconds, 0
            )
            logger.debug("token_refreshed", expires_in=expires_in)
            return token

    async def stk_push(
        self,
        phone: str,
        amount: float,
        account_reference: str,
        description: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> StkPushResult:
        """Send an STK push to the payer's handset."""
        token = await self.get_access_token()
        timestamp = timestamp or build_timestamp()
        msisdn = normalize_phone(phone)

        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": build_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(round(amount)),
            "PartyA": msisdn,
            "PartyB": self.config.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description or f"Payment for Order {account_reference}",
        }

        try:
            response = await self._client.post(
                STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error("stk_push_unreachable", error=str(e), account_reference=account_reference)
            raise ProviderInitiationError("Failed to reach M-Pesa. Please try again.") from e

        # Daraja reports rejections in the JSON body, keep it when present
        try:
            body = response.json()
        except ValueError:
            body = {}

        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or "errorCode" in body:
            message = _provider_message(body, "Failed to initiate M-Pesa payment.")
            logger.warning(
                "stk_push_rejected",
                status=response.status_code,
                error_code=body.get("errorCode"),
                message=message,
            )
            raise ProviderInitiationError(message, error_code=body.get("errorCode"))

        if str(body.get("ResponseCode")) != "0" or not body.get("CheckoutRequestID"):
            message = _provider_message(body, "STK push was not accepted.")
            logger.warning("stk_push_not_accepted", response_code=body.get("ResponseCode"), message=message)
            raise ProviderInitiationError(message, response_code=body.get("ResponseCode"))

        logger.info(
            "stk_push_accepted",
            checkout_request_id=body["CheckoutRequestID"],
            account_reference=account_reference,
        )
        return StkPushResult(
            checkout_request_id=body["CheckoutRequestID"],
            merchant_request_id=body.get("MerchantRequestID"),
            response_description=body.get("ResponseDescription"),
            customer_message=body.get("CustomerMessage"),
        )
