# client/poller.py
# ============================================================================
# TOWN TREASURE GROCERIES — PAYMENT STATUS POLLER
# ============================================================================
# Purpose: Wait for an M-Pesa payment to reach a terminal status
#
# - One POST /getPaymentStatus per tick, never more than one in flight
# - The overall deadline races every tick and every in-flight request;
#   when a tick lands exactly on the deadline the timeout wins
# - A 404 counts as "still initializing" during the grace window, then as
#   an invalid id
# - Any transport or server error ends the loop; there is no retry
# - Giving up is client-side only: the server keeps the authoritative state
# ============================================================================

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from client.cart import CartStore
from payments.errors import NotFoundError, PaymentError, PaymentTimeoutError

logger = structlog.get_logger().bind(component="payment_poller")

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_TIMEOUT_SECONDS = 90.0
DEFAULT_NOT_FOUND_GRACE_SECONDS = 10.0


class PollOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class PollResult:
    outcome: PollOutcome
    requests: int
    message: Optional[str] = None
    final_order: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is PollOutcome.PAID

    def raise_for_outcome(self) -> "PollResult":
        """Return self when paid, otherwise raise the matching error."""
        if self.outcome is PollOutcome.PAID:
            return self
        if self.outcome is PollOutcome.TIMEOUT:
            raise PaymentTimeoutError(self.message)
        if self.outcome is PollOutcome.NOT_FOUND:
            raise NotFoundError(self.message)
        raise PaymentError(self.message)


class PaymentStatusPoller:
    """
    Polling Client Loop.

    clock and sleep are injectable so tests can drive the loop on a fake
    timeline.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        status_path: str = "/getPaymentStatus",
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        not_found_grace: float = DEFAULT_NOT_FOUND_GRACE_SECONDS,
        cart: Optional[CartStore] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.http = http_client
        self.status_path = status_path
        self.interval = interval
        self.timeout = timeout
        self.not_found_grace = not_found_grace
        self.cart = cart
        self._clock = clock
        self._sleep = sleep

    async def wait_for_confirmation(self, checkout_request_id: str) -> PollResult:
        log = logger.bind(checkout_request_id=checkout_request_id)
        started = self._clock()
        deadline = started + self.timeout
        next_tick = started + self.interval
        requests = 0

        while True:
            if next_tick >= deadline:
                remaining = deadline - self._clock()
                if remaining > 0:
                    await self._sleep(remaining)
                return self._timed_out(requests, log)

            delay = next_tick - self._clock()
            if delay > 0:
                await self._sleep(delay)
            next_tick += self.interval

            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._timed_out(requests, log)

            requests += 1
            try:
                response = await asyncio.wait_for(
                    self.http.post(self.status_path, json={"checkoutRequestID": checkout_request_id}),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return self._timed_out(requests, log)
            except httpx.HTTPError as e:
                log.warning("poll_request_failed", error=str(e), requests=requests)
                return PollResult(PollOutcome.ERROR, requests, message=f"Could not check payment status: {e}")

            body = _json_or_empty(response)

            if response.status_code == 404:
                if self._clock() - started < self.not_found_grace:
                    log.debug("poll_status_not_created_yet", requests=requests)
                    continue
                log.info("poll_status_not_found", requests=requests)
                return PollResult(PollOutcome.NOT_FOUND, requests, message=body.get("error") or "Payment not found.")

            if response.status_code >= 400:
                message = body.get("error") or "Polling error."
                log.warning("poll_server_error", status=response.status_code, error=message)
                return PollResult(PollOutcome.ERROR, requests, message=message)

            status = body.get("status")
            if status == PollOutcome.PAID.value:
                if self.cart is not None:
                    self.cart.clear()
                log.info("payment_confirmed", requests=requests)
                return PollResult(
                    PollOutcome.PAID,
                    requests,
                    message=body.get("message"),
                    final_order=body.get("finalOrder"),
                )

            if status in (PollOutcome.FAILED.value, PollOutcome.CANCELLED.value):
                message = body.get("message") or "The transaction was cancelled."
                log.info("payment_unsuccessful", status=status, reason=message, requests=requests)
                return PollResult(PollOutcome(status), requests, message=message)

    def _timed_out(self, requests: int, log) -> PollResult:
        log.info("poll_timed_out", requests=requests, timeout=self.timeout)
        return PollResult(PollOutcome.TIMEOUT, requests, message=PaymentTimeoutError.default_message)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
