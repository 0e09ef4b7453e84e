"""
Reconciliation Loop - The Safety Net
====================================
Background task that cleans up what the callback path can leave behind.

The Unpaid -> Paid move is an insert into paid_orders followed by a delete
from unpaid_orders. A crash between the two leaves the order in both tables;
the paid row is authoritative and the unpaid row is removed here.

Callbacks that never arrive leave a PendingPayment and a pending
PublicStatus behind. Once older than PENDING_PAYMENT_MAX_AGE they are moved
to `cancelled` and deleted, under the same per-id lock the callback handler
takes.

Features:
- Runs every 5 minutes
- Reaps pending payments older than 30 minutes
- Deletes unpaid rows superseded by a paid row
- Configurable thresholds
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from schemas.payments import PaymentStatus, utcnow
from storage.base import IOrderStore, IPaymentStateStore

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation")

NO_CONFIRMATION_REASON = "No payment confirmation was received from M-Pesa"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation loop configuration"""

    def __init__(
        self,
        check_interval: int = 300,
        pending_max_age: int = 1800,
        batch_size: int = 100,
        lock_ttl: int = 30,
        enabled: bool = True,
    ):
        # How often to sweep (seconds)
        self.CHECK_INTERVAL = check_interval
        # Age after which a pending payment is abandoned (seconds)
        self.PENDING_MAX_AGE = pending_max_age
        # Maximum superseded unpaid rows removed per cycle
        self.BATCH_SIZE = batch_size
        self.LOCK_TTL = lock_ttl
        self.ENABLED = enabled

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        return cls(
            check_interval=int(os.getenv("RECONCILIATION_INTERVAL", "300")),
            pending_max_age=int(os.getenv("PENDING_PAYMENT_MAX_AGE", "1800")),
            batch_size=int(os.getenv("RECONCILIATION_BATCH_SIZE", "100")),
            lock_ttl=int(os.getenv("PAYMENT_LOCK_TTL", "30")),
            enabled=os.getenv("RECONCILIATION_ENABLED", "true").lower() == "true",
        )


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

class Reconciler:
    """
    One sweep = remove superseded unpaid rows, then reap abandoned payments.

    Example:
        reconciler = Reconciler(state_store, order_store, ReconciliationConfig.from_env())
        report = await reconciler.run_reconciliation_cycle()
    """

    def __init__(
        self,
        state_store: IPaymentStateStore,
        order_store: IOrderStore,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state_store
        self.orders = order_store
        self.config = config or ReconciliationConfig()
        self._clock = clock
        self.cycles = 0
        self.last_report: Optional[Dict[str, Any]] = None

    async def run_reconciliation_cycle(self) -> Dict[str, Any]:
        started_at = self._clock()
        removed_unpaid = await self._remove_superseded_unpaid()
        reaped = await self._reap_abandoned_payments(started_at)

        report = {
            "ran_at": started_at.isoformat(),
            "superseded_unpaid_removed": removed_unpaid,
            "pending_payments_reaped": reaped,
        }
        self.cycles += 1
        self.last_report = report

        if removed_unpaid or reaped:
            logger.warning("reconciliation_cycle_changes", **report)
        else:
            logger.debug("reconciliation_cycle_clean")
        return report

    async def _remove_superseded_unpaid(self) -> int:
        superseded = await self.orders.find_superseded_unpaid(limit=self.config.BATCH_SIZE)
        removed = 0
        for order in superseded:
            if await self.orders.delete_unpaid(order.id):
                removed += 1
                logger.info(
                    "superseded_unpaid_removed",
                    order_id=order.id,
                    order_number=order.order_number,
                )
        return removed

    async def _reap_abandoned_payments(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.config.PENDING_MAX_AGE)
        stale = await self.state.list_pending(created_before=cutoff)

        reaped = 0
        for pending in stale:
            checkout_request_id = pending.checkout_request_id
            holder_id = str(uuid.uuid4())
            if not await self.state.acquire_lock(checkout_request_id, holder_id, self.config.LOCK_TTL):
                # A late callback is being processed right now
                continue

            try:
                if await self.state.get_pending(checkout_request_id) is None:
                    continue
                status = await self.state.transition_status(
                    checkout_request_id,
                    PaymentStatus.CANCELLED,
                    reason=NO_CONFIRMATION_REASON,
                    user_id=pending.order_details.user_id,
                )
                await self.state.delete_pending(checkout_request_id)
                reaped += 1
                logger.info(
                    "pending_payment_reaped",
                    checkout_request_id=checkout_request_id,
                    order_number=pending.order_details.order_number,
                    status=status.status.value,
                )
            finally:
                await self.state.release_lock(checkout_request_id, holder_id)

        return reaped

    async def reconciliation_loop(self, sleep: Callable[[float], Any] = asyncio.sleep):
        """Run cycles forever; cancel the task to stop."""
        logger.info(
            "reconciliation_loop_started",
            interval=self.config.CHECK_INTERVAL,
            pending_max_age=self.config.PENDING_MAX_AGE,
            enabled=self.config.ENABLED,
        )

        if not self.config.ENABLED:
            logger.info("reconciliation_loop_disabled")
            return

        while True:
            try:
                await self.run_reconciliation_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("reconciliation_loop_error", error=str(e), error_type=type(e).__name__)

            # Sleep until next check
            await sleep(self.config.CHECK_INTERVAL)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def get_reconciliation_stats(self) -> Dict[str, Any]:
        """Reconciliation statistics for monitoring"""
        cutoff = self._clock() - timedelta(seconds=self.config.PENDING_MAX_AGE)
        stale = await self.state.list_pending(created_before=cutoff)
        superseded = await self.orders.find_superseded_unpaid(limit=self.config.BATCH_SIZE)

        return {
            "enabled": self.config.ENABLED,
            "interval_seconds": self.config.CHECK_INTERVAL,
            "pending_max_age_seconds": self.config.PENDING_MAX_AGE,
            "cycles": self.cycles,
            "stale_pending_payments": len(stale),
            "superseded_unpaid_orders": len(superseded),
            "last_report": self.last_report,
        }
