"""
Tests: Reconciliation sweep removes superseded unpaid rows and reaps
abandoned pending payments.
"""

from datetime import timedelta

import pytest

from conftest import order_details
from schemas.payments import Order, OrderDetails, PaymentStatus, PendingPayment, PublicStatus, utcnow
from tasks.reconciliation import NO_CONFIRMATION_REASON, ReconciliationConfig, Reconciler


async def seed_pending(state_store, checkout_request_id, age_seconds):
    pending = PendingPayment(
        checkout_request_id=checkout_request_id,
        order_details=OrderDetails.model_validate(order_details()),
        created_at=utcnow() - timedelta(seconds=age_seconds),
    )
    await state_store.create_pending(pending, PublicStatus(checkout_request_id=checkout_request_id, user_id="u1"))


@pytest.fixture
def reconciler(state_store, order_store) -> Reconciler:
    return Reconciler(state_store, order_store, ReconciliationConfig(pending_max_age=1800))


class TestReconciliationCycle:

    @pytest.mark.asyncio
    async def test_reaps_only_abandoned_payments(self, reconciler, state_store):
        await seed_pending(state_store, "ws_CO_old", age_seconds=3600)
        await seed_pending(state_store, "ws_CO_new", age_seconds=60)

        report = await reconciler.run_reconciliation_cycle()

        assert report["pending_payments_reaped"] == 1
        old = await state_store.get_status("ws_CO_old")
        assert old.status is PaymentStatus.CANCELLED
        assert old.reason == NO_CONFIRMATION_REASON
        assert old.user_id == "u1"
        assert await state_store.get_pending("ws_CO_old") is None

        assert (await state_store.get_status("ws_CO_new")).status is PaymentStatus.PENDING
        assert await state_store.get_pending("ws_CO_new") is not None

    @pytest.mark.asyncio
    async def test_terminal_status_survives_reaping(self, reconciler, state_store):
        await seed_pending(state_store, "ws_CO_old", age_seconds=3600)
        await state_store.transition_status("ws_CO_old", PaymentStatus.PAID)

        await reconciler.run_reconciliation_cycle()

        assert (await state_store.get_status("ws_CO_old")).status is PaymentStatus.PAID
        assert await state_store.get_pending("ws_CO_old") is None

    @pytest.mark.asyncio
    async def test_skips_payment_being_processed(self, reconciler, state_store):
        await seed_pending(state_store, "ws_CO_old", age_seconds=3600)
        await state_store.acquire_lock("ws_CO_old", "callback", 30)

        report = await reconciler.run_reconciliation_cycle()

        assert report["pending_payments_reaped"] == 0
        assert await state_store.get_pending("ws_CO_old") is not None

    @pytest.mark.asyncio
    async def test_removes_unpaid_row_superseded_by_paid_row(self, reconciler, order_store):
        stale = await order_store.insert_unpaid(Order(order_number="TTG-1", user_id="u1"))
        untouched = await order_store.insert_unpaid(Order(order_number="TTG-2", user_id="u1"))
        await order_store.insert_paid(Order(
            order_number="TTG-1",
            user_id="u1",
            payment_status="paid",
            checkout_request_id="ws_CO_1",
            source_unpaid_order_id=stale.id,
        ))

        report = await reconciler.run_reconciliation_cycle()

        assert report["superseded_unpaid_removed"] == 1
        assert [o.id for o in order_store.unpaid_orders] == [untouched.id]

    @pytest.mark.asyncio
    async def test_stats(self, reconciler, state_store):
        await seed_pending(state_store, "ws_CO_old", age_seconds=3600)

        before = await reconciler.get_reconciliation_stats()
        await reconciler.run_reconciliation_cycle()
        after = await reconciler.get_reconciliation_stats()

        assert before["stale_pending_payments"] == 1
        assert before["cycles"] == 0
        assert after["stale_pending_payments"] == 0
        assert after["cycles"] == 1
        assert after["last_report"]["pending_payments_reaped"] == 1


class StopLoop(Exception):
    pass


@pytest.mark.asyncio
async def test_loop_survives_cycle_errors(state_store, order_store):
    class BrokenOrders(type(order_store)):
        async def find_superseded_unpaid(self, limit=100):
            raise RuntimeError("database down")

    reconciler = Reconciler(state_store, BrokenOrders(), ReconciliationConfig(check_interval=5))
    sleeps = []

    async def stop_after_two(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise StopLoop

    with pytest.raises(StopLoop):
        await reconciler.reconciliation_loop(sleep=stop_after_two)

    assert sleeps == [5, 5]


@pytest.mark.asyncio
async def test_disabled_loop_returns_immediately(state_store, order_store):
    reconciler = Reconciler(state_store, order_store, ReconciliationConfig(enabled=False))
    await reconciler.reconciliation_loop()
    assert reconciler.cycles == 0
