"""
Integration tests for requester cancellations after a driver accepted:
distance screening, rolling-window counting, charge/compensation and bans.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from dispatch_engine.database import utcnow
from dispatch_engine.exceptions import RequestAlreadyResolved, RequesterBanned, RequestNotFound
from dispatch_engine.models.cancellation import CancellationRecord
from dispatch_engine.models.driver import DriverLocation
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.models.requester import Requester
from dispatch_engine.schemas.schemas import (
    CancellationActionEnum, CancelledByEnum, RequestStatusEnum,
)
from dispatch_engine.services.pricing import to_money
from dispatch_engine.services.wallet import WalletError, WalletOutcome

AT_300M = (-4.3773, 15.300)   # ~0.3 km from pickup
AT_1KM = (-4.390, 15.300)     # ~1.1 km


@pytest.fixture
def bound_request(engine, add_driver, make_request, auto_respond):
    """A request in ``accepted`` with driver ``d-1`` bound."""
    async def _bound(position=AT_300M, requester_id="rider-1"):
        await add_driver("d-1", *position)
        auto_respond({"d-1": "accept"})
        request = await make_request(requester_id=requester_id)
        assert await engine.coordinator.run(request.id) is RequestStatusEnum.accepted
        return request

    return _bound


@pytest.fixture
def prior_cancellations(session_factory, make_request):
    async def _prior(count: int, requester_id="rider-1", near=True, age=timedelta(hours=1)):
        for _ in range(count):
            earlier = await make_request(requester_id=requester_id)
            async with session_factory() as db:
                db.add(CancellationRecord(
                    request_id=earlier.id,
                    requester_id=requester_id,
                    cancelled_by=CancelledByEnum.requester,
                    status_at_cancellation=RequestStatusEnum.accepted,
                    driver_was_near=near,
                    near_count=1,
                    created_at=utcnow() - age,
                ))
                await db.commit()

    return _prior


async def record_count(session_factory, request_id=None):
    async with session_factory() as db:
        query = select(func.count(CancellationRecord.id))
        if request_id is not None:
            query = query.where(CancellationRecord.request_id == request_id)
        return (await db.execute(query)).scalar_one()


@pytest.mark.asyncio
class TestScreening:
    async def test_first_near_cancellation_is_only_recorded(self, engine, bound_request, wallet, load, alerts):
        request = await bound_request()

        cancelled, record = await engine.cancel(request.id, "rider-1", "changed my mind")

        assert cancelled.status is RequestStatusEnum.cancelled_by_client
        assert cancelled.assigned_driver_id is None
        assert cancelled.cancelled_at is not None
        assert record.driver_was_near is True
        assert record.driver_distance_km == pytest.approx(0.3, abs=0.02)
        assert record.near_count == 1
        assert record.suspicious is False
        assert record.action_taken is CancellationActionEnum.none
        assert record.reason == "changed my mind"
        assert wallet.calls == []
        assert alerts.alerts == []
        assert (await load(DriverLocation, "d-1")).available is True

    async def test_second_near_cancellation_is_charged(
        self, engine, session_factory, bound_request, prior_cancellations, wallet, alerts, notifier,
    ):
        await prior_cancellations(1)
        request = await bound_request()
        price = request.surge_price

        _, record = await engine.cancel(request.id, "rider-1")

        assert record.suspicious is True
        assert record.near_count == 2
        assert record.action_taken is CancellationActionEnum.charged
        assert record.charge_amount == price
        assert record.compensation_amount == to_money(price * Decimal("0.8"))
        assert wallet.calls == [
            ("debit", "rider-1", price, f"cancel-fee:{request.id}"),
            ("credit", "d-1", to_money(price * Decimal("0.8")), f"cancel-comp:{request.id}"),
        ]
        assert await record_count(session_factory, request.id) == 1

        (alert,) = alerts.of_type("suspicious_cancellation")
        assert alert["requester_id"] == "rider-1"
        assert alert["action_taken"] == "charged"
        assert notifier.of_type("cancellation_warning")[0][0] == "rider-1"
        assert notifier.of_type("cancellation_compensation")[0][0] == "d-1"

    async def test_wallet_is_called_after_cancellation_commits(
        self, engine, session_factory, bound_request, prior_cancellations, wallet, load, monkeypatch,
    ):
        await prior_cancellations(1)
        request = await bound_request()
        seen_during_debit = []
        debit = wallet.debit

        async def observing_debit(user_id, amount, idempotency_key):
            seen_during_debit.append((await load(ServiceRequest, request.id)).status)
            seen_during_debit.append(await record_count(session_factory, request.id))
            return await debit(user_id, amount, idempotency_key)

        monkeypatch.setattr(wallet, "debit", observing_debit)

        _, record = await engine.cancel(request.id, "rider-1")

        assert seen_during_debit == [RequestStatusEnum.cancelled_by_client, 1]
        stored = await load(CancellationRecord, record.id)
        assert stored.charge_amount == request.surge_price
        assert stored.compensation_amount == to_money(request.surge_price * Decimal("0.8"))

    async def test_third_near_cancellation_bans(
        self, engine, bound_request, prior_cancellations, make_request, load,
    ):
        await prior_cancellations(2)
        request = await bound_request()

        _, record = await engine.cancel(request.id, "rider-1")

        assert record.near_count == 3
        assert record.action_taken is CancellationActionEnum.banned
        assert record.charge_amount == request.surge_price
        requester = await load(Requester, "rider-1")
        assert requester.is_banned is True
        assert requester.banned_at is not None
        with pytest.raises(RequesterBanned):
            await make_request(requester_id="rider-1")

    async def test_far_driver_never_counts(self, engine, bound_request, prior_cancellations, wallet):
        await prior_cancellations(2)
        request = await bound_request(position=AT_1KM)

        _, record = await engine.cancel(request.id, "rider-1")

        assert record.driver_was_near is False
        assert record.suspicious is False
        assert record.near_count == 2
        assert record.action_taken is CancellationActionEnum.none
        assert wallet.calls == []

    async def test_old_and_far_history_ignored(self, engine, bound_request, prior_cancellations):
        await prior_cancellations(2, age=timedelta(hours=25))
        await prior_cancellations(2, near=False)
        request = await bound_request()

        _, record = await engine.cancel(request.id, "rider-1")

        assert record.near_count == 1
        assert record.suspicious is False

    async def test_other_requesters_history_ignored(self, engine, bound_request, prior_cancellations):
        await prior_cancellations(2, requester_id="rider-9")
        request = await bound_request()

        _, record = await engine.cancel(request.id, "rider-1")

        assert record.near_count == 1


@pytest.mark.asyncio
class TestIdempotencyAndFailures:
    async def test_second_processing_is_a_no_op(
        self, engine, session_factory, bound_request, prior_cancellations, wallet,
    ):
        await prior_cancellations(1)
        request = await bound_request()
        await engine.fraud.process(request.id, "rider-1")
        calls = list(wallet.calls)

        assert await engine.fraud.process(request.id, "rider-1") is None
        assert wallet.calls == calls
        assert await record_count(session_factory, request.id) == 1

    async def test_only_owner_may_cancel(self, engine, bound_request, load):
        request = await bound_request()
        with pytest.raises(RequestNotFound):
            await engine.fraud.process(request.id, "rider-2")
        assert (await load(ServiceRequest, request.id)).status is RequestStatusEnum.accepted

    async def test_in_progress_request_cannot_be_cancelled(self, engine, bound_request):
        request = await bound_request()
        await engine.coordinator.start_trip(request.id, "d-1")
        with pytest.raises(RequestAlreadyResolved):
            await engine.fraud.process(request.id, "rider-1")

    async def test_insufficient_funds_still_compensates_and_alerts(
        self, engine, bound_request, prior_cancellations, wallet, alerts, load,
    ):
        await prior_cancellations(1)
        request = await bound_request()
        wallet.debit_outcome = WalletOutcome.insufficient_funds

        cancelled, record = await engine.cancel(request.id, "rider-1")

        assert cancelled.status is RequestStatusEnum.cancelled_by_client
        assert record.action_taken is CancellationActionEnum.charged
        assert record.charge_amount == Decimal("0")
        assert record.compensation_amount == to_money(request.surge_price * Decimal("0.8"))
        (failure,) = alerts.of_type("cancellation_side_effect_failed")
        assert failure["failures"] == ["debit refused: insufficient funds"]

    async def test_wallet_outage_does_not_block_cancellation(
        self, engine, bound_request, prior_cancellations, wallet, alerts, load,
    ):
        await prior_cancellations(1)
        request = await bound_request()
        wallet.error = WalletError("wallet unreachable")

        cancelled, record = await engine.cancel(request.id, "rider-1")

        assert cancelled.status is RequestStatusEnum.cancelled_by_client
        assert record.charge_amount == Decimal("0")
        assert record.compensation_amount == Decimal("0")
        (failure,) = alerts.of_type("cancellation_side_effect_failed")
        assert len(failure["failures"]) == 2
        assert (await load(DriverLocation, "d-1")).available is True

    async def test_cancel_before_binding_skips_screening(self, engine, make_request, session_factory):
        request = await make_request()

        cancelled, record = await engine.cancel(request.id, "rider-1")

        assert record is None
        assert cancelled.status is RequestStatusEnum.cancelled
        assert await record_count(session_factory) == 0
