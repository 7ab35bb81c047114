"""
Cancellation fraud detector.

Screens a requester cancelling after a driver accepted. A cancellation is
"near" when the driver was already within ``fraud_near_distance_km`` of the
pickup; repeated near cancellations inside the rolling window get the
requester charged (driver compensated) and eventually banned.

The cancellation and its audit record commit first, with no HTTP call inside
the locked transaction. Money moves afterwards through the wallet with
idempotency keys derived from the request id, and the amounts actually
collected are then written onto the record. Re-processing the same
cancellation finds it already committed and never charges twice. Wallet and
notification failures are logged and alerted; they never block the
cancellation itself.
"""
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.exceptions import RequestAlreadyResolved, RequestNotFound
from dispatch_engine.models.cancellation import CancellationRecord
from dispatch_engine.models.requester import Requester
from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum, CancellationActionEnum, CancelledByEnum, RequestStatusEnum,
)
from dispatch_engine.services.alerts import HttpAdminAlerts
from dispatch_engine.services.driver_store import DriverLocationStore
from dispatch_engine.services.events import EventBus
from dispatch_engine.services.geo import haversine_km
from dispatch_engine.services.notifications import HttpNotifier
from dispatch_engine.services.pricing import compensation_amount
from dispatch_engine.services.repository import (
    load_request, open_assignments, transition_assignment, transition_request,
)
from dispatch_engine.services.wallet import HttpWalletClient, WalletError

logger = logging.getLogger(__name__)


class CancellationFraudDetector:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        wallet: HttpWalletClient,
        notifier: HttpNotifier,
        alerts: HttpAdminAlerts,
        events: EventBus,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.wallet = wallet
        self.notifier = notifier
        self.alerts = alerts
        self.events = events
        self.settings = settings
        self.clock = clock

    async def process(
        self, request_id: str, requester_id: str, reason: str | None = None
    ) -> CancellationRecord | None:
        now = self.clock()
        failures: list[str] = []
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if request.requester_id != requester_id:
                raise RequestNotFound(f"Request {request_id} not found")
            if request.status == RequestStatusEnum.cancelled_by_client:
                logger.info("Cancellation of request %s already processed", request_id)
                return None
            if request.status != RequestStatusEnum.accepted:
                raise RequestAlreadyResolved(
                    f"Request {request_id} is {request.status.value}, not accepted"
                )

            driver_id = request.assigned_driver_id
            store = DriverLocationStore(db)
            location = await store.get(driver_id) if driver_id else None
            distance = (
                haversine_km(location.lat, location.lng, request.pickup_lat, request.pickup_lng)
                if location is not None else None
            )
            near = distance is not None and distance < self.settings.fraud_near_distance_km

            near_count = await self._recent_near_cancellations(db, requester_id, now) + (1 if near else 0)
            suspicious = near and near_count >= self.settings.fraud_flag_count
            ban = suspicious and near_count >= self.settings.fraud_ban_count

            if ban:
                await self._ban(db, requester_id, near_count, now)

            action = CancellationActionEnum.none
            if ban:
                action = CancellationActionEnum.banned
            elif suspicious:
                action = CancellationActionEnum.charged

            record = CancellationRecord(
                request_id=request_id,
                requester_id=requester_id,
                driver_id=driver_id,
                cancelled_by=CancelledByEnum.requester,
                status_at_cancellation=RequestStatusEnum.accepted,
                driver_distance_km=round(distance, 3) if distance is not None else None,
                driver_was_near=near,
                suspicious=suspicious,
                near_count=near_count,
                action_taken=action,
                charge_amount=Decimal("0"),
                compensation_amount=Decimal("0"),
                reason=reason,
                created_at=now,
            )
            db.add(record)

            await transition_request(
                db, request_id, RequestStatusEnum.cancelled_by_client, now,
                sources=[RequestStatusEnum.accepted], assigned_driver_id=None, cancelled_at=now,
            )
            for assignment in await open_assignments(db, request_id, AssignmentStatusEnum.accepted):
                await transition_assignment(
                    db, assignment.id, AssignmentStatusEnum.accepted, AssignmentStatusEnum.cancelled, now,
                )
            if driver_id:
                await store.release(driver_id)
            await db.commit()

        # The commit above is the only gate: a replay sees cancelled_by_client and returns early.
        if suspicious:
            price = request.price
            charged = await self._charge(requester_id, request_id, price, failures)
            compensated = Decimal("0")
            if driver_id:
                compensated = await self._compensate(
                    driver_id, request_id, compensation_amount(price, self.settings.fraud_compensation_ratio),
                    failures,
                )
            await self._record_collected(record, charged, compensated, failures)

        logger.info(
            "Request %s cancelled by requester=%s: distance=%s near=%s count=%d action=%s",
            request_id, requester_id,
            f"{distance:.3f}km" if distance is not None else "unknown",
            near, near_count, action.value,
        )
        await self.events.publish_request(request_id, "cancelled_by_client", suspicious=suspicious)
        await self._notify(record, request.currency, failures)
        return record

    async def _recent_near_cancellations(self, db: AsyncSession, requester_id: str, now: datetime) -> int:
        window_start = now - timedelta(hours=self.settings.fraud_window_hours)
        result = await db.execute(
            select(func.count(CancellationRecord.id)).where(
                CancellationRecord.requester_id == requester_id,
                CancellationRecord.cancelled_by == CancelledByEnum.requester,
                CancellationRecord.driver_was_near.is_(True),
                CancellationRecord.created_at >= window_start,
            )
        )
        return result.scalar_one()

    async def _charge(self, requester_id: str, request_id: str, price: Decimal, failures: list[str]) -> Decimal:
        try:
            result = await self.wallet.debit(requester_id, price, f"cancel-fee:{request_id}")
        except WalletError as exc:
            logger.error("Cancellation fee debit failed for request %s: %s", request_id, exc)
            failures.append(f"debit failed: {exc}")
            return Decimal("0")
        if not result.ok:
            logger.warning("Requester %s cannot cover cancellation fee %s", requester_id, price)
            failures.append("debit refused: insufficient funds")
            return Decimal("0")
        return price

    async def _compensate(self, driver_id: str, request_id: str, amount: Decimal, failures: list[str]) -> Decimal:
        try:
            result = await self.wallet.credit(driver_id, amount, f"cancel-comp:{request_id}")
        except WalletError as exc:
            logger.error("Driver compensation credit failed for request %s: %s", request_id, exc)
            failures.append(f"credit failed: {exc}")
            return Decimal("0")
        return amount if result.ok else Decimal("0")

    async def _record_collected(
        self, record: CancellationRecord, charged: Decimal, compensated: Decimal, failures: list[str]
    ) -> None:
        record.charge_amount = charged
        record.compensation_amount = compensated
        if not charged and not compensated:
            return
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(CancellationRecord)
                    .where(CancellationRecord.id == record.id)
                    .values(charge_amount=charged, compensation_amount=compensated)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error("Could not store collected amounts for request %s: %s", record.request_id, exc)
            failures.append(f"amounts not recorded: charged={charged} compensated={compensated}")

    async def _ban(self, db: AsyncSession, requester_id: str, near_count: int, now: datetime) -> None:
        requester = await db.get(Requester, requester_id, with_for_update=True)
        if requester is None:
            requester = Requester(id=requester_id, created_at=now)
            db.add(requester)
        if requester.is_banned:
            return
        requester.is_banned = True
        requester.ban_reason = (
            f"{near_count} near-pickup cancellations within {self.settings.fraud_window_hours}h"
        )
        requester.banned_at = now
        logger.warning("Requester %s banned: %s", requester_id, requester.ban_reason)

    async def _notify(self, record: CancellationRecord, currency: str, failures: list[str]) -> None:
        if record.suspicious:
            await self.notifier.send(record.requester_id, {
                "type": "cancellation_warning",
                "request_id": record.request_id,
                "near_count": record.near_count,
                "charged": str(record.charge_amount),
                "currency": currency,
                "banned": record.action_taken == CancellationActionEnum.banned,
                "message": "Repeated cancellations after the driver arrived are charged and may suspend your account.",
            })
            if record.driver_id:
                await self.notifier.send(record.driver_id, {
                    "type": "cancellation_compensation",
                    "request_id": record.request_id,
                    "amount": str(record.compensation_amount),
                    "currency": currency,
                })
            await self.alerts.alert({
                "alert_type": "suspicious_cancellation",
                "request_id": record.request_id,
                "requester_id": record.requester_id,
                "driver_id": record.driver_id,
                "near_count": record.near_count,
                "action_taken": record.action_taken.value,
                "charge_amount": str(record.charge_amount),
                "compensation_amount": str(record.compensation_amount),
            })
        elif record.driver_id:
            await self.notifier.send(record.driver_id, {
                "type": "request_cancelled", "request_id": record.request_id,
            })
        if failures:
            await self.alerts.alert({
                "alert_type": "cancellation_side_effect_failed",
                "request_id": record.request_id,
                "requester_id": record.requester_id,
                "failures": failures,
            })
