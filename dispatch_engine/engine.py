"""
Wires the dispatch components together and exposes the few operations that
span more than one of them (submit, cancel, background sweep).
"""
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.models.cancellation import CancellationRecord
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.schemas.schemas import RequestStatusEnum
from dispatch_engine.services.alerts import HttpAdminAlerts
from dispatch_engine.services.bidding import BiddingArena
from dispatch_engine.services.candidates import CandidateLocator
from dispatch_engine.services.coordinator import AssignmentCoordinator
from dispatch_engine.services.events import EventBus
from dispatch_engine.services.fraud import CancellationFraudDetector
from dispatch_engine.services.intake import RequestDraft, RequestIntake
from dispatch_engine.services.notifications import HttpNotifier
from dispatch_engine.services.pricing import PricingTable
from dispatch_engine.services.repository import load_request
from dispatch_engine.services.wallet import HttpWalletClient
from dispatch_engine.services.zones import ZoneService

logger = logging.getLogger(__name__)


class DispatchEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        notifier: HttpNotifier | None = None,
        wallet: HttpWalletClient | None = None,
        alerts: HttpAdminAlerts | None = None,
        zones: ZoneService | None = None,
        pricing: PricingTable | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.notifier = notifier or HttpNotifier(settings)
        self.wallet = wallet or HttpWalletClient(settings)
        self.alerts = alerts or HttpAdminAlerts(settings)
        self.events = EventBus(redis)
        self.zones = zones or ZoneService.from_config(settings.zones_file)
        self.intake = RequestIntake(settings, self.zones, pricing, clock)
        self.locator = CandidateLocator(settings, clock)
        self.coordinator = AssignmentCoordinator(
            session_factory, self.locator, self.notifier, self.events, settings, clock=clock,
        )
        self.arena = BiddingArena(
            session_factory, self.locator, self.coordinator, self.notifier, self.events, settings, clock,
        )
        self.fraud = CancellationFraudDetector(
            session_factory, self.wallet, self.notifier, self.alerts, self.events, settings, clock,
        )
        self._sweeper: asyncio.Task | None = None

    async def submit(self, draft: RequestDraft) -> ServiceRequest:
        """Persist a new request, then either open bidding or start dispatch in the background."""
        async with self.session_factory() as db:
            request = await self.intake.create(db, draft)
        if request.bidding:
            return await self.arena.open(request.id)
        self.coordinator.start(request.id)
        return request

    async def cancel(
        self, request_id: str, requester_id: str, reason: str | None = None
    ) -> tuple[ServiceRequest, CancellationRecord | None]:
        """Requester cancellation: screened for fraud once a driver is bound, plain otherwise."""
        async with self.session_factory() as db:
            status = (await load_request(db, request_id)).status
        if status == RequestStatusEnum.accepted:
            record = await self.fraud.process(request_id, requester_id, reason)
            async with self.session_factory() as db:
                return await load_request(db, request_id), record
        return await self.coordinator.cancel_request(request_id, requester_id), None

    async def sweep_once(self) -> None:
        expired = await self.coordinator.expire_overdue()
        closed = await self.arena.close_overdue()
        if expired or closed:
            logger.info("Sweep: %d assignment(s) expired, %d bidding window(s) closed", expired, closed)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweeper_interval_seconds)
            try:
                await self.sweep_once()
            except SQLAlchemyError as exc:
                logger.error("Sweep failed: %s", exc)

    def start_sweeper(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="dispatch-sweeper")

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.arena.shutdown()
        await self.coordinator.shutdown()
        await self.notifier.aclose()
        await self.wallet.aclose()
        await self.alerts.aclose()


def get_engine(request: Request) -> DispatchEngine:
    return request.app.state.engine
