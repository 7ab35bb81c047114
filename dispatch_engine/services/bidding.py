"""
Bidding arena: the request is shown to every compatible nearby driver for a
fixed window, drivers post offers, the requester picks one.

Acceptance is one database transaction: offer accepted, rivals rejected,
driver reserved, request bound, Assignment row written. If any step fails the
whole unit rolls back and no driver stays reserved.
"""
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.exceptions import (
    InvalidOffer, InvalidRequest, OfferNoLongerAvailable, RequestAlreadyResolved, RequestNotFound,
)
from dispatch_engine.models.assignment import Assignment
from dispatch_engine.models.driver import Driver
from dispatch_engine.models.offer import Offer
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum, OfferStatusEnum, RequestStatusEnum,
)
from dispatch_engine.services.candidates import CandidateLocator
from dispatch_engine.services.coordinator import AssignmentCoordinator
from dispatch_engine.services.driver_store import DriverLocationStore
from dispatch_engine.services.events import EventBus
from dispatch_engine.services.notifications import HttpNotifier
from dispatch_engine.services.pricing import compatible_vehicle_classes, to_money
from dispatch_engine.services.repository import close_pending_offers, load_request, transition_request

logger = logging.getLogger(__name__)


class BiddingArena:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locator: CandidateLocator,
        coordinator: AssignmentCoordinator,
        notifier: HttpNotifier,
        events: EventBus,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locator = locator
        self.coordinator = coordinator
        self.notifier = notifier
        self.events = events
        self.settings = settings
        self.clock = clock
        self._closers: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Window
    # ------------------------------------------------------------------

    async def open(self, request_id: str, budget_ceiling: Decimal | None = None) -> ServiceRequest:
        if budget_ceiling is not None and budget_ceiling <= 0:
            raise InvalidRequest("Budget ceiling must be positive")
        now = self.clock()
        deadline = now + timedelta(seconds=self.settings.bidding_window_seconds)
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            ceiling = to_money(budget_ceiling) if budget_ceiling is not None else request.budget_ceiling
            opened = await transition_request(
                db, request_id, RequestStatusEnum.bidding, now,
                sources=[RequestStatusEnum.pending],
                bidding=True, budget_ceiling=ceiling, bidding_deadline=deadline,
            )
            if not opened:
                await db.rollback()
                raise RequestAlreadyResolved(
                    f"Request {request_id} cannot open bidding from {request.status.value}"
                )
            request = await load_request(db, request_id)
            candidates = await self.locator.find_candidates(db, request)
            await db.commit()

        self._schedule_close(request_id, deadline)
        logger.info(
            "Bidding opened on request %s until %s (ceiling=%s, %d driver(s) invited)",
            request_id, deadline.isoformat(), ceiling, len(candidates),
        )
        await self.events.publish_request(request_id, "bidding_opened", bidding_deadline=deadline)
        invitation = {
            "type": "bidding_invitation",
            "request_id": request_id,
            "pickup": {"lat": request.pickup_lat, "lng": request.pickup_lng},
            "destination": {"lat": request.dest_lat, "lng": request.dest_lng},
            "reference_price": str(request.surge_price),
            "budget_ceiling": str(ceiling) if ceiling is not None else None,
            "currency": request.currency,
            "bidding_deadline": deadline.isoformat(),
        }
        for candidate in candidates:
            await self.notifier.send(candidate.driver_id, {
                **invitation, "distance_km": round(candidate.distance_km, 2),
            })
        return request

    async def close(self, request_id: str) -> bool:
        """Close an expired window. Returns False if it is not due or already left ``bidding``."""
        now = self.clock()
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if request.status != RequestStatusEnum.bidding or request.bidding_deadline > now:
                await db.rollback()
                return False
            await transition_request(
                db, request_id, RequestStatusEnum.bidding_closed, now, sources=[RequestStatusEnum.bidding],
            )
            expired = await close_pending_offers(db, request_id, OfferStatusEnum.expired, now)
            await db.commit()

        logger.info("Bidding closed on request %s without a winner (%d offer(s) expired)", request_id, expired)
        await self.events.publish_request(request_id, "bidding_closed", expired_offers=expired)
        await self.notifier.send(request.requester_id, {
            "type": "bidding_closed",
            "request_id": request_id,
            "fallback_price": str(request.surge_price),
            "message": "No offer was accepted. You can request a driver at the standard price.",
        })
        return True

    async def close_overdue(self) -> int:
        now = self.clock()
        async with self.session_factory() as db:
            overdue = (await db.execute(
                select(ServiceRequest.id).where(
                    ServiceRequest.status == RequestStatusEnum.bidding,
                    ServiceRequest.bidding_deadline <= now,
                )
            )).scalars().all()
        closed = 0
        for request_id in overdue:
            if await self.close(request_id):
                closed += 1
        return closed

    async def fallback(self, request_id: str, requester_id: str | None = None) -> ServiceRequest:
        """Switch a closed bidding round to sequential dispatch at the fixed surge price."""
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if requester_id is not None and request.requester_id != requester_id:
                raise RequestNotFound(f"Request {request_id} not found")
            moved = await transition_request(
                db, request_id, RequestStatusEnum.dispatching, self.clock(),
                sources=[RequestStatusEnum.bidding_closed],
            )
            if not moved:
                await db.rollback()
                raise RequestAlreadyResolved(
                    f"Request {request_id} cannot fall back from {request.status.value}"
                )
            await db.commit()
            request = await load_request(db, request_id)
        logger.info("Request %s falling back to fixed-price dispatch at %s", request_id, request.surge_price)
        self.coordinator.start(request_id)
        return request

    def _schedule_close(self, request_id: str, deadline: datetime) -> None:
        async def _close_at_deadline() -> None:
            delay = (deadline - self.clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.close(request_id)

        task = asyncio.create_task(_close_at_deadline(), name=f"bidding-close:{request_id}")
        self._closers[request_id] = task
        task.add_done_callback(lambda t: self._closer_done(request_id, t))

    def _closer_done(self, request_id: str, task: asyncio.Task) -> None:
        if self._closers.get(request_id) is task:
            del self._closers[request_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Bidding close for request %s failed", request_id, exc_info=task.exception())

    async def shutdown(self) -> None:
        tasks = list(self._closers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def submit_offer(
        self,
        request_id: str,
        driver_id: str,
        price: Decimal,
        message: str | None = None,
        eta_minutes: int | None = None,
    ) -> Offer:
        now = self.clock()
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if request.status != RequestStatusEnum.bidding or request.bidding_deadline <= now:
                raise RequestAlreadyResolved(f"Request {request_id} is not accepting offers")
            price = to_money(price)
            if price <= 0:
                raise InvalidOffer("Offer price must be positive")
            if request.budget_ceiling is not None and price > request.budget_ceiling:
                raise InvalidOffer(f"Offer {price} exceeds the budget ceiling {request.budget_ceiling}")

            driver = await db.get(Driver, driver_id)
            if driver is None or not driver.verified:
                raise InvalidOffer(f"Driver {driver_id} is not eligible to bid")
            if driver.vehicle_class not in compatible_vehicle_classes(request.vehicle_class):
                raise InvalidOffer(
                    f"A {driver.vehicle_class.value} cannot serve a {request.vehicle_class.value} request"
                )
            existing = await db.execute(
                select(Offer.id).where(
                    Offer.request_id == request_id,
                    Offer.driver_id == driver_id,
                    Offer.status == OfferStatusEnum.pending,
                )
            )
            if existing.first() is not None:
                raise InvalidOffer(f"Driver {driver_id} already has a pending offer on {request_id}")

            # Re-check under a write lock: an acceptance committed since the read above wins.
            still_open = await db.execute(
                update(ServiceRequest)
                .where(
                    ServiceRequest.id == request_id,
                    ServiceRequest.status == RequestStatusEnum.bidding,
                    ServiceRequest.bidding_deadline > now,
                )
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if still_open.rowcount != 1:
                await db.rollback()
                raise RequestAlreadyResolved(f"Request {request_id} is not accepting offers")

            offer = Offer(
                request_id=request_id,
                driver_id=driver_id,
                price=price,
                message=message,
                eta_minutes=eta_minutes,
                status=OfferStatusEnum.pending,
                created_at=now,
                expires_at=request.bidding_deadline,
                updated_at=now,
            )
            db.add(offer)
            await db.commit()

        logger.info("Offer %s on request %s: driver=%s price=%s", offer.id, request_id, driver_id, price)
        await self.events.publish_request(request_id, "offer_submitted", offer_id=offer.id, price=price)
        await self.notifier.send(request.requester_id, {
            "type": "new_offer", "request_id": request_id, "offer_id": offer.id,
            "price": str(price), "eta_minutes": eta_minutes,
        })
        return offer

    async def list_offers(self, request_id: str) -> list[Offer]:
        async with self.session_factory() as db:
            await load_request(db, request_id)
            return await self._pending_offers(db, request_id)

    async def offer_board(self, request_id: str) -> dict[str, Any]:
        async with self.session_factory() as db:
            request = await load_request(db, request_id)
            offers = await self._pending_offers(db, request_id)
        prices = [offer.price for offer in offers]
        return {
            "request_id": request_id,
            "bidding_deadline": request.bidding_deadline,
            "count": len(offers),
            "best_price": min(prices) if prices else None,
            "average_price": to_money(sum(prices) / len(prices)) if prices else None,
            "offers": offers,
        }

    @staticmethod
    async def _pending_offers(db: AsyncSession, request_id: str) -> list[Offer]:
        result = await db.execute(
            select(Offer)
            .where(Offer.request_id == request_id, Offer.status == OfferStatusEnum.pending)
            .order_by(Offer.price.asc(), Offer.created_at.asc())
        )
        return list(result.scalars().all())

    async def withdraw_offer(self, offer_id: str, driver_id: str) -> Offer:
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(Offer)
                .where(Offer.id == offer_id, Offer.driver_id == driver_id, Offer.status == OfferStatusEnum.pending)
                .values(status=OfferStatusEnum.withdrawn, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise OfferNoLongerAvailable(f"Offer {offer_id} cannot be withdrawn")
            await db.commit()
            offer = (await db.execute(
                select(Offer).where(Offer.id == offer_id).execution_options(populate_existing=True)
            )).scalar_one()
        await self.events.publish_request(offer.request_id, "offer_withdrawn", offer_id=offer_id)
        return offer

    async def accept_offer(self, request_id: str, offer_id: str, requester_id: str) -> ServiceRequest:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                request = await load_request(db, request_id, for_update=True)
                if request.requester_id != requester_id:
                    raise RequestNotFound(f"Request {request_id} not found")
                if request.status != RequestStatusEnum.bidding or request.bidding_deadline <= now:
                    raise RequestAlreadyResolved(f"Request {request_id} is no longer in bidding")

                offer = (await db.execute(
                    select(Offer).where(Offer.id == offer_id, Offer.request_id == request_id)
                )).scalar_one_or_none()
                if offer is None:
                    raise OfferNoLongerAvailable(f"Offer {offer_id} not found on request {request_id}")

                taken = await db.execute(
                    update(Offer)
                    .where(Offer.id == offer_id, Offer.status == OfferStatusEnum.pending, Offer.expires_at > now)
                    .values(status=OfferStatusEnum.accepted, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if taken.rowcount != 1:
                    raise OfferNoLongerAvailable(f"Offer {offer_id} is no longer pending")
                if not await DriverLocationStore(db).reserve(offer.driver_id):
                    raise OfferNoLongerAvailable(f"Driver {offer.driver_id} is no longer available")

                losers = (await db.execute(
                    select(Offer.id, Offer.driver_id).where(
                        Offer.request_id == request_id,
                        Offer.status == OfferStatusEnum.pending,
                        Offer.id != offer_id,
                    )
                )).all()
                await close_pending_offers(
                    db, request_id, OfferStatusEnum.rejected, now, except_offer_id=offer_id,
                )
                bound = await transition_request(
                    db, request_id, RequestStatusEnum.accepted, now,
                    sources=[RequestStatusEnum.bidding],
                    assigned_driver_id=offer.driver_id, final_price=offer.price,
                )
                if not bound:
                    raise RequestAlreadyResolved(f"Request {request_id} is no longer in bidding")
                db.add(Assignment(
                    request_id=request_id,
                    driver_id=offer.driver_id,
                    status=AssignmentStatusEnum.accepted,
                    created_at=now,
                    expires_at=now,
                    responded_at=now,
                ))
                try:
                    await db.flush()
                except IntegrityError as exc:
                    raise OfferNoLongerAvailable(f"Driver {offer.driver_id} is already bound") from exc
            request = await load_request(db, request_id)

        closer = self._closers.pop(request_id, None)
        if closer is not None:
            closer.cancel()
        logger.info(
            "Request %s bound by offer %s: driver=%s price=%s (%d rival offer(s) rejected)",
            request_id, offer_id, offer.driver_id, offer.price, len(losers),
        )
        await self.events.publish_request(
            request_id, "accepted", driver_id=offer.driver_id, offer_id=offer_id, price=offer.price,
        )
        await self.notifier.send(offer.driver_id, {
            "type": "offer_accepted", "request_id": request_id, "offer_id": offer_id, "price": str(offer.price),
        })
        for loser_id, loser_driver in losers:
            await self.notifier.send(loser_driver, {
                "type": "offer_rejected", "request_id": request_id, "offer_id": loser_id,
            })
        return request
