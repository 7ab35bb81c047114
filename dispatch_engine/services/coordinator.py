"""
Assignment coordinator: owns one request's dispatch lifecycle.

Flow:
  1. pending → dispatching; locate + rank candidates once
  2. For each candidate in score order:
       a. CAS-reserve the driver (available true → false); lost race → next
       b. create a pending Assignment with a wall-clock deadline, notify driver
       c. wait for accept / reject, bounded by the deadline
       d. rejected / timed out → driver released, next candidate
  3. List exhausted → no_drivers_available

Every terminal move of an Assignment happens in one transaction together with
the driver release, guarded on ``status = 'pending'``, so exactly one of
accept / reject / timeout / cancel wins and the driver is released once.
"""
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.exceptions import (
    AssignmentNoLongerAvailable, RequestAlreadyResolved, RequestNotFound,
)
from dispatch_engine.models.assignment import Assignment
from dispatch_engine.models.cancellation import CancellationRecord
from dispatch_engine.models.driver import Driver
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum, CancelledByEnum, OfferStatusEnum, RequestStatusEnum,
)
from dispatch_engine.services.candidates import CandidateLocator
from dispatch_engine.services.driver_store import DriverLocationStore
from dispatch_engine.services.events import EventBus
from dispatch_engine.services.geo import haversine_km
from dispatch_engine.services.notifications import HttpNotifier
from dispatch_engine.services.repository import (
    close_pending_offers, load_assignment, load_request, open_assignments,
    transition_assignment, transition_request, tried_driver_ids,
)
from dispatch_engine.services.scoring import Candidate, ScoringWeights, rank_candidates

logger = logging.getLogger(__name__)

# Statuses a dispatch run may start from (bidding_closed = fixed-price fallback,
# dispatching = resume after a driver-side cancellation).
DISPATCHABLE = (RequestStatusEnum.pending, RequestStatusEnum.bidding_closed, RequestStatusEnum.dispatching)


class AttemptOutcome(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    timed_out = "timed_out"
    lost_race = "lost_race"
    aborted = "aborted"


_SETTLED = {
    AssignmentStatusEnum.accepted: AttemptOutcome.accepted,
    AssignmentStatusEnum.completed: AttemptOutcome.accepted,
    AssignmentStatusEnum.rejected: AttemptOutcome.rejected,
    AssignmentStatusEnum.timed_out: AttemptOutcome.timed_out,
    AssignmentStatusEnum.cancelled: AttemptOutcome.aborted,
}


class AssignmentCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locator: CandidateLocator,
        notifier: HttpNotifier,
        events: EventBus,
        settings: Settings,
        weights: ScoringWeights | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locator = locator
        self.notifier = notifier
        self.events = events
        self.settings = settings
        self.weights = weights or ScoringWeights.from_settings(settings)
        self.clock = clock
        self._waiters: dict[str, asyncio.Event] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def start(self, request_id: str) -> asyncio.Task:
        """Fire-and-forget dispatch; the task is tracked so shutdown can cancel it."""
        task = asyncio.create_task(self._run_in_background(request_id), name=f"dispatch:{request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def _run_in_background(self, request_id: str) -> RequestStatusEnum | None:
        try:
            return await self.run(request_id)
        except RequestAlreadyResolved as exc:
            # Cancelled or picked up elsewhere before the task got to run.
            logger.info("Background dispatch of request %s skipped: %s", request_id, exc)
            return None

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Task %s failed", task.get_name(), exc_info=task.exception())

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def run(self, request_id: str) -> RequestStatusEnum:
        if request_id in self._running:
            raise RequestAlreadyResolved(f"Request {request_id} is already being dispatched")
        self._running.add(request_id)
        try:
            return await self._run(request_id)
        finally:
            self._running.discard(request_id)

    async def _run(self, request_id: str) -> RequestStatusEnum:
        async with self.session_factory() as db:
            moved = await transition_request(
                db, request_id, RequestStatusEnum.dispatching, self.clock(), sources=DISPATCHABLE,
                assigned_driver_id=None,
            )
            request = await load_request(db, request_id)
            if not moved:
                raise RequestAlreadyResolved(
                    f"Request {request_id} cannot be dispatched from {request.status.value}"
                )
            tried = await tried_driver_ids(db, request_id)
            candidates = await self.locator.find_candidates(db, request, exclude=tried)
            await db.commit()

        ranked = rank_candidates(
            candidates, request.priority, self.locator.max_radius_km(request), self.weights
        )
        await self.events.publish_request(request_id, "dispatching", candidates=len(ranked))

        for position, candidate in enumerate(ranked, start=1):
            outcome = await self._attempt(request, candidate)
            logger.info(
                "Request %s attempt %d/%d driver=%s score=%.2f -> %s",
                request_id, position, len(ranked), candidate.driver_id, candidate.score, outcome.value,
            )
            if outcome is AttemptOutcome.accepted:
                return RequestStatusEnum.accepted
            if outcome is AttemptOutcome.aborted:
                return await self._current_status(request_id)

        return await self._exhausted(request_id)

    async def _attempt(self, request: ServiceRequest, candidate: Candidate) -> AttemptOutcome:
        now = self.clock()
        expires_at = now + timedelta(seconds=self.settings.assignment_response_seconds)
        async with self.session_factory() as db:
            status = (await db.execute(
                select(ServiceRequest.status).where(ServiceRequest.id == request.id).with_for_update()
            )).scalar_one()
            if status != RequestStatusEnum.dispatching:
                await db.rollback()
                return AttemptOutcome.aborted
            if not await DriverLocationStore(db).reserve(candidate.driver_id):
                await db.rollback()
                return AttemptOutcome.lost_race
            assignment = Assignment(
                request_id=request.id,
                driver_id=candidate.driver_id,
                status=AssignmentStatusEnum.pending,
                created_at=now,
                expires_at=expires_at,
            )
            db.add(assignment)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "Driver %s still bound to another live assignment; skipping", candidate.driver_id
                )
                return AttemptOutcome.lost_race

        event = asyncio.Event()
        self._waiters[assignment.id] = event
        try:
            await self.events.publish_request(
                request.id, "driver_offered", driver_id=candidate.driver_id, expires_at=expires_at,
            )
            delivered = await self.notifier.send(candidate.driver_id, {
                "type": "assignment_offer",
                "assignment_id": assignment.id,
                "request_id": request.id,
                "pickup": {"lat": request.pickup_lat, "lng": request.pickup_lng},
                "destination": {"lat": request.dest_lat, "lng": request.dest_lng},
                "distance_km": round(candidate.distance_km, 2),
                "price": str(request.surge_price),
                "currency": request.currency,
                "expires_at": expires_at.isoformat(),
                "countdown_seconds": self.settings.assignment_response_seconds,
            })
            if not delivered:
                logger.warning(
                    "Offer notification to driver=%s undelivered; deadline still applies",
                    candidate.driver_id,
                )
            return await self._await_response(assignment.id, expires_at, event)
        finally:
            self._waiters.pop(assignment.id, None)

    async def _await_response(self, assignment_id: str, expires_at: datetime, event: asyncio.Event) -> AttemptOutcome:
        while True:
            remaining = (expires_at - self.clock()).total_seconds()
            if remaining > 0:
                try:
                    await asyncio.wait_for(event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
            outcome = await self._settle(assignment_id)
            if outcome is not None:
                return outcome
            event.clear()

    async def _settle(self, assignment_id: str) -> AttemptOutcome | None:
        """Time the assignment out if its deadline passed, then report where it ended up."""
        now = self.clock()
        async with self.session_factory() as db:
            expired = await transition_assignment(
                db, assignment_id, AssignmentStatusEnum.pending, AssignmentStatusEnum.timed_out, now,
                Assignment.expires_at <= now,
            )
            assignment = await load_assignment(db, assignment_id)
            if expired:
                await DriverLocationStore(db).release(assignment.driver_id)
            await db.commit()

        if expired:
            logger.info("Assignment %s timed out (driver=%s)", assignment_id, assignment.driver_id)
            await self.events.publish_driver(assignment.driver_id, "assignment_expired", assignment_id=assignment_id)
            await self.notifier.send(assignment.driver_id, {
                "type": "assignment_expired", "assignment_id": assignment_id,
                "request_id": assignment.request_id,
            })
            return AttemptOutcome.timed_out
        return _SETTLED.get(assignment.status)

    async def _exhausted(self, request_id: str) -> RequestStatusEnum:
        async with self.session_factory() as db:
            moved = await transition_request(
                db, request_id, RequestStatusEnum.no_drivers_available, self.clock(),
                sources=[RequestStatusEnum.dispatching],
            )
            request = await load_request(db, request_id)
            await db.commit()
        if moved:
            logger.warning("Request %s: no drivers available", request_id)
            await self.events.publish_request(request_id, "no_drivers_available")
            await self.notifier.send(request.requester_id, {
                "type": "no_drivers_available",
                "request_id": request_id,
                "message": "No driver is available right now. Please try again in a few minutes.",
            })
        return request.status

    async def _current_status(self, request_id: str) -> RequestStatusEnum:
        async with self.session_factory() as db:
            return (await load_request(db, request_id)).status

    def _wake(self, assignment_id: str) -> None:
        event = self._waiters.get(assignment_id)
        if event is not None:
            event.set()

    # ------------------------------------------------------------------
    # Driver responses
    # ------------------------------------------------------------------

    async def accept_assignment(self, assignment_id: str, driver_id: str) -> ServiceRequest:
        now = self.clock()
        async with self.session_factory() as db:
            assignment = await load_assignment(db, assignment_id)
            if assignment is None or assignment.driver_id != driver_id:
                raise AssignmentNoLongerAvailable(f"Assignment {assignment_id} not found for driver {driver_id}")
            # Request row first, like every other path that touches both rows.
            await load_request(db, assignment.request_id, for_update=True)
            won = await transition_assignment(
                db, assignment_id, AssignmentStatusEnum.pending, AssignmentStatusEnum.accepted, now,
                Assignment.expires_at > now,
            )
            if not won:
                await db.rollback()
                raise AssignmentNoLongerAvailable(f"Assignment {assignment_id} is no longer open")
            bound = await transition_request(
                db, assignment.request_id, RequestStatusEnum.accepted, now,
                sources=[RequestStatusEnum.dispatching],
                assigned_driver_id=driver_id,
                final_price=ServiceRequest.surge_price,
            )
            if not bound:
                await db.rollback()
                raise RequestAlreadyResolved(f"Request {assignment.request_id} is no longer dispatching")
            await db.commit()
            request = await load_request(db, assignment.request_id)

        self._wake(assignment_id)
        logger.info("Request %s accepted by driver=%s", request.id, driver_id)
        await self.events.publish_request(request.id, "accepted", driver_id=driver_id)
        await self.events.publish_driver(driver_id, "assignment_accepted", assignment_id=assignment_id)
        await self.notifier.send(request.requester_id, {
            "type": "driver_assigned", "request_id": request.id, "driver_id": driver_id,
        })
        return request

    async def reject_assignment(self, assignment_id: str, driver_id: str) -> Assignment:
        now = self.clock()
        async with self.session_factory() as db:
            assignment = await load_assignment(db, assignment_id)
            if assignment is None or assignment.driver_id != driver_id:
                raise AssignmentNoLongerAvailable(f"Assignment {assignment_id} not found for driver {driver_id}")
            await load_request(db, assignment.request_id, for_update=True)
            rejected = await transition_assignment(
                db, assignment_id, AssignmentStatusEnum.pending, AssignmentStatusEnum.rejected, now,
                Assignment.expires_at > now,
            )
            if not rejected:
                await db.rollback()
                raise AssignmentNoLongerAvailable(f"Assignment {assignment_id} is no longer open")
            await DriverLocationStore(db).release(driver_id)
            await db.commit()
            assignment = await load_assignment(db, assignment_id)

        self._wake(assignment_id)
        await self.events.publish_request(assignment.request_id, "driver_rejected", driver_id=driver_id)
        return assignment

    async def expire_overdue(self) -> int:
        """Settle pending assignments past their deadline that nobody in this process is waiting on."""
        now = self.clock()
        async with self.session_factory() as db:
            overdue = (await db.execute(
                select(Assignment.id).where(
                    Assignment.status == AssignmentStatusEnum.pending, Assignment.expires_at <= now,
                )
            )).scalars().all()
        expired = 0
        for assignment_id in overdue:
            if assignment_id in self._waiters:
                self._wake(assignment_id)
                continue
            if await self._settle(assignment_id) is AttemptOutcome.timed_out:
                expired += 1
        if expired:
            logger.warning("Sweeper expired %d orphaned assignment(s)", expired)
        return expired

    # ------------------------------------------------------------------
    # Cancellations and trip lifecycle
    # ------------------------------------------------------------------

    async def cancel_request(self, request_id: str, requester_id: str) -> ServiceRequest:
        """Requester cancellation before any driver accepted."""
        now = self.clock()
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if request.requester_id != requester_id:
                raise RequestNotFound(f"Request {request_id} not found")
            moved = await transition_request(
                db, request_id, RequestStatusEnum.cancelled, now, cancelled_at=now,
            )
            if not moved:
                await db.rollback()
                raise RequestAlreadyResolved(f"Request {request_id} cannot be cancelled from {request.status.value}")

            store = DriverLocationStore(db)
            released: list[Assignment] = []
            for assignment in await open_assignments(db, request_id, AssignmentStatusEnum.pending):
                if await transition_assignment(
                    db, assignment.id, AssignmentStatusEnum.pending, AssignmentStatusEnum.cancelled, now,
                ):
                    await store.release(assignment.driver_id)
                    released.append(assignment)
            expired_offers = await close_pending_offers(db, request_id, OfferStatusEnum.expired, now)
            await db.commit()
            request = await load_request(db, request_id)

        for assignment in released:
            self._wake(assignment.id)
            await self.notifier.send(assignment.driver_id, {
                "type": "request_cancelled", "request_id": request_id, "assignment_id": assignment.id,
            })
        logger.info(
            "Request %s cancelled by requester (%d attempt(s) closed, %d offer(s) expired)",
            request_id, len(released), expired_offers,
        )
        await self.events.publish_request(request_id, "cancelled")
        return request

    async def driver_cancel(self, request_id: str, driver_id: str, reason: str | None = None) -> ServiceRequest:
        """The bound driver drops the job before pickup: release, record, re-dispatch."""
        now = self.clock()
        async with self.session_factory() as db:
            request = await load_request(db, request_id, for_update=True)
            if request.status != RequestStatusEnum.accepted or request.assigned_driver_id != driver_id:
                raise RequestAlreadyResolved(f"Request {request_id} is not bound to driver {driver_id}")
            store = DriverLocationStore(db)
            location = await store.get(driver_id)
            distance = (
                haversine_km(location.lat, location.lng, request.pickup_lat, request.pickup_lng)
                if location is not None else None
            )
            await transition_request(
                db, request_id, RequestStatusEnum.dispatching, now,
                sources=[RequestStatusEnum.accepted], assigned_driver_id=None, final_price=None,
            )
            for assignment in await open_assignments(db, request_id, AssignmentStatusEnum.accepted):
                await transition_assignment(
                    db, assignment.id, AssignmentStatusEnum.accepted, AssignmentStatusEnum.cancelled, now,
                )
            await store.release(driver_id)
            db.add(CancellationRecord(
                request_id=request_id,
                requester_id=request.requester_id,
                driver_id=driver_id,
                cancelled_by=CancelledByEnum.driver,
                status_at_cancellation=RequestStatusEnum.accepted,
                driver_distance_km=distance,
                driver_was_near=distance is not None and distance < self.settings.fraud_near_distance_km,
                reason=reason,
                created_at=now,
            ))
            await db.commit()
            request = await load_request(db, request_id)

        logger.warning("Driver %s dropped request %s (%s); re-dispatching", driver_id, request_id, reason)
        await self.events.publish_request(request_id, "driver_cancelled", driver_id=driver_id)
        await self.notifier.send(request.requester_id, {
            "type": "driver_cancelled", "request_id": request_id,
            "message": "Your driver cancelled. Looking for another one.",
        })
        self.start(request_id)
        return request

    async def start_trip(self, request_id: str, driver_id: str) -> ServiceRequest:
        async with self.session_factory() as db:
            moved = await transition_request(
                db, request_id, RequestStatusEnum.in_progress, self.clock(),
                sources=[RequestStatusEnum.accepted],
            ) if await self._is_bound(db, request_id, driver_id) else False
            if not moved:
                raise RequestAlreadyResolved(f"Request {request_id} cannot start for driver {driver_id}")
            await db.commit()
            request = await load_request(db, request_id)
        await self.events.publish_request(request_id, "in_progress", driver_id=driver_id)
        return request

    async def complete_trip(self, request_id: str, driver_id: str) -> ServiceRequest:
        now = self.clock()
        async with self.session_factory() as db:
            moved = await transition_request(
                db, request_id, RequestStatusEnum.completed, now,
                sources=[RequestStatusEnum.in_progress], assigned_driver_id=None,
            ) if await self._is_bound(db, request_id, driver_id) else False
            if not moved:
                raise RequestAlreadyResolved(f"Request {request_id} cannot complete for driver {driver_id}")
            for assignment in await open_assignments(db, request_id, AssignmentStatusEnum.accepted):
                await transition_assignment(
                    db, assignment.id, AssignmentStatusEnum.accepted, AssignmentStatusEnum.completed, now,
                )
            await db.execute(
                update(Driver)
                .where(Driver.id == driver_id)
                .values(completed_trips=Driver.completed_trips + 1)
                .execution_options(synchronize_session=False)
            )
            await DriverLocationStore(db).release(driver_id)
            await db.commit()
            request = await load_request(db, request_id)
        logger.info("Request %s completed by driver=%s", request_id, driver_id)
        await self.events.publish_request(request_id, "completed", driver_id=driver_id)
        return request

    @staticmethod
    async def _is_bound(db: AsyncSession, request_id: str, driver_id: str) -> bool:
        request = await load_request(db, request_id)
        return request.assigned_driver_id == driver_id
