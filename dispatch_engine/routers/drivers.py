"""
Drivers router: registration, presence, assignment responses, bidding
offers and trip progress.
"""
import logging
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.database import get_db
from dispatch_engine.engine import DispatchEngine, get_engine
from dispatch_engine.middleware.auth import ensure_same_driver, get_current_driver
from dispatch_engine.models.driver import Driver
from dispatch_engine.schemas.schemas import (
    AssignmentResponse, DriverCancelRequest, DriverCreateRequest, DriverResponse,
    LocationUpdateRequest, OfferCreateRequest, OfferResponse, RequestResponse,
)
from dispatch_engine.services.driver_store import DriverLocationStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DriverResponse)
async def create_driver(
    payload: DriverCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Register a new driver. No auth required for onboarding.

    Rating, trip count and verification start at their defaults and are
    never taken from the request body.
    """
    driver = Driver(**payload.model_dump())
    db.add(driver)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Phone number already registered")
    return DriverResponse.model_validate(driver)


@router.patch("/{driver_id}/status", status_code=status.HTTP_200_OK)
async def update_driver_status(
    driver_id: str,
    online: bool,
    db: AsyncSession = Depends(get_db),
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    """Go online / offline. A position must have been reported first."""
    ensure_same_driver(driver_id, token_driver_id)
    updated = await DriverLocationStore(db).set_online(driver_id, online, engine.clock())
    if not updated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Report a location before going online"
        )
    await db.commit()
    logger.info("Driver %s is now %s", driver_id, "online" if online else "offline")
    return {"id": driver_id, "online": online}


@router.post("/{driver_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    db: AsyncSession = Depends(get_db),
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    driver = await db.get(Driver, driver_id)
    if driver is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Driver not found")
    now = engine.clock()
    seen_at = payload.timestamp or now
    if seen_at.tzinfo is None:
        seen_at = seen_at.replace(tzinfo=timezone.utc)
    # A device clock running ahead must not keep a stale position looking fresh.
    seen_at = min(seen_at, now)
    await DriverLocationStore(db).record_position(driver, payload.lat, payload.lng, seen_at)
    await db.commit()


@router.post("/{driver_id}/assignments/{assignment_id}/accept", response_model=RequestResponse)
async def accept_assignment(
    driver_id: str,
    assignment_id: str,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    request = await engine.coordinator.accept_assignment(assignment_id, driver_id)
    return RequestResponse.model_validate(request)


@router.post("/{driver_id}/assignments/{assignment_id}/reject", response_model=AssignmentResponse)
async def reject_assignment(
    driver_id: str,
    assignment_id: str,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    assignment = await engine.coordinator.reject_assignment(assignment_id, driver_id)
    return AssignmentResponse.model_validate(assignment)


@router.post("/{driver_id}/offers", status_code=status.HTTP_201_CREATED, response_model=OfferResponse)
async def submit_offer(
    driver_id: str,
    payload: OfferCreateRequest,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    offer = await engine.arena.submit_offer(
        payload.request_id, driver_id, payload.price, payload.message, payload.eta_minutes,
    )
    return OfferResponse.model_validate(offer)


@router.post("/{driver_id}/offers/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    driver_id: str,
    offer_id: str,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    offer = await engine.arena.withdraw_offer(offer_id, driver_id)
    return OfferResponse.model_validate(offer)


@router.post("/{driver_id}/requests/{request_id}/cancel", response_model=RequestResponse)
async def driver_cancel(
    driver_id: str,
    request_id: str,
    payload: DriverCancelRequest | None = None,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    """Drop an accepted job before pickup; the request goes back to dispatch."""
    ensure_same_driver(driver_id, token_driver_id)
    request = await engine.coordinator.driver_cancel(request_id, driver_id, payload.reason if payload else None)
    return RequestResponse.model_validate(request)


@router.post("/{driver_id}/requests/{request_id}/start", response_model=RequestResponse)
async def start_trip(
    driver_id: str,
    request_id: str,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    return RequestResponse.model_validate(await engine.coordinator.start_trip(request_id, driver_id))


@router.post("/{driver_id}/requests/{request_id}/complete", response_model=RequestResponse)
async def complete_trip(
    driver_id: str,
    request_id: str,
    engine: DispatchEngine = Depends(get_engine),
    token_driver_id: str = Depends(get_current_driver),
):
    ensure_same_driver(driver_id, token_driver_id)
    return RequestResponse.model_validate(await engine.coordinator.complete_trip(request_id, driver_id))
