"""
Request intake: validate, zone, price, persist as ``pending``.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.exceptions import InvalidRequest, RequesterBanned, UnsupportedVehicleClass
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.models.requester import Requester
from dispatch_engine.schemas.schemas import (
    PriorityEnum, RequestStatusEnum, ServiceTypeEnum, VehicleClassEnum,
)
from dispatch_engine.services.geo import Point, distance_km, is_valid_coordinate
from dispatch_engine.services.pricing import PricingTable, apply_surge, estimate_price, to_money
from dispatch_engine.services.zones import ZoneService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestDraft:
    requester_id: str
    pickup_lat: float | None
    pickup_lng: float | None
    dest_lat: float | None
    dest_lng: float | None
    service_type: ServiceTypeEnum | str = ServiceTypeEnum.taxi
    vehicle_class: VehicleClassEnum | str = VehicleClassEnum.standard
    priority: PriorityEnum | str = PriorityEnum.normal
    bidding: bool = False
    budget_ceiling: Decimal | None = None


@dataclass(frozen=True)
class Quote:
    pickup_zone_id: str | None
    dest_zone_id: str | None
    distance_km: float
    estimated_price: Decimal
    surge_multiplier: float
    surge_price: Decimal


class RequestIntake:
    def __init__(
        self,
        settings: Settings,
        zones: ZoneService,
        pricing: PricingTable | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.zones = zones
        self.pricing = pricing or PricingTable()
        self.clock = clock

    def quote(self, draft: RequestDraft) -> Quote:
        """Pure part of intake: validation and pricing, no persistence."""
        coords = (draft.pickup_lat, draft.pickup_lng, draft.dest_lat, draft.dest_lng)
        if not (is_valid_coordinate(draft.pickup_lat, draft.pickup_lng)
                and is_valid_coordinate(draft.dest_lat, draft.dest_lng)):
            raise InvalidRequest(f"Coordinates missing or out of range: {coords}")
        pickup = Point(draft.pickup_lat, draft.pickup_lng)
        dest = Point(draft.dest_lat, draft.dest_lng)
        if pickup == dest:
            raise InvalidRequest("Pickup and destination are identical")

        try:
            service_type = ServiceTypeEnum(draft.service_type)
            vehicle_class = VehicleClassEnum(draft.vehicle_class)
        except ValueError as exc:
            raise UnsupportedVehicleClass(str(exc)) from exc
        try:
            PriorityEnum(draft.priority)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown priority {draft.priority!r}") from exc

        pickup_zone = self.zones.locate(pickup)
        dest_zone = self.zones.locate(dest)
        rule = self.pricing.rule_for(service_type, vehicle_class, pickup_zone.id if pickup_zone else None)

        distance = distance_km(pickup, dest)
        estimated = estimate_price(rule, distance)
        surge = pickup_zone.surge_for(vehicle_class) if pickup_zone else 1.0
        return Quote(
            pickup_zone_id=pickup_zone.id if pickup_zone else None,
            dest_zone_id=dest_zone.id if dest_zone else None,
            distance_km=distance,
            estimated_price=estimated,
            surge_multiplier=surge,
            surge_price=apply_surge(estimated, surge),
        )

    async def create(self, db: AsyncSession, draft: RequestDraft) -> ServiceRequest:
        banned = await db.execute(
            select(Requester.is_banned).where(Requester.id == draft.requester_id)
        )
        if banned.scalar_one_or_none():
            raise RequesterBanned(f"Requester {draft.requester_id} is banned")
        if draft.budget_ceiling is not None and draft.budget_ceiling <= 0:
            raise InvalidRequest("Budget ceiling must be positive")

        quote = self.quote(draft)
        now = self.clock()
        request = ServiceRequest(
            requester_id=draft.requester_id,
            pickup_lat=draft.pickup_lat,
            pickup_lng=draft.pickup_lng,
            dest_lat=draft.dest_lat,
            dest_lng=draft.dest_lng,
            pickup_zone_id=quote.pickup_zone_id,
            dest_zone_id=quote.dest_zone_id,
            service_type=ServiceTypeEnum(draft.service_type),
            vehicle_class=VehicleClassEnum(draft.vehicle_class),
            priority=PriorityEnum(draft.priority),
            distance_km=round(quote.distance_km, 3),
            estimated_price=quote.estimated_price,
            surge_multiplier=quote.surge_multiplier,
            surge_price=quote.surge_price,
            currency=self.settings.currency,
            status=RequestStatusEnum.pending,
            bidding=draft.bidding,
            budget_ceiling=to_money(draft.budget_ceiling) if draft.budget_ceiling is not None else None,
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        await db.commit()
        logger.info(
            "Request %s created: %s/%s %.2fkm est=%s surge=%.2fx -> %s %s",
            request.id, request.service_type.value, request.vehicle_class.value, quote.distance_km,
            quote.estimated_price, quote.surge_multiplier, quote.surge_price, request.currency,
        )
        return request
