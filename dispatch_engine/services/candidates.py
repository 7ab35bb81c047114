"""
Candidate locator: eligible, fresh, compatible drivers within the service radius.
"""
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.database import utcnow
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.services.driver_store import DriverFilters, DriverLocationStore
from dispatch_engine.services.geo import Point, bounding_box, haversine_km
from dispatch_engine.services.pricing import compatible_vehicle_classes
from dispatch_engine.services.scoring import Candidate

logger = logging.getLogger(__name__)


class CandidateLocator:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock

    def max_radius_km(self, request: ServiceRequest) -> float:
        service_type = getattr(request.service_type, "value", request.service_type)
        return self.settings.max_radius_km.get(service_type, 15.0)

    async def find_candidates(
        self,
        db: AsyncSession,
        request: ServiceRequest,
        exclude: Iterable[str] = (),
    ) -> list[Candidate]:
        excluded = set(exclude)
        radius = self.max_radius_km(request)
        pickup = Point(request.pickup_lat, request.pickup_lng)
        filters = DriverFilters(
            vehicle_classes=compatible_vehicle_classes(request.vehicle_class),
            seen_after=self.clock() - timedelta(seconds=self.settings.driver_freshness_seconds),
            box=bounding_box(pickup, radius),
        )
        rows = await DriverLocationStore(db).query(filters)

        candidates: list[Candidate] = []
        for location, driver in rows:
            if location.driver_id in excluded:
                continue
            distance = haversine_km(pickup.lat, pickup.lng, location.lat, location.lng)
            if distance > radius:
                continue
            candidates.append(
                Candidate(
                    driver_id=location.driver_id,
                    distance_km=distance,
                    rating=driver.rating,
                    completed_trips=driver.completed_trips,
                    vehicle_class=location.vehicle_class,
                )
            )
        logger.info(
            "Request %s: %d candidate(s) within %.1fkm (%d row(s) scanned)",
            request.id, len(candidates), radius, len(rows),
        )
        return candidates
