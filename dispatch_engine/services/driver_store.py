"""
Live driver-location store.

The only way availability changes is ``compare_and_swap_available``: a single
conditional UPDATE whose rowcount tells the caller whether it won. Nothing
reads the flag, decides in Python, then writes it back.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.database import utcnow
from dispatch_engine.models.driver import Driver, DriverLocation
from dispatch_engine.schemas.schemas import VehicleClassEnum
from dispatch_engine.services.geo import BoundingBox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriverFilters:
    vehicle_classes: frozenset[VehicleClassEnum]
    seen_after: datetime
    box: BoundingBox | None = None
    online: bool = True
    available: bool = True
    verified: bool = True


class DriverLocationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def query(self, filters: DriverFilters) -> list[tuple[DriverLocation, Driver]]:
        stmt = (
            select(DriverLocation, Driver)
            .join(Driver, Driver.id == DriverLocation.driver_id)
            .where(
                DriverLocation.online == filters.online,
                DriverLocation.available == filters.available,
                DriverLocation.verified == filters.verified,
                DriverLocation.vehicle_class.in_(sorted(filters.vehicle_classes)),
                DriverLocation.last_seen_at >= filters.seen_after,
            )
        )
        if filters.box is not None:
            box = filters.box
            stmt = stmt.where(DriverLocation.lat.between(box.min_lat, box.max_lat))
            # A box straddling the antimeridian is left unfiltered on longitude.
            if -180.0 <= box.min_lng and box.max_lng <= 180.0:
                stmt = stmt.where(DriverLocation.lng.between(box.min_lng, box.max_lng))
        result = await self.db.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def compare_and_swap_available(self, driver_id: str, expected: bool, new: bool) -> bool:
        result = await self.db.execute(
            update(DriverLocation)
            .where(DriverLocation.driver_id == driver_id, DriverLocation.available == expected)
            .values(available=new)
            .execution_options(synchronize_session=False)
        )
        swapped = result.rowcount == 1
        if not swapped:
            logger.debug("CAS available %s->%s lost for driver=%s", expected, new, driver_id)
        return swapped

    async def reserve(self, driver_id: str) -> bool:
        return await self.compare_and_swap_available(driver_id, expected=True, new=False)

    async def release(self, driver_id: str) -> bool:
        released = await self.compare_and_swap_available(driver_id, expected=False, new=True)
        if not released:
            logger.warning("Release of driver=%s found it already available", driver_id)
        return released

    async def get(self, driver_id: str) -> DriverLocation | None:
        result = await self.db.execute(
            select(DriverLocation)
            .where(DriverLocation.driver_id == driver_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_position(
        self,
        driver: Driver,
        lat: float,
        lng: float,
        seen_at: datetime | None = None,
    ) -> DriverLocation:
        """Upsert position / last-seen. Never touches ``available`` on an existing row."""
        seen_at = seen_at or utcnow()
        location = await self.get(driver.id)
        if location is None:
            location = DriverLocation(
                driver_id=driver.id,
                lat=lat,
                lng=lng,
                online=False,
                available=True,
                verified=driver.verified,
                vehicle_class=driver.vehicle_class,
                last_seen_at=seen_at,
            )
            self.db.add(location)
        else:
            location.lat = lat
            location.lng = lng
            location.verified = driver.verified
            location.vehicle_class = driver.vehicle_class
            location.last_seen_at = seen_at
        return location

    async def set_online(self, driver_id: str, online: bool, seen_at: datetime | None = None) -> bool:
        values = {"online": online}
        if online:
            values["last_seen_at"] = seen_at or utcnow()
        result = await self.db.execute(
            update(DriverLocation)
            .where(DriverLocation.driver_id == driver_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
