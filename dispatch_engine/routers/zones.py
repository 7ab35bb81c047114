"""
Zones router: GET /v1/zones/locate
"""
from fastapi import APIRouter, Depends, Query

from dispatch_engine.engine import DispatchEngine, get_engine
from dispatch_engine.schemas.schemas import VehicleClassEnum, ZoneLocateResponse
from dispatch_engine.services.geo import Point

router = APIRouter(prefix="/v1/zones", tags=["Zones"])


@router.get("/locate", response_model=ZoneLocateResponse)
async def locate_zone(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    vehicle_class: VehicleClassEnum = VehicleClassEnum.standard,
    engine: DispatchEngine = Depends(get_engine),
):
    point = Point(lat, lng)
    zone = engine.zones.locate(point)
    return ZoneLocateResponse(
        zone_id=zone.id if zone else None,
        zone_name=zone.name if zone else None,
        surge_multiplier=engine.zones.surge_multiplier(point, vehicle_class),
    )
