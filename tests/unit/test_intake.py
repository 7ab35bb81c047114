"""
Unit tests for request validation and quoting (no database).
"""
import pytest
from decimal import Decimal

from dispatch_engine.config import Settings
from dispatch_engine.exceptions import InvalidRequest, UnsupportedVehicleClass
from dispatch_engine.schemas.schemas import ServiceTypeEnum, VehicleClassEnum
from dispatch_engine.services.geo import haversine_km
from dispatch_engine.services.intake import RequestDraft, RequestIntake
from dispatch_engine.services.pricing import to_money
from dispatch_engine.services.zones import ZoneService


@pytest.fixture
def intake():
    return RequestIntake(Settings(), ZoneService.from_config())


def draft(pickup=(-4.380, 15.300), dest=(-4.400, 15.320), **kwargs):
    return RequestDraft(
        requester_id="req-1",
        pickup_lat=pickup[0], pickup_lng=pickup[1],
        dest_lat=dest[0], dest_lng=dest[1],
        **kwargs,
    )


class TestQuote:
    def test_price_follows_distance_without_surge(self, intake):
        quote = intake.quote(draft())
        distance = haversine_km(-4.380, 15.300, -4.400, 15.320)
        assert quote.distance_km == pytest.approx(distance)
        assert quote.pickup_zone_id == "kinshasa-centre"
        assert quote.surge_multiplier == 1.0
        expected = to_money(Decimal("3000") + Decimal(str(distance)) * Decimal("1500"))
        assert quote.estimated_price == expected
        assert quote.surge_price == quote.estimated_price

    def test_gombe_pickup_applies_surge(self, intake):
        quote = intake.quote(draft(pickup=(-4.310, 15.300)))
        assert quote.pickup_zone_id == "gombe"
        assert quote.surge_multiplier == 1.2
        assert quote.surge_price == to_money(quote.estimated_price * Decimal("1.2"))

    def test_outside_any_zone_still_priced(self, intake):
        quote = intake.quote(draft(pickup=(-5.000, 16.000), dest=(-5.010, 16.010)))
        assert quote.pickup_zone_id is None
        assert quote.dest_zone_id is None
        assert quote.surge_multiplier == 1.0

    def test_identical_points_rejected(self, intake):
        with pytest.raises(InvalidRequest):
            intake.quote(draft(pickup=(-4.38, 15.3), dest=(-4.38, 15.3)))

    @pytest.mark.parametrize("pickup", [(None, 15.3), (95.0, 15.3), (-4.38, 200.0)])
    def test_bad_coordinates_rejected(self, intake, pickup):
        with pytest.raises(InvalidRequest):
            intake.quote(draft(pickup=pickup))

    def test_class_not_offered_for_service(self, intake):
        with pytest.raises(UnsupportedVehicleClass):
            intake.quote(draft(service_type=ServiceTypeEnum.delivery, vehicle_class=VehicleClassEnum.eco))

    def test_unknown_vehicle_class(self, intake):
        with pytest.raises(UnsupportedVehicleClass):
            intake.quote(draft(vehicle_class="hovercraft"))

    def test_unknown_priority(self, intake):
        with pytest.raises(InvalidRequest):
            intake.quote(draft(priority="asap"))
