import pytest

from dispatch_engine.services.geo import Point, bounding_box, haversine_km, is_valid_coordinate


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_km(-4.3, 15.3, -4.3, 15.3) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)

    def test_symmetric(self):
        assert haversine_km(-4.3, 15.3, -4.4, 15.2) == pytest.approx(haversine_km(-4.4, 15.2, -4.3, 15.3))


class TestBoundingBox:
    def test_encloses_radius(self):
        center = Point(-4.3, 15.3)
        box = bounding_box(center, 15.0)
        assert haversine_km(center.lat, center.lng, box.max_lat, center.lng) == pytest.approx(15.0, rel=1e-6)
        assert box.min_lng < center.lng < box.max_lng

    def test_clamped_at_pole(self):
        box = bounding_box(Point(89.99, 0.0), 50.0)
        assert box.max_lat == 90.0


class TestCoordinates:
    @pytest.mark.parametrize("lat,lng", [(None, 1.0), (91.0, 0.0), (0.0, -181.0)])
    def test_invalid(self, lat, lng):
        assert not is_valid_coordinate(lat, lng)

    def test_valid_extremes(self):
        assert is_valid_coordinate(-90.0, 180.0)
