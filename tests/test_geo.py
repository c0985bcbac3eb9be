"""Tests for distances, delivery zones, pincodes and opening hours."""

from datetime import datetime

import pytest

from marketplace import geo


def make_shop(zones=None, coordinates=True, **settings):
    address = {"city": "Mumbai", "pincode": "400001"}
    if coordinates:
        address["coordinates"] = {"latitude": 19.0760, "longitude": 72.8777}
    base = {"delivery_fee": 30, "service_radius": 5}
    base.update(settings)
    return {"address": address, "settings": base, "delivery_zones": zones or []}


class TestHaversine:
    def test_same_point_is_zero(self):
        assert geo.haversine_km(19.0760, 72.8777, 19.0760, 72.8777) == 0

    def test_mumbai_to_pune(self):
        distance = geo.haversine_km(19.0760, 72.8777, 18.5204, 73.8567)
        assert 115 < distance < 125

    def test_symmetric(self):
        a = geo.haversine_km(12.9716, 77.5946, 13.0827, 80.2707)
        b = geo.haversine_km(13.0827, 80.2707, 12.9716, 77.5946)
        assert a == pytest.approx(b)

    def test_rounding(self):
        assert geo.round_distance(1.23456) == 1.23


class TestDeliveryEstimate:
    @pytest.mark.parametrize("distance,base,expected", [
        (0, 30, 40),
        (5, 30, 50),
        (2.5, 30, 45),
        (10, 15, 45),
    ])
    def test_estimate(self, distance, base, expected):
        assert geo.estimate_delivery_minutes(distance, base) == expected


class TestPincode:
    def test_valid_format(self):
        assert geo.validate_pincode("400001")
        assert not geo.validate_pincode("040001")
        assert not geo.validate_pincode("40001")
        assert not geo.validate_pincode("")

    def test_lookup(self):
        assert geo.pincode_info("560001")["city"] == "Bangalore"
        assert geo.pincode_info("999999") is None
        assert geo.pincode_info("abc") is None

    def test_detect_location_defaults_to_mumbai(self):
        assert geo.detect_location("203.0.113.9")["city"] == "Mumbai"


class TestResolveDelivery:
    def test_pincode_zone_with_own_fee(self):
        shop = make_shop(zones=[{"type": "pincode", "value": "400002", "delivery_fee": 10}])
        result = geo.resolve_delivery(shop, pincode="400002")
        assert result["available"] is True
        assert result["fee"] == 10
        assert result["zone"] == {"type": "pincode", "value": "400002"}

    def test_area_zone_is_case_insensitive_substring(self):
        shop = make_shop(zones=[{"type": "area", "value": "Andheri West"}])
        result = geo.resolve_delivery(shop, area="andheri")
        assert result["available"] is True
        assert result["fee"] == 30

    def test_radius_zone(self):
        shop = make_shop(zones=[{"type": "radius", "value": "2", "delivery_fee": 5}])
        result = geo.resolve_delivery(shop, 19.0800, 72.8800)
        assert result["available"] is True
        assert result["fee"] == 5
        assert result["distance"] < 2

    def test_first_matching_zone_wins(self):
        shop = make_shop(zones=[
            {"type": "pincode", "value": "400001", "delivery_fee": 15},
            {"type": "area", "value": "Mumbai", "delivery_fee": 25},
        ])
        assert geo.resolve_delivery(shop, pincode="400001", area="Mumbai")["fee"] == 15

    def test_inactive_zone_is_skipped(self):
        shop = make_shop(zones=[{"type": "pincode", "value": "400002", "is_active": False}])
        result = geo.resolve_delivery(shop, pincode="400002")
        assert result["available"] is False
        assert result["reason"] == geo.OUTSIDE_AREA

    def test_service_radius_without_zone_match(self):
        shop = make_shop()
        assert geo.resolve_delivery(shop, 19.0800, 72.8800)["available"] is True
        far = geo.resolve_delivery(shop, 18.5204, 73.8567)
        assert far["available"] is False
        assert far["distance"] > 100

    def test_shop_without_zones_or_coordinates_delivers(self):
        shop = make_shop(coordinates=False)
        result = geo.resolve_delivery(shop, pincode="110001")
        assert result["available"] is True
        assert result["fee"] == 30

    def test_no_customer_location_and_no_zone_match(self):
        shop = make_shop()
        assert geo.resolve_delivery(shop, pincode="110001")["available"] is False


class TestServiceTiers:
    def test_tiers_follow_radius(self):
        tiers = geo.service_tiers(make_shop(service_radius=10, delivery_fee=40))
        assert [t["name"] for t in tiers] == ["Express Zone", "Standard Zone", "Extended Zone"]
        assert [t["radius_km"] for t in tiers] == [2, 5, 10]
        assert [t["fee"] for t in tiers] == [0, 20, 40]

    def test_small_radius(self):
        tiers = geo.service_tiers(make_shop(service_radius=2))
        assert tiers[0]["radius_km"] == pytest.approx(0.6)
        assert tiers[1]["radius_km"] == pytest.approx(1.4)


class TestOpeningHours:
    # 2024-01-01 was a Monday
    HOURS = [
        {"day": "monday", "is_open": True, "open_time": "9:00", "close_time": "21:00"},
        {"day": "tuesday", "is_open": False},
    ]

    def test_open_within_hours(self):
        shop = {"business_hours": self.HOURS}
        assert geo.is_currently_open(shop, datetime(2024, 1, 1, 10, 30))

    def test_closed_before_opening(self):
        shop = {"business_hours": self.HOURS}
        assert not geo.is_currently_open(shop, datetime(2024, 1, 1, 8, 59))

    def test_closed_day(self):
        shop = {"business_hours": self.HOURS}
        assert not geo.is_currently_open(shop, datetime(2024, 1, 2, 12, 0))

    def test_day_without_hours(self):
        shop = {"business_hours": self.HOURS}
        assert not geo.is_currently_open(shop, datetime(2024, 1, 3, 12, 0))
