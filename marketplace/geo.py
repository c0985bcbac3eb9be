"""
Geolocation helpers: distances, delivery estimates, pincodes and delivery zones.

Distances use the Haversine formula on a spherical Earth and are in kilometres.
"""
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

EARTH_RADIUS_KM = 6371.0
MAX_SEARCH_RADIUS_KM = 50.0
OUTSIDE_AREA = "Location outside delivery area"

PINCODE_RE = re.compile(r"^[1-9][0-9]{5}$")

PINCODES: Dict[str, Dict[str, str]] = {
    "400001": {"city": "Mumbai", "state": "Maharashtra", "district": "Mumbai"},
    "400002": {"city": "Mumbai", "state": "Maharashtra", "district": "Mumbai"},
    "400003": {"city": "Mumbai", "state": "Maharashtra", "district": "Mumbai"},
    "400004": {"city": "Mumbai", "state": "Maharashtra", "district": "Mumbai"},
    "400005": {"city": "Mumbai", "state": "Maharashtra", "district": "Mumbai"},
    "110001": {"city": "New Delhi", "state": "Delhi", "district": "Central Delhi"},
    "560001": {"city": "Bangalore", "state": "Karnataka", "district": "Bangalore Urban"},
    "600001": {"city": "Chennai", "state": "Tamil Nadu", "district": "Chennai"},
    "700001": {"city": "Kolkata", "state": "West Bengal", "district": "Kolkata"},
    "411001": {"city": "Pune", "state": "Maharashtra", "district": "Pune"},
    "500001": {"city": "Hyderabad", "state": "Telangana", "district": "Hyderabad"},
    "380001": {"city": "Ahmedabad", "state": "Gujarat", "district": "Ahmedabad"},
    "302001": {"city": "Jaipur", "state": "Rajasthan", "district": "Jaipur"},
}

DEFAULT_LOCATION = {"latitude": 19.0760, "longitude": 72.8777, "city": "Mumbai", "state": "Maharashtra"}

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def round_distance(distance: float) -> float:
    return round(distance, 2)


def estimate_delivery_minutes(distance: float, base: int = 30) -> int:
    """Base time plus 2 min/km, 20% traffic buffer, rounded up to 5 minutes."""
    return int(math.ceil((base + distance * 2) * 1.2 / 5) * 5)


def valid_coordinates(latitude: float, longitude: float) -> bool:
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def validate_pincode(pincode: str) -> bool:
    return bool(PINCODE_RE.match(pincode or ""))


def pincode_info(pincode: str) -> Optional[Dict[str, str]]:
    if not validate_pincode(pincode):
        return None
    info = PINCODES.get(pincode)
    return dict(info) if info else None


def detect_location(ip_address: Optional[str]) -> Dict[str, Any]:
    # Mock lookup: every address resolves to the default city
    return dict(DEFAULT_LOCATION)


def shop_coordinates(shop: Dict[str, Any]) -> Optional[Dict[str, float]]:
    coords = (shop.get("address") or {}).get("coordinates") or {}
    if coords.get("latitude") is None or coords.get("longitude") is None:
        return None
    return coords


def distance_to_shop(shop: Dict[str, Any], latitude: float, longitude: float) -> Optional[float]:
    coords = shop_coordinates(shop)
    if coords is None:
        return None
    return haversine_km(latitude, longitude, coords["latitude"], coords["longitude"])


def _zone_matches(zone: Dict[str, Any], distance: Optional[float], pincode: Optional[str], area: Optional[str]) -> bool:
    kind = zone.get("type")
    value = str(zone.get("value", ""))
    if kind == "pincode":
        return bool(pincode) and value == pincode
    if kind == "area":
        return bool(area) and area.lower() in value.lower()
    if kind == "radius":
        if distance is None:
            return False
        try:
            return distance <= float(value)
        except ValueError:
            return False
    return False


def resolve_delivery(
    shop: Dict[str, Any],
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    pincode: Optional[str] = None,
    area: Optional[str] = None,
) -> Dict[str, Any]:
    """Decide whether a shop delivers to a location and at what fee.

    Active delivery zones are tried in order and the first match wins. Without a
    zone match the shop's service radius decides when both ends have coordinates.
    A shop with neither zones nor coordinates delivers everywhere.
    """
    settings = shop.get("settings") or {}
    base_fee = settings.get("delivery_fee", 0) or 0
    zones = [z for z in shop.get("delivery_zones") or [] if z.get("is_active", True)]

    distance = None
    if latitude is not None and longitude is not None:
        distance = distance_to_shop(shop, latitude, longitude)
    reported = round_distance(distance) if distance is not None else None

    for zone in zones:
        if _zone_matches(zone, distance, pincode, area):
            fee = zone.get("delivery_fee")
            return {
                "available": True,
                "fee": base_fee if fee is None else fee,
                "distance": reported,
                "zone": {"type": zone["type"], "value": zone["value"]},
            }

    if distance is not None:
        radius = settings.get("service_radius") or 5
        if distance <= radius:
            return {"available": True, "fee": base_fee, "distance": reported, "zone": None}
        return {"available": False, "fee": None, "distance": reported, "zone": None, "reason": OUTSIDE_AREA}

    if not zones and shop_coordinates(shop) is None:
        return {"available": True, "fee": base_fee, "distance": None, "zone": None}

    return {"available": False, "fee": None, "distance": reported, "zone": None, "reason": OUTSIDE_AREA}


def service_tiers(shop: Dict[str, Any]) -> List[Dict[str, Any]]:
    settings = shop.get("settings") or {}
    radius = settings.get("service_radius") or 5
    fee = settings.get("delivery_fee", 0) or 0
    return [
        {"name": "Express Zone", "radius_km": min(radius * 0.3, 2), "delivery_time": "15-25 mins", "fee": 0},
        {"name": "Standard Zone", "radius_km": min(radius * 0.7, 5), "delivery_time": "25-35 mins", "fee": fee * 0.5},
        {"name": "Extended Zone", "radius_km": radius, "delivery_time": "35-50 mins", "fee": fee},
    ]


def is_currently_open(shop: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    now = now or datetime.now()
    today = WEEKDAYS[now.weekday()]
    current = now.strftime("%H:%M")
    for hours in shop.get("business_hours") or []:
        if hours.get("day") != today:
            continue
        if not hours.get("is_open"):
            return False
        open_time, close_time = hours.get("open_time"), hours.get("close_time")
        if not open_time or not close_time:
            return False
        return _hhmm(open_time) <= current <= _hhmm(close_time)
    return False


def _hhmm(value: str) -> str:
    # "9:00" and "09:00" both compare correctly once zero padded
    hour, minute = value.split(":")
    return f"{int(hour):02d}:{minute}"
