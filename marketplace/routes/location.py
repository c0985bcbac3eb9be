from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from .. import database, geo
from ..schemas import BusinessType
from ..utils import object_id, serialize_doc

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/location", tags=["location"])

SHOP_FIELDS = {
    "business_name": 1, "slug": 1, "business_type": 1, "category_ids": 1, "address": 1,
    "contact_info": 1, "business_hours": 1, "settings": 1, "delivery_zones": 1,
    "images": 1, "stats": 1, "is_featured": 1,
}


class Point(BaseModel):
    latitude: float
    longitude: float


class DistanceRequest(BaseModel):
    from_location: Point
    to_location: Point


class DeliveryCheckRequest(BaseModel):
    shop_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    pincode: Optional[str] = None
    area: Optional[str] = None


def _check_coordinates(latitude: float, longitude: float) -> None:
    if not geo.valid_coordinates(latitude, longitude):
        raise HTTPException(status_code=400, detail="Invalid coordinates")


def _measure(req: DistanceRequest) -> float:
    for point in (req.from_location, req.to_location):
        _check_coordinates(point.latitude, point.longitude)
    return geo.haversine_km(
        req.from_location.latitude, req.from_location.longitude,
        req.to_location.latitude, req.to_location.longitude,
    )


def _active_shops(query: Dict[str, Any]):
    base = {"is_active": True, "verification.status": "verified"}
    base.update(query)
    return database.db["shop"].find(base, SHOP_FIELDS)


@router.get("/nearby-shops")
def nearby_shops(
    latitude: float,
    longitude: float,
    radius: float = Query(10, gt=0),
    business_type: Optional[BusinessType] = None,
    category: Optional[str] = None,
    limit: int = Query(20, ge=1),
):
    _check_coordinates(latitude, longitude)
    radius = min(radius, geo.MAX_SEARCH_RADIUS_KM)
    limit = min(limit, 50)
    query: Dict[str, Any] = {}
    if business_type:
        query["business_type"] = business_type
    if category:
        query["category_ids"] = category

    found = []
    for shop in _active_shops(query):
        distance = geo.distance_to_shop(shop, latitude, longitude)
        if distance is not None and distance <= radius:
            found.append((distance, shop))
    found.sort(key=lambda pair: pair[0])

    shops: List[Dict[str, Any]] = []
    for distance, shop in found[:limit]:
        data = serialize_doc(shop)
        preparation = (shop.get("settings") or {}).get("preparation_time", 30)
        data["distance"] = geo.round_distance(distance)
        data["estimated_delivery_time"] = geo.estimate_delivery_minutes(distance, preparation)
        data["is_currently_open"] = geo.is_currently_open(shop)
        shops.append(data)
    return {
        "shops": shops,
        "search_location": {"latitude": latitude, "longitude": longitude},
        "radius": radius,
        "total": len(shops),
    }


@router.post("/distance")
def distance(req: DistanceRequest):
    km = _measure(req)
    return {
        "distance": geo.round_distance(km),
        "unit": "km",
        "estimated_time": geo.estimate_delivery_minutes(km),
    }


@router.post("/route")
def route(req: DistanceRequest):
    km = _measure(req)
    return {
        "route": {
            "distance": geo.round_distance(km),
            "duration": geo.estimate_delivery_minutes(km),
            "from_location": req.from_location.model_dump(),
            "to_location": req.to_location.model_dump(),
            "estimated": True,
        }
    }


@router.get("/pincode/{pincode}")
def pincode(pincode: str):
    if not geo.validate_pincode(pincode):
        raise HTTPException(status_code=400, detail="Invalid pincode format")
    info = geo.pincode_info(pincode)
    if info is None:
        raise HTTPException(status_code=404, detail="Pincode not found")
    return {"pincode": pincode, **info}


@router.post("/delivery-check")
def delivery_check(req: DeliveryCheckRequest):
    shop = database.db["shop"].find_one({
        "_id": object_id(req.shop_id, "shop id"),
        "is_active": True,
        "verification.status": "verified",
    })
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    if req.latitude is not None and req.longitude is not None:
        _check_coordinates(req.latitude, req.longitude)
    if req.pincode and not geo.validate_pincode(req.pincode):
        raise HTTPException(status_code=400, detail="Invalid pincode format")

    result = geo.resolve_delivery(shop, req.latitude, req.longitude, req.pincode, req.area)
    preparation = (shop.get("settings") or {}).get("preparation_time", 30)
    estimated = None
    if result["available"]:
        estimated = geo.estimate_delivery_minutes(result["distance"] or 0, preparation)
    return {
        "shop": {"id": req.shop_id, "business_name": shop["business_name"]},
        "is_deliverable": result["available"],
        "delivery_fee": result["fee"],
        "distance": result["distance"],
        "zone": result["zone"],
        "reason": result.get("reason"),
        "estimated_delivery_time": estimated,
        "minimum_order_amount": (shop.get("settings") or {}).get("minimum_order_amount", 0),
    }


@router.get("/detect")
def detect(request: Request):
    ip_address = request.client.host if request.client else None
    location = geo.detect_location(ip_address)
    logger.debug("location_detected", ip=ip_address, city=location["city"])
    return {"location": location, "ip": ip_address}


@router.get("/shops-by-type")
def shops_by_type(
    business_type: BusinessType,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    limit: int = Query(20, ge=1, le=50),
):
    if latitude is not None and longitude is not None:
        _check_coordinates(latitude, longitude)
    shops = []
    for shop in _active_shops({"business_type": business_type}).sort("stats.average_rating", -1):
        data = serialize_doc(shop)
        if latitude is not None and longitude is not None:
            km = geo.distance_to_shop(shop, latitude, longitude)
            data["distance"] = geo.round_distance(km) if km is not None else None
        shops.append(data)
    if latitude is not None and longitude is not None:
        shops.sort(key=lambda s: s["distance"] if s["distance"] is not None else float("inf"))
    return {"business_type": business_type, "shops": shops[:limit]}


@router.get("/delivery-zones/{shop_id}")
def delivery_zones(shop_id: str):
    shop = database.db["shop"].find_one({"_id": object_id(shop_id, "shop id")}, SHOP_FIELDS)
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    settings = shop.get("settings") or {}
    return {
        "shop": {"id": shop_id, "business_name": shop["business_name"]},
        "delivery_zones": shop.get("delivery_zones", []),
        "service_tiers": geo.service_tiers(shop),
        "service_radius": settings.get("service_radius", 5),
        "base_delivery_fee": settings.get("delivery_fee", 0),
        "free_delivery_above": settings.get("free_delivery_above"),
    }
