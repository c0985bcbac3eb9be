from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import database, geo
from ..errors import ForbiddenError
from ..notifications import notify
from ..pricing import with_derived_fields
from ..schemas import (
    BusinessHours,
    BusinessType,
    ContactInfo,
    DeliveryZone,
    PaymentMethod,
    ProductStatus,
    Shop,
    ShopAddress,
    ShopDocuments,
    ShopImages,
    ShopSettings,
)
from ..security import get_current_user, get_optional_user, require_admin, require_roles
from ..utils import as_utc, maybe_object_id, object_id, paginate, serialize_doc, slugify, text_match, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/shops", tags=["shops"])


class ShopCreateRequest(BaseModel):
    business_name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    business_type: BusinessType
    category_ids: List[str] = []
    contact_info: ContactInfo
    address: ShopAddress
    documents: Optional[ShopDocuments] = None
    business_hours: List[BusinessHours] = []
    settings: Optional[ShopSettings] = None
    delivery_zones: List[DeliveryZone] = []
    images: Optional[ShopImages] = None
    social_media: Dict[str, str] = {}


class ShopSettingsUpdate(BaseModel):
    is_open: Optional[bool] = None
    accepts_orders: Optional[bool] = None
    minimum_order_amount: Optional[float] = Field(None, ge=0)
    delivery_fee: Optional[float] = Field(None, ge=0)
    free_delivery_above: Optional[float] = Field(None, ge=0)
    service_radius: Optional[float] = Field(None, ge=1, le=50)
    preparation_time: Optional[int] = Field(None, ge=5)
    payment_methods: Optional[List[PaymentMethod]] = None
    auto_accept_orders: Optional[bool] = None
    pause_orders_until: Optional[datetime] = None
    max_active_orders: Optional[int] = Field(None, ge=1)
    max_orders_per_hour: Optional[int] = Field(None, ge=1)


class ShopUpdateRequest(BaseModel):
    business_name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    business_type: Optional[BusinessType] = None
    category_ids: Optional[List[str]] = None
    contact_info: Optional[ContactInfo] = None
    address: Optional[ShopAddress] = None
    documents: Optional[ShopDocuments] = None
    business_hours: Optional[List[BusinessHours]] = None
    settings: Optional[ShopSettingsUpdate] = None
    images: Optional[ShopImages] = None
    social_media: Optional[Dict[str, str]] = None
    # admin only
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class VerifyShopRequest(BaseModel):
    status: Literal["verified", "rejected"]
    rejection_reason: Optional[str] = None


class DeliveryZonesRequest(BaseModel):
    delivery_zones: List[DeliveryZone]


ADMIN_ONLY_FIELDS = ("is_active", "is_featured")


# Shared helpers
def find_shop(id_or_slug: str) -> Optional[Dict[str, Any]]:
    oid = maybe_object_id(id_or_slug)
    if oid is not None:
        shop = database.db["shop"].find_one({"_id": oid})
        if shop:
            return shop
    return database.db["shop"].find_one({"slug": id_or_slug})


def get_shop_or_404(shop_id: str) -> Dict[str, Any]:
    shop = database.db["shop"].find_one({"_id": object_id(shop_id, "shop id")})
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


def is_shop_owner(shop: Dict[str, Any], user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and shop.get("owner_id") == str(user["_id"])


def ensure_shop_access(shop: Dict[str, Any], user: Dict[str, Any], action: str = "manage this shop") -> None:
    if not is_shop_owner(shop, user) and user.get("role") != "admin":
        raise ForbiddenError(f"Not authorized to {action}")


def serialize_shop(shop: Dict[str, Any], user: Optional[Dict[str, Any]] = None, distance: Optional[float] = None) -> Dict[str, Any]:
    data = serialize_doc(shop)
    if not (is_shop_owner(shop, user) or (user and user.get("role") == "admin")):
        data.pop("documents", None)
    data["is_currently_open"] = geo.is_currently_open(shop)
    if distance is not None:
        data["distance"] = geo.round_distance(distance)
    return data


SHOP_SORT = [("is_featured", -1), ("stats.average_rating", -1), ("created_at", -1)]


@router.get("")
def list_shops(
    search: Optional[str] = None,
    business_type: Optional[BusinessType] = None,
    verified: Optional[bool] = None,
    featured: Optional[bool] = None,
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    radius: float = Query(10, gt=0, le=geo.MAX_SEARCH_RADIUS_KM),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_optional_user),
):
    query: Dict[str, Any] = {"is_active": True}
    if search:
        query["$or"] = [
            {"business_name": text_match(search)},
            {"description": text_match(search)},
        ]
    if business_type:
        query["business_type"] = business_type
    if verified is not None:
        query["verification.status"] = "verified" if verified else {"$ne": "verified"}
    if featured is not None:
        query["is_featured"] = featured

    cursor = database.db["shop"].find(query).sort(SHOP_SORT)
    if latitude is not None and longitude is not None:
        nearby = []
        for shop in cursor:
            distance = geo.distance_to_shop(shop, latitude, longitude)
            if distance is not None and distance <= radius:
                nearby.append(serialize_shop(shop, user, distance))
        total = len(nearby)
        shops = nearby[(page - 1) * limit: page * limit]
    else:
        total = database.db["shop"].count_documents(query)
        shops = [serialize_shop(s, user) for s in cursor.skip((page - 1) * limit).limit(limit)]
    return {"shops": shops, "pagination": paginate(page, limit, total)}


@router.get("/nearby")
def nearby_shops(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius: float = Query(10, gt=0, le=geo.MAX_SEARCH_RADIUS_KM),
    limit: int = Query(20, ge=1, le=50),
    user=Depends(get_optional_user),
):
    found = []
    for shop in database.db["shop"].find({"is_active": True, "verification.status": "verified"}):
        distance = geo.distance_to_shop(shop, latitude, longitude)
        if distance is not None and distance <= radius:
            found.append((distance, shop))
    found.sort(key=lambda pair: pair[0])
    return {"shops": [serialize_shop(shop, user, distance) for distance, shop in found[:limit]]}


@router.get("/{id_or_slug}")
def get_shop(id_or_slug: str, user=Depends(get_optional_user)):
    shop = find_shop(id_or_slug)
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    products = database.db["product"].find(
        {"shop_id": str(shop["_id"]), "is_active": True, "status": "active"}
    ).sort([("is_featured", -1), ("rating.average", -1)]).limit(12)
    return {
        "shop": serialize_shop(shop, user),
        "products": [with_derived_fields(serialize_doc(p)) for p in products],
    }


@router.post("", status_code=201)
def create_shop(req: ShopCreateRequest, user=Depends(require_roles("shop_owner", "admin"))):
    owner_id = str(user["_id"])
    if database.db["shop"].find_one({"owner_id": owner_id}):
        raise HTTPException(status_code=400, detail="You already have a shop registered")
    data = req.model_dump(exclude_none=True)
    shop = Shop(owner_id=owner_id, slug=slugify(req.business_name, unique=True), **data)
    shop_id = database.create_document("shop", shop)
    logger.info("shop_created", shop_id=shop_id, owner_id=owner_id)
    created = database.db["shop"].find_one({"_id": ObjectId(shop_id)})
    return {"message": "Shop created successfully. It will be reviewed for verification.", "shop": serialize_shop(created, user)}


@router.put("/{shop_id}")
def update_shop(shop_id: str, req: ShopUpdateRequest, user=Depends(get_current_user)):
    shop = get_shop_or_404(shop_id)
    ensure_shop_access(shop, user, "update this shop")

    updates = req.model_dump(exclude_none=True, exclude={"settings"})
    if user.get("role") != "admin":
        for field in ADMIN_ONLY_FIELDS:
            updates.pop(field, None)
    if req.settings is not None:
        for key, value in req.settings.model_dump(exclude_none=True).items():
            updates[f"settings.{key}"] = value
    if "business_name" in updates and updates["business_name"] != shop["business_name"]:
        updates["slug"] = slugify(updates["business_name"], unique=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    database.db["shop"].update_one({"_id": shop["_id"]}, {"$set": updates})
    updated = database.db["shop"].find_one({"_id": shop["_id"]})
    return {"message": "Shop updated successfully", "shop": serialize_shop(updated, user)}


@router.delete("/{shop_id}")
def delete_shop(shop_id: str, admin=Depends(require_admin)):
    shop = get_shop_or_404(shop_id)
    database.db["shop"].update_one({"_id": shop["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("shop_deactivated", shop_id=shop_id, by=str(admin["_id"]))
    return {"message": "Shop deactivated successfully"}


@router.put("/{shop_id}/verify")
def verify_shop(shop_id: str, req: VerifyShopRequest, admin=Depends(require_admin)):
    shop = get_shop_or_404(shop_id)
    verification = {
        "status": req.status,
        "verified_at": utcnow(),
        "verified_by": str(admin["_id"]),
        "rejection_reason": None,
    }
    if req.status == "rejected":
        verification["rejection_reason"] = req.rejection_reason or "Documents not verified"
    database.db["shop"].update_one({"_id": shop["_id"]}, {"$set": {"verification": verification, "updated_at": utcnow()}})
    logger.info("shop_verification_changed", shop_id=shop_id, status=req.status, by=str(admin["_id"]))

    message = f"Your shop {shop['business_name']} has been {req.status}"
    if req.status == "rejected":
        message += f": {verification['rejection_reason']}"
    notify(shop["owner_id"], "Shop Verification Update", message, {"shop_id": shop_id, "status": req.status})

    updated = database.db["shop"].find_one({"_id": shop["_id"]})
    return {"message": f"Shop {req.status} successfully", "shop": serialize_shop(updated, admin)}


@router.put("/{shop_id}/delivery-zones")
def update_delivery_zones(shop_id: str, req: DeliveryZonesRequest, user=Depends(get_current_user)):
    shop = get_shop_or_404(shop_id)
    ensure_shop_access(shop, user, "update this shop")
    zones = [zone.model_dump() for zone in req.delivery_zones]
    database.db["shop"].update_one({"_id": shop["_id"]}, {"$set": {"delivery_zones": zones, "updated_at": utcnow()}})
    return {"message": "Delivery zones updated successfully", "delivery_zones": zones}


def _order_totals(orders: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "total_orders": len(orders),
        "total_revenue": round(sum(o.get("total", 0) for o in orders), 2),
    }


@router.get("/{shop_id}/dashboard")
def shop_dashboard(shop_id: str, user=Depends(get_current_user)):
    shop = get_shop_or_404(shop_id)
    ensure_shop_access(shop, user, "access this dashboard")

    now = utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_week = now - timedelta(days=7)
    start_of_month = start_of_day.replace(day=1)
    since = min(start_of_week, start_of_month)

    recent = [
        o for o in database.db["order"].find({"shop_id": shop_id})
        if as_utc(o["created_at"]) >= since
    ]
    today = [o for o in recent if as_utc(o["created_at"]) >= start_of_day]
    today_stats = _order_totals(today)
    today_stats["pending_orders"] = sum(1 for o in today if o["status"] == "pending")
    today_stats["confirmed_orders"] = sum(1 for o in today if o["status"] == "confirmed")

    recent_orders = database.db["order"].find({"shop_id": shop_id}).sort("created_at", -1).limit(10)
    products = list(database.db["product"].find({"shop_id": shop_id, "is_active": True}))
    low_stock = [p for p in products if p.get("track_quantity", True) and p.get("stock", 0) <= p.get("low_stock_threshold", 5)]
    top = sorted(products, key=lambda p: p.get("stats", {}).get("orders", 0), reverse=True)[:5]

    return {
        "shop": {
            "id": shop_id,
            "business_name": shop["business_name"],
            "verification": serialize_doc(shop.get("verification")),
            "stats": shop.get("stats"),
        },
        "statistics": {
            "today": today_stats,
            "this_week": _order_totals([o for o in recent if as_utc(o["created_at"]) >= start_of_week]),
            "this_month": _order_totals([o for o in recent if as_utc(o["created_at"]) >= start_of_month]),
        },
        "recent_orders": [serialize_doc(o) for o in recent_orders],
        "low_stock_products": [serialize_doc(p) for p in low_stock[:10]],
        "top_products": [serialize_doc(p) for p in top],
    }


@router.get("/{shop_id}/orders")
def shop_orders(
    shop_id: str,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
):
    shop = get_shop_or_404(shop_id)
    ensure_shop_access(shop, user, "view these orders")
    query: Dict[str, Any] = {"shop_id": shop_id}
    if status:
        query["status"] = status
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = as_utc(start_date)
        if end_date:
            query["created_at"]["$lte"] = as_utc(end_date)
    total = database.db["order"].count_documents(query)
    cursor = database.db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"orders": [serialize_doc(o) for o in cursor], "pagination": paginate(page, limit, total)}


@router.get("/{shop_id}/products")
def shop_products(
    shop_id: str,
    status: Optional[ProductStatus] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_optional_user),
):
    shop = get_shop_or_404(shop_id)
    query: Dict[str, Any] = {"shop_id": shop_id}
    if is_shop_owner(shop, user) or (user and user.get("role") == "admin"):
        if status:
            query["status"] = status
    else:
        query["is_active"] = True
        query["status"] = "active"
    if category:
        query["category_id"] = category
    if search:
        query["$or"] = [
            {"name": text_match(search)},
            {"description": text_match(search)},
        ]
    total = database.db["product"].count_documents(query)
    cursor = database.db["product"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "products": [with_derived_fields(serialize_doc(p)) for p in cursor],
        "pagination": paginate(page, limit, total),
    }
