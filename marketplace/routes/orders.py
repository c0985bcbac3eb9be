from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import database, geo, inventory, lifecycle
from ..errors import BadRequestError, ForbiddenError, InsufficientStockError
from ..notifications import emit, notify
from ..pricing import delivery_fee, is_available, order_total, round_money, tax_for
from ..schemas import DeliveryInfo, Order, OrderItem, OrderStatus, PaymentInfo, PaymentMethod
from ..security import get_current_user, require_roles
from ..utils import as_utc, maybe_object_id, object_id, paginate, serialize_doc, utcnow
from .cart import remove_items
from .users import formatted_address

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

BUCKET_FORMATS = {
    "hour": "%Y-%m-%d %H:00",
    "day": "%Y-%m-%d",
    "month": "%Y-%m",
    "year": "%Y",
}


class OrderItemRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)


class DeliveryRequest(BaseModel):
    type: Literal["delivery", "pickup"] = "delivery"
    address_id: Optional[str] = None
    instructions: Optional[str] = Field(None, max_length=500)


class PaymentRequest(BaseModel):
    method: PaymentMethod


class OrderCreateRequest(BaseModel):
    shop_id: str
    items: List[OrderItemRequest] = Field(..., min_length=1)
    delivery: DeliveryRequest = DeliveryRequest()
    payment: PaymentRequest
    customer_notes: Optional[str] = Field(None, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderReviewRequest(BaseModel):
    overall: int = Field(..., ge=1, le=5)
    delivery: Optional[int] = Field(None, ge=1, le=5)
    quality: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)


# Helpers
def get_order_or_404(order_id: str) -> Dict[str, Any]:
    order = database.db["order"].find_one({"_id": object_id(order_id, "order id")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def order_shop(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return database.db["shop"].find_one({"_id": object_id(order["shop_id"])})


def is_order_shop_owner(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    shop = order_shop(order)
    return bool(shop) and shop.get("owner_id") == str(user["_id"])


def ensure_order_access(order: Dict[str, Any], user: Dict[str, Any]) -> None:
    if order["customer_id"] == str(user["_id"]) or user.get("role") == "admin":
        return
    if not is_order_shop_owner(order, user):
        raise ForbiddenError("Not authorized to access this order")


def _unique_order_number() -> str:
    for _ in range(5):
        number = lifecycle.generate_order_number()
        if not database.db["order"].find_one({"order_number": number}, {"_id": 1}):
            return number
    raise BadRequestError("Could not allocate an order number, please retry")


def _orders_in_last_hour(shop_id: str, limit: int, now: datetime) -> int:
    cutoff = now - timedelta(hours=1)
    recent = database.db["order"].find({"shop_id": shop_id}, {"created_at": 1}).sort("created_at", -1).limit(limit)
    return sum(1 for o in recent if as_utc(o["created_at"]) >= cutoff)


def _priced_items(shop_id: str, items: List[OrderItemRequest]) -> List[Dict[str, Any]]:
    priced = []
    for item in items:
        oid = maybe_object_id(item.product_id)
        product = database.db["product"].find_one({"_id": oid}) if oid else None
        if not product or product.get("shop_id") != shop_id or not is_available(product):
            label = product["name"] if product else item.product_id
            raise BadRequestError(f"Product {label} is not available")
        name, price, stock = inventory.unit_for(product, item.variant_id)
        if inventory.is_tracked(product) and item.quantity > stock:
            raise InsufficientStockError(name, stock)
        priced.append(OrderItem(
            product_id=item.product_id,
            variant_id=item.variant_id,
            name=name,
            price=price,
            quantity=item.quantity,
            total=round_money(price * item.quantity),
        ).model_dump())
    return priced


def _delivery_details(shop: Dict[str, Any], req: DeliveryRequest, customer_id: str, subtotal: float) -> Dict[str, Any]:
    settings = shop.get("settings", {})
    if req.type == "pickup":
        return {"fee": 0.0, "delivery": DeliveryInfo(type="pickup", instructions=req.instructions).model_dump()}

    if not req.address_id:
        raise BadRequestError("Delivery address is required")
    oid = maybe_object_id(req.address_id)
    address = database.db["address"].find_one({"_id": oid, "user_id": customer_id, "is_active": True}) if oid else None
    if not address:
        raise BadRequestError("Delivery address not found")

    coords = address.get("coordinates") or {}
    resolution = geo.resolve_delivery(
        shop,
        latitude=coords.get("latitude"),
        longitude=coords.get("longitude"),
        pincode=address.get("pincode"),
        area=address.get("city"),
    )
    if not resolution["available"]:
        raise BadRequestError("Delivery not available to this address")

    snapshot = serialize_doc({k: v for k, v in address.items() if k not in ("user_id", "created_at", "updated_at", "is_active")})
    snapshot["formatted_address"] = formatted_address(address)
    distance = resolution["distance"]
    delivery = DeliveryInfo(
        type="delivery",
        address=snapshot,
        distance=distance,
        estimated_time=geo.estimate_delivery_minutes(distance or 0, settings.get("preparation_time", 30)),
        instructions=req.instructions or address.get("delivery_instructions"),
    )
    return {"fee": delivery_fee(settings, subtotal, base_fee=resolution["fee"]), "delivery": delivery.model_dump()}


def place_order(customer: Dict[str, Any], req: OrderCreateRequest) -> Dict[str, Any]:
    """Validate, price and persist an order, then reserve its stock."""
    customer_id = str(customer["_id"])
    shop_oid = maybe_object_id(req.shop_id)
    shop = database.db["shop"].find_one({"_id": shop_oid}) if shop_oid else None
    if not shop or not shop.get("is_active", True) or shop.get("verification", {}).get("status") != "verified":
        raise BadRequestError("Shop is not available for orders")
    settings = shop.get("settings", {})
    if not settings.get("accepts_orders", True):
        raise BadRequestError("Shop is not accepting orders at the moment")
    if req.payment.method not in settings.get("payment_methods", ["cash"]):
        raise BadRequestError(f"Payment method {req.payment.method} is not accepted by this shop")

    items = _priced_items(req.shop_id, req.items)
    subtotal = round_money(sum(i["total"] for i in items))

    minimum = settings.get("minimum_order_amount", 0) or 0
    if subtotal < minimum:
        raise BadRequestError(f"Minimum order amount is {minimum:g}")

    now = utcnow()
    paused_until = as_utc(settings.get("pause_orders_until"))
    if paused_until and paused_until > now:
        raise BadRequestError("Shop is temporarily not accepting orders")
    max_active = settings.get("max_active_orders")
    if max_active and database.db["order"].count_documents(
        {"shop_id": req.shop_id, "status": {"$in": list(lifecycle.ACTIVE_STATUSES)}}
    ) >= max_active:
        raise BadRequestError("Shop has reached its maximum number of active orders, please try again later")
    max_hourly = settings.get("max_orders_per_hour")
    if max_hourly and _orders_in_last_hour(req.shop_id, max_hourly, now) >= max_hourly:
        raise BadRequestError("Shop has reached its hourly order limit, please try again later")

    details = _delivery_details(shop, req.delivery, customer_id, subtotal)
    fee = details["fee"]
    tax = tax_for(subtotal)

    status = "confirmed" if settings.get("auto_accept_orders") else "pending"
    history = [{"status": "pending", "timestamp": now, "note": "Order placed", "updated_by": customer_id}]
    timestamps = {"placed_at": now}
    if status == "confirmed":
        history.append({"status": "confirmed", "timestamp": now, "note": "Order auto-accepted", "updated_by": None})
        timestamps["confirmed_at"] = now

    order = Order(
        order_number=_unique_order_number(),
        customer_id=customer_id,
        shop_id=req.shop_id,
        items=items,
        subtotal=subtotal,
        delivery_fee=fee,
        tax=tax,
        total=order_total(subtotal, fee, tax),
        status=status,
        status_history=history,
        delivery=details["delivery"],
        payment=PaymentInfo(method=req.payment.method),
        customer_notes=req.customer_notes,
        timestamps=timestamps,
    )
    order_id = database.create_document("order", order)

    try:
        inventory.reserve_items(items)
    except BadRequestError:
        database.db["order"].delete_one({"_id": ObjectId(order_id)})
        raise

    database.db["shop"].update_one({"_id": shop["_id"]}, {"$inc": {"stats.total_orders": 1}})
    for item in items:
        database.db["product"].update_one(
            {"_id": ObjectId(item["product_id"])},
            {"$inc": {"stats.orders": item["quantity"], "stats.revenue": item["total"]}},
        )
    remove_items(customer_id, [i["product_id"] for i in items])

    created = database.db["order"].find_one({"_id": ObjectId(order_id)})
    logger.info("order_placed", order_id=order_id, order_number=order.order_number, shop_id=req.shop_id, total=order.total, status=status)

    event = {"order_id": order_id, "order_number": order.order_number, "total": order.total, "status": status}
    notify(shop["owner_id"], "New Order", f"New order #{order.order_number} received", event)
    emit("user", customer_id, "order:created", event)
    emit("user", shop["owner_id"], "order:new", event)
    emit("shop", req.shop_id, "order:new", event)
    return created


def _release_order_stock(order: Dict[str, Any]) -> None:
    inventory.release_items(order["items"])


def _emit_status(order: Dict[str, Any], status: str, note: Optional[str]) -> None:
    order_id = str(order["_id"])
    event = {
        "order_id": order_id,
        "order_number": order["order_number"],
        "status": status,
        "note": note,
        "message": lifecycle.status_message(status),
        "timestamp": utcnow(),
    }
    notify(order["customer_id"], f"Order #{order['order_number']} {status.replace('_', ' ')}", lifecycle.status_message(status), {"order_id": order_id, "status": status})
    emit("order", order_id, "order:status_update", event)
    emit("user", order["customer_id"], "order:updated", event)
    emit("shop", order["shop_id"], "order:status_changed", event)


def apply_status(order: Dict[str, Any], status: str, user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
    lifecycle.check_transition(order["status"], status)
    now = utcnow()
    entry = {"status": status, "timestamp": now, "note": note, "updated_by": str(user["_id"])}
    updates: Dict[str, Any] = {"status": status, f"timestamps.{status}_at": now, "updated_at": now}
    if status == "cancelled":
        updates["cancellation"] = {
            "reason": note or "No reason provided",
            "cancelled_by": str(user["_id"]),
            "cancelled_at": now,
        }
    result = database.db["order"].update_one(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": updates, "$push": {"status_history": entry}},
    )
    if result.matched_count == 0:
        raise BadRequestError("Order was updated by someone else, please retry")
    if status == "cancelled":
        _release_order_stock(order)
    logger.info("order_status_changed", order_id=str(order["_id"]), previous=order["status"], status=status, by=str(user["_id"]))
    _emit_status(order, status, note)
    return database.db["order"].find_one({"_id": order["_id"]})


# Routes
@router.post("", status_code=201)
def create_order(req: OrderCreateRequest, user=Depends(require_roles("customer"))):
    order = place_order(user, req)
    return {"message": "Order placed successfully", "order": serialize_doc(order)}


@router.get("")
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
):
    query: Dict[str, Any] = {}
    role = user.get("role")
    if role == "shop_owner":
        shop = database.db["shop"].find_one({"owner_id": str(user["_id"])}, {"_id": 1})
        query["shop_id"] = str(shop["_id"]) if shop else None
    elif role != "admin":
        query["customer_id"] = str(user["_id"])
    if status:
        query["status"] = status
    total = database.db["order"].count_documents(query)
    cursor = database.db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"orders": [serialize_doc(o) for o in cursor], "pagination": paginate(page, limit, total)}


@router.get("/analytics")
def order_analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    period: Literal["hour", "day", "month", "year"] = "day",
    shop_id: Optional[str] = None,
    user=Depends(require_roles("shop_owner", "admin")),
):
    if user.get("role") == "shop_owner":
        shop = database.db["shop"].find_one({"owner_id": str(user["_id"])}, {"_id": 1})
        if not shop:
            raise HTTPException(status_code=404, detail="Shop not found")
        shop_id = str(shop["_id"])

    end = as_utc(end_date) or utcnow()
    start = as_utc(start_date) or end - timedelta(days=30)
    query: Dict[str, Any] = {"shop_id": shop_id} if shop_id else {}
    orders = [o for o in database.db["order"].find(query) if start <= as_utc(o["created_at"]) <= end]

    buckets: Dict[str, Dict[str, Any]] = {}
    products: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        key = as_utc(order["created_at"]).strftime(BUCKET_FORMATS[period])
        bucket = buckets.setdefault(key, {"period": key, "total_orders": 0, "revenue": 0.0, "delivered": 0, "cancelled": 0})
        bucket["total_orders"] += 1
        if order["status"] == "cancelled":
            bucket["cancelled"] += 1
            continue
        bucket["revenue"] += order["total"]
        if order["status"] == "delivered":
            bucket["delivered"] += 1
        for item in order["items"]:
            entry = products.setdefault(item["product_id"], {"product_id": item["product_id"], "name": item["name"], "quantity": 0, "revenue": 0.0})
            entry["quantity"] += item["quantity"]
            entry["revenue"] = round_money(entry["revenue"] + item["total"])

    timeline = []
    for key in sorted(buckets):
        bucket = buckets[key]
        billable = bucket["total_orders"] - bucket["cancelled"]
        bucket["revenue"] = round_money(bucket["revenue"])
        bucket["average_order_value"] = round_money(bucket["revenue"] / billable) if billable else 0
        timeline.append(bucket)

    revenue = round_money(sum(b["revenue"] for b in timeline))
    cancelled = sum(b["cancelled"] for b in timeline)
    billable = len(orders) - cancelled
    return {
        "range": {"start": start.isoformat(), "end": end.isoformat(), "period": period},
        "timeline": timeline,
        "overall": {
            "total_orders": len(orders),
            "total_revenue": revenue,
            "average_order_value": round_money(revenue / billable) if billable else 0,
            "delivered": sum(b["delivered"] for b in timeline),
            "cancelled": cancelled,
        },
        "top_products": sorted(products.values(), key=lambda p: p["quantity"], reverse=True)[:10],
    }


@router.get("/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id)
    ensure_order_access(order, user)
    return {"order": serialize_doc(order)}


@router.put("/{order_id}/status")
def update_order_status(order_id: str, req: StatusUpdateRequest, user=Depends(require_roles("shop_owner", "admin"))):
    order = get_order_or_404(order_id)
    if user.get("role") != "admin" and not is_order_shop_owner(order, user):
        raise ForbiddenError("Not authorized to update this order")
    updated = apply_status(order, req.status, user, req.note)
    return {"message": f"Order status updated to {req.status}", "order": serialize_doc(updated)}


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, req: Optional[CancelRequest] = None, user=Depends(get_current_user)):
    order = get_order_or_404(order_id)
    ensure_order_access(order, user)
    if not lifecycle.can_cancel(order["status"]):
        raise HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")
    reason = req.reason if req and req.reason else "Cancelled by user"
    updated = apply_status(order, "cancelled", user, reason)
    logger.info("order_cancelled", order_id=order_id, by=str(user["_id"]))
    emit("user", order["customer_id"], "order:cancelled", {"order_id": order_id, "order_number": order["order_number"]})
    emit("shop", order["shop_id"], "order:cancelled", {"order_id": order_id, "order_number": order["order_number"]})
    return {"message": "Order cancelled successfully", "order": serialize_doc(updated)}


@router.post("/{order_id}/review")
def review_order(order_id: str, req: OrderReviewRequest, user=Depends(get_current_user)):
    order = get_order_or_404(order_id)
    if order["customer_id"] != str(user["_id"]):
        raise ForbiddenError("Not authorized to rate this order")
    if order["status"] != "delivered":
        raise HTTPException(status_code=400, detail="You can only rate delivered orders")
    if order.get("rating"):
        raise HTTPException(status_code=400, detail="Order has already been rated")
    rating = req.model_dump(exclude_none=True)
    rating["review_date"] = utcnow()
    database.db["order"].update_one({"_id": order["_id"]}, {"$set": {"rating": rating, "updated_at": utcnow()}})
    return {"message": "Order rated successfully", "order": serialize_doc(get_order_or_404(order_id))}


@router.post("/{order_id}/reorder", status_code=201)
def reorder(order_id: str, user=Depends(require_roles("customer"))):
    previous = get_order_or_404(order_id)
    if previous["customer_id"] != str(user["_id"]):
        raise ForbiddenError("Not authorized to reorder this order")

    items = []
    for item in previous["items"]:
        product = database.db["product"].find_one({"_id": object_id(item["product_id"])})
        if not product or product.get("shop_id") != previous["shop_id"] or not is_available(product):
            continue
        try:
            _, _, stock = inventory.unit_for(product, item.get("variant_id"))
        except BadRequestError:
            continue
        if inventory.is_tracked(product) and stock < item["quantity"]:
            continue
        items.append(OrderItemRequest(product_id=item["product_id"], variant_id=item.get("variant_id"), quantity=item["quantity"]))
    if not items:
        raise HTTPException(status_code=400, detail="None of the items from this order are currently available")

    delivery = previous.get("delivery") or {}
    req = OrderCreateRequest(
        shop_id=previous["shop_id"],
        items=items,
        delivery=DeliveryRequest(
            type=delivery.get("type", "delivery"),
            address_id=(delivery.get("address") or {}).get("id"),
            instructions=delivery.get("instructions"),
        ),
        payment=PaymentRequest(method=previous["payment"]["method"]),
        customer_notes=f"Reorder from #{previous['order_number']}",
    )
    order = place_order(user, req)
    return {"message": "Order placed successfully", "order": serialize_doc(order), "reordered_items": len(items)}
