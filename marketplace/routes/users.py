from typing import Any, Dict, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import database
from ..errors import ForbiddenError
from ..lifecycle import ORDER_STATUSES
from ..schemas import PHONE_PATTERN, PINCODE_PATTERN, Address, Coordinates, Role
from ..security import get_current_user, public_user, require_admin
from ..utils import object_id, paginate, serialize_doc, text_match, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

ADDRESS_PARTS = ("address_line1", "address_line2", "landmark", "city", "state", "pincode", "country")


class UserAdminUpdateRequest(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None
    is_phone_verified: Optional[bool] = None


class AddressRequest(BaseModel):
    type: Literal["home", "office", "other"] = "home"
    nickname: Optional[str] = Field(None, max_length=50)
    full_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address_line1: str = Field(..., min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    state: str = Field(..., min_length=1, max_length=50)
    country: str = "India"
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    coordinates: Optional[Coordinates] = None
    is_default: bool = False
    delivery_instructions: Optional[str] = Field(None, max_length=500)


class AddressUpdateRequest(BaseModel):
    type: Optional[Literal["home", "office", "other"]] = None
    nickname: Optional[str] = Field(None, max_length=50)
    full_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address_line1: Optional[str] = Field(None, min_length=1, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, min_length=1, max_length=50)
    state: Optional[str] = Field(None, min_length=1, max_length=50)
    country: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    coordinates: Optional[Coordinates] = None
    is_default: Optional[bool] = None
    delivery_instructions: Optional[str] = Field(None, max_length=500)


def formatted_address(address: Dict[str, Any]) -> str:
    return ", ".join(str(address[p]) for p in ADDRESS_PARTS if address.get(p))


def serialize_address(address: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(address)
    data["formatted_address"] = formatted_address(address)
    return data


def _set_default(user_id: str, address_id) -> None:
    database.db["address"].update_many(
        {"user_id": user_id, "_id": {"$ne": address_id}},
        {"$set": {"is_default": False}},
    )
    database.db["address"].update_one({"_id": address_id}, {"$set": {"is_default": True}})
    database.db["user"].update_one({"_id": object_id(user_id)}, {"$set": {"default_address_id": str(address_id)}})


def _self_or_admin(user, user_id: str) -> None:
    if user.get("role") != "admin" and str(user["_id"]) != user_id:
        raise ForbiddenError("Not authorized to access this user")


# Addresses
@router.get("/me/addresses")
def list_addresses(user=Depends(get_current_user)):
    cursor = database.db["address"].find({"user_id": str(user["_id"]), "is_active": True}).sort(
        [("is_default", -1), ("created_at", -1)]
    )
    return {"addresses": [serialize_address(a) for a in cursor]}


@router.post("/me/addresses", status_code=201)
def create_address(req: AddressRequest, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    first = database.db["address"].count_documents({"user_id": user_id, "is_active": True}) == 0
    address = Address(user_id=user_id, **req.model_dump())
    address_id = database.create_document("address", address)
    if address.is_default or first:
        _set_default(user_id, object_id(address_id))
    created = database.db["address"].find_one({"_id": object_id(address_id)})
    return {"message": "Address added successfully", "address": serialize_address(created)}


@router.put("/me/addresses/{address_id}")
def update_address(address_id: str, req: AddressUpdateRequest, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    oid = object_id(address_id, "address id")
    address = database.db["address"].find_one({"_id": oid, "user_id": user_id, "is_active": True})
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    updates = req.model_dump(exclude_none=True)
    make_default = updates.pop("is_default", None)
    if updates:
        updates["updated_at"] = utcnow()
        database.db["address"].update_one({"_id": oid}, {"$set": updates})
    if make_default:
        _set_default(user_id, oid)
    updated = database.db["address"].find_one({"_id": oid})
    return {"message": "Address updated successfully", "address": serialize_address(updated)}


@router.delete("/me/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    oid = object_id(address_id, "address id")
    address = database.db["address"].find_one({"_id": oid, "user_id": user_id, "is_active": True})
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    database.db["address"].update_one({"_id": oid}, {"$set": {"is_active": False, "is_default": False, "updated_at": utcnow()}})

    if address.get("is_default"):
        remaining = list(database.db["address"].find({"user_id": user_id, "is_active": True}).sort("created_at", -1).limit(1))
        if remaining:
            _set_default(user_id, remaining[0]["_id"])
        else:
            database.db["user"].update_one({"_id": user["_id"]}, {"$set": {"default_address_id": None}})
    return {"message": "Address deleted successfully"}


# Notifications
@router.get("/me/notifications")
def list_notifications(
    unread: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
):
    query: Dict[str, Any] = {"user_id": str(user["_id"])}
    if unread:
        query["is_read"] = False
    total = database.db["notification"].count_documents(query)
    cursor = database.db["notification"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "notifications": [serialize_doc(n) for n in cursor],
        "unread_count": database.db["notification"].count_documents({"user_id": str(user["_id"]), "is_read": False}),
        "pagination": paginate(page, limit, total),
    }


@router.put("/me/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user=Depends(get_current_user)):
    result = database.db["notification"].update_one(
        {"_id": object_id(notification_id, "notification id"), "user_id": str(user["_id"])},
        {"$set": {"is_read": True, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification marked as read"}


# Admin user management
@router.get("")
def list_users(
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        query["$or"] = [
            {"name": text_match(search)},
            {"email": text_match(search)},
            {"phone": text_match(search)},
        ]
    total = database.db["user"].count_documents(query)
    cursor = database.db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"users": [public_user(u) for u in cursor], "pagination": paginate(page, limit, total)}


@router.get("/{user_id}")
def get_user(user_id: str, user=Depends(get_current_user)):
    _self_or_admin(user, user_id)
    found = database.db["user"].find_one({"_id": object_id(user_id, "user id")})
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": public_user(found)}


@router.put("/{user_id}")
def update_user(user_id: str, req: UserAdminUpdateRequest, admin=Depends(require_admin)):
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    oid = object_id(user_id, "user id")
    result = database.db["user"].update_one({"_id": oid}, {"$set": updates})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user_updated", user_id=user_id, by=str(admin["_id"]), fields=sorted(updates))
    return {"message": "User updated successfully", "user": public_user(database.db["user"].find_one({"_id": oid}))}


@router.delete("/{user_id}")
def deactivate_user(user_id: str, admin=Depends(require_admin)):
    if str(admin["_id"]) == user_id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    result = database.db["user"].update_one(
        {"_id": object_id(user_id, "user id")},
        {"$set": {"is_active": False, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user_deactivated", user_id=user_id, by=str(admin["_id"]))
    return {"message": "User deactivated successfully"}


@router.get("/{user_id}/stats")
def user_stats(user_id: str, user=Depends(get_current_user)):
    _self_or_admin(user, user_id)
    target = database.db["user"].find_one({"_id": object_id(user_id, "user id")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    if target.get("role") == "shop_owner":
        shop = database.db["shop"].find_one({"owner_id": user_id})
        return {"role": "shop_owner", "shop": serialize_doc(shop) if shop else None, "stats": (shop or {}).get("stats", {})}

    orders = list(database.db["order"].find({"customer_id": user_id}, {"status": 1, "total": 1}))
    spent_orders = [o for o in orders if o.get("status") != "cancelled"]
    total_spent = round(sum(o.get("total", 0) for o in spent_orders), 2)
    by_status = {status: 0 for status in ORDER_STATUSES}
    for order in orders:
        by_status[order["status"]] = by_status.get(order["status"], 0) + 1
    return {
        "role": target.get("role"),
        "stats": {
            "total_orders": len(orders),
            "total_spent": total_spent,
            "average_order_value": round(total_spent / len(spent_orders), 2) if spent_orders else 0,
            "orders_by_status": by_status,
        },
    }
