from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from .. import config, database
from ..errors import BadRequestError, NotFoundError
from ..inventory import is_tracked, unit_for
from ..pricing import cart_summary, cart_totals, delivery_fee, items_by_shop, round_money
from ..schemas import Cart, CartItem
from ..security import get_current_user
from ..utils import as_utc, maybe_object_id, object_id, serialize_doc, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cart", tags=["cart"])


class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant_id: Optional[str] = None


class UpdateItemRequest(BaseModel):
    quantity: int
    variant_id: Optional[str] = None


class MergeRequest(BaseModel):
    items: List[AddItemRequest]


# Cart operations
def get_cart(user_id: str) -> Dict[str, Any]:
    """Fetch the user's cart, creating it on first access."""
    carts = database.db["cart"]
    cart = carts.find_one({"user_id": user_id})
    if cart is None:
        database.create_document("cart", Cart(user_id=user_id))
        cart = carts.find_one({"user_id": user_id})
    return cart


def save_cart(cart: Dict[str, Any]) -> Dict[str, Any]:
    totals = cart_totals(cart["items"])
    now = utcnow()
    updates = {
        "items": cart["items"],
        "subtotal": totals["subtotal"],
        "total_items": totals["total_items"],
        "last_activity": now,
        "expires_at": now + timedelta(days=config.CART_TTL_DAYS),
        "updated_at": now,
    }
    database.db["cart"].update_one({"_id": cart["_id"]}, {"$set": updates})
    cart.update(updates)
    return cart


def _matches(item: Dict[str, Any], product_id: str, variant_id: Optional[str]) -> bool:
    return item["product_id"] == product_id and (item.get("variant_id") or None) == (variant_id or None)


def _load_product(product_id: str) -> Dict[str, Any]:
    oid = maybe_object_id(product_id)
    product = database.db["product"].find_one({"_id": oid}) if oid else None
    if not product:
        raise NotFoundError("Product")
    return product


def add_item(cart: Dict[str, Any], product_id: str, quantity: int, variant_id: Optional[str] = None) -> Dict[str, Any]:
    product = _load_product(product_id)
    if not product.get("is_active", True) or product.get("status") != "active":
        raise BadRequestError("Product is not available")
    name, price, stock = unit_for(product, variant_id)

    existing = next((i for i in cart["items"] if _matches(i, product_id, variant_id)), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    if is_tracked(product) and wanted > stock:
        raise BadRequestError(f"Only {stock} items available in stock")

    if existing:
        existing.update({"quantity": wanted, "price": price, "available_stock": stock, "is_available": True})
    else:
        item = CartItem(
            product_id=product_id,
            variant_id=variant_id,
            name=name,
            price=price,
            quantity=quantity,
            shop_id=product["shop_id"],
            image=(product.get("images") or [None])[0],
            available_stock=stock,
        )
        cart["items"].append(item.model_dump())
    return save_cart(cart)


def set_quantity(cart: Dict[str, Any], product_id: str, quantity: int, variant_id: Optional[str] = None) -> Dict[str, Any]:
    existing = next((i for i in cart["items"] if _matches(i, product_id, variant_id)), None)
    if existing is None:
        raise BadRequestError("Item not found in cart")
    if quantity <= 0:
        cart["items"].remove(existing)
        return save_cart(cart)
    product = _load_product(product_id)
    _, price, stock = unit_for(product, variant_id)
    if is_tracked(product) and quantity > stock:
        raise BadRequestError(f"Only {stock} items available in stock")
    existing.update({"quantity": quantity, "price": price, "available_stock": stock})
    return save_cart(cart)


def remove_items(user_id: str, product_ids: List[str]) -> None:
    cart = database.db["cart"].find_one({"user_id": user_id})
    if not cart:
        return
    cart["items"] = [i for i in cart["items"] if i["product_id"] not in product_ids]
    save_cart(cart)


def validate_cart(cart: Dict[str, Any]) -> bool:
    """Refresh prices and availability in place. Returns True when anything changed."""
    changed = False
    for item in cart["items"]:
        oid = maybe_object_id(item["product_id"])
        product = database.db["product"].find_one({"_id": oid}) if oid else None
        if not product or not product.get("is_active", True) or product.get("status") != "active":
            if item.get("is_available", True):
                item["is_available"] = False
                changed = True
            continue
        try:
            _, price, stock = unit_for(product, item.get("variant_id"))
        except BadRequestError:
            if item.get("is_available", True):
                item["is_available"] = False
                changed = True
            continue
        if item["price"] != price:
            item["price"] = price
            changed = True
        available = stock > 0 or not is_tracked(product)
        if available and is_tracked(product) and item["quantity"] > stock:
            item["quantity"] = stock
            changed = True
        if item.get("is_available", True) != available:
            item["is_available"] = available
            changed = True
        item["available_stock"] = stock
    if changed:
        save_cart(cart)
    return changed


def serialize_cart(cart: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(cart)
    data["summary"] = cart_summary(cart["items"])
    return data


def _user_cart(user) -> Dict[str, Any]:
    return get_cart(str(user["_id"]))


@router.get("")
def read_cart(user=Depends(get_current_user)):
    cart = _user_cart(user)
    if as_utc(cart.get("expires_at")) and as_utc(cart["expires_at"]) <= utcnow():
        cart["items"] = []
        cart = save_cart(cart)
    validate_cart(cart)
    return {"cart": serialize_cart(cart)}


@router.post("/items")
def add_to_cart(req: AddItemRequest, user=Depends(get_current_user)):
    cart = add_item(_user_cart(user), req.product_id, req.quantity, req.variant_id)
    return {"message": "Item added to cart successfully", "cart": serialize_cart(cart)}


@router.put("/items/{product_id}")
def update_cart_item(product_id: str, req: UpdateItemRequest, user=Depends(get_current_user)):
    cart = set_quantity(_user_cart(user), product_id, req.quantity, req.variant_id)
    message = "Item removed from cart" if req.quantity <= 0 else "Cart updated successfully"
    return {"message": message, "cart": serialize_cart(cart)}


@router.delete("/items/{product_id}")
def remove_cart_item(product_id: str, variant_id: Optional[str] = None, user=Depends(get_current_user)):
    cart = set_quantity(_user_cart(user), product_id, 0, variant_id)
    return {"message": "Item removed from cart successfully", "cart": serialize_cart(cart)}


@router.delete("")
def clear_cart(user=Depends(get_current_user)):
    cart = _user_cart(user)
    cart["items"] = []
    save_cart(cart)
    return {"message": "Cart cleared successfully", "cart": serialize_cart(cart)}


@router.get("/validate")
def validate(user=Depends(get_current_user)):
    cart = _user_cart(user)
    changed = validate_cart(cart)
    message = "Cart has been updated due to availability or price changes" if changed else "Cart is valid"
    return {"message": message, "has_changes": changed, "cart": serialize_cart(cart)}


@router.get("/summary")
def summary(user=Depends(get_current_user)):
    cart = _user_cart(user)
    data = cart_summary(cart["items"])
    data["shop_count"] = len(data["items_by_shop"])
    return {"summary": data}


@router.post("/merge")
def merge(req: MergeRequest, user=Depends(get_current_user)):
    cart = _user_cart(user)
    added = skipped = 0
    for item in req.items:
        try:
            cart = add_item(cart, item.product_id, item.quantity, item.variant_id)
            added += 1
        except (BadRequestError, NotFoundError) as exc:
            skipped += 1
            logger.info("cart_merge_skipped", product_id=item.product_id, reason=exc.message)
    return {
        "message": f"Cart merged successfully. {added} items added, {skipped} items skipped",
        "added_count": added,
        "skipped_count": skipped,
        "cart": serialize_cart(cart),
    }


@router.get("/by-shop")
def by_shop(user=Depends(get_current_user)):
    cart = _user_cart(user)
    groups = []
    overall_subtotal = total_fees = 0.0
    for group in items_by_shop(cart["items"]):
        shop = database.db["shop"].find_one({"_id": object_id(group["shop_id"])})
        settings = (shop or {}).get("settings", {})
        fee = delivery_fee(settings, group["subtotal"])
        groups.append({
            "shop": {
                "id": group["shop_id"],
                "business_name": (shop or {}).get("business_name"),
                "minimum_order_amount": settings.get("minimum_order_amount", 0),
            },
            "items": group["items"],
            "subtotal": group["subtotal"],
            "delivery_fee": fee,
            "total": round_money(group["subtotal"] + fee),
            "meets_minimum_order": group["subtotal"] >= settings.get("minimum_order_amount", 0),
        })
        overall_subtotal += group["subtotal"]
        total_fees += fee
    return {
        "shops": groups,
        "overall_subtotal": round_money(overall_subtotal),
        "total_delivery_fees": round_money(total_fees),
        "overall_total": round_money(overall_subtotal + total_fees),
        "cart_expires_in_days": config.CART_TTL_DAYS,
    }
