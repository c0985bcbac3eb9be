"""Stock reservation and release for products and their variants."""
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument

from . import database
from .errors import BadRequestError, InsufficientStockError
from .utils import utcnow

logger = structlog.get_logger(__name__)


def find_variant(product: Dict[str, Any], variant_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not variant_id:
        return None
    for variant in product.get("variants") or []:
        if variant.get("id") == variant_id:
            return variant
    return None


def unit_for(product: Dict[str, Any], variant_id: Optional[str] = None) -> Tuple[str, float, int]:
    """Return (display name, unit price, available stock) for a product or one of its variants."""
    if variant_id:
        variant = find_variant(product, variant_id)
        if variant is None or not variant.get("is_active", True):
            raise BadRequestError(f"Variant not found for {product.get('name')}")
        name = f"{product['name']} ({variant.get('name')}: {variant.get('value')})"
        return name, float(variant["price"]), int(variant.get("stock", 0))
    return product["name"], float(product["price"]), int(product.get("stock", 0))


def is_tracked(product: Dict[str, Any]) -> bool:
    return product.get("track_quantity", True)


def sync_status(product_id: ObjectId) -> None:
    """Keep status in line with stock: 0 means out_of_stock, restocking reactivates."""
    products = database.db["product"]
    products.update_one(
        {"_id": product_id, "track_quantity": {"$ne": False}, "stock": {"$lte": 0}, "status": "active"},
        {"$set": {"status": "out_of_stock", "updated_at": utcnow()}},
    )
    products.update_one(
        {"_id": product_id, "stock": {"$gt": 0}, "status": "out_of_stock"},
        {"$set": {"status": "active", "updated_at": utcnow()}},
    )


def reserve(product_id: str, quantity: int, variant_id: Optional[str] = None) -> None:
    """Atomically take `quantity` units, refusing when stock would go negative."""
    products = database.db["product"]
    oid = ObjectId(product_id)
    product = products.find_one({"_id": oid})
    if product is None:
        raise BadRequestError("Product not found")
    if not is_tracked(product):
        return

    if variant_id:
        query = {"_id": oid, "variants": {"$elemMatch": {"id": variant_id, "stock": {"$gte": quantity}}}}
        update = {"$inc": {"variants.$.stock": -quantity}}
    else:
        query = {"_id": oid, "stock": {"$gte": quantity}}
        update = {"$inc": {"stock": -quantity}}

    updated = products.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if updated is None:
        name, _, available = unit_for(product, variant_id)
        logger.warning("stock_reserve_failed", product_id=product_id, variant_id=variant_id, requested=quantity, available=available)
        raise InsufficientStockError(name, available)
    if not variant_id:
        sync_status(oid)


def release(product_id: str, quantity: int, variant_id: Optional[str] = None) -> None:
    products = database.db["product"]
    oid = ObjectId(product_id)
    product = products.find_one({"_id": oid})
    if product is None or not is_tracked(product):
        return
    if variant_id:
        products.update_one({"_id": oid, "variants.id": variant_id}, {"$inc": {"variants.$.stock": quantity}})
        return
    products.update_one({"_id": oid}, {"$inc": {"stock": quantity}})
    sync_status(oid)


def reserve_items(items: List[Dict[str, Any]]) -> None:
    """Reserve every item or none: units taken before a failure are put back."""
    reserved: List[Dict[str, Any]] = []
    try:
        for item in items:
            reserve(item["product_id"], item["quantity"], item.get("variant_id"))
            reserved.append(item)
    except BadRequestError:
        release_items(reserved)
        raise


def release_items(items: List[Dict[str, Any]]) -> None:
    for item in items:
        release(item["product_id"], item["quantity"], item.get("variant_id"))
