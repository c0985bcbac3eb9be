from typing import Any, Dict, List, Literal, Optional

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import database, geo, inventory
from ..errors import ForbiddenError
from ..pricing import with_derived_fields
from ..schemas import Attribute, Product, ProductStatus, Variant
from ..security import get_current_user, require_roles
from ..utils import maybe_object_id, object_id, paginate, serialize_doc, slugify, text_match, utcnow
from .categories import PRODUCT_SORTS

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/products", tags=["products"])

SortOption = Literal["price_asc", "price_desc", "rating", "newest", "popularity", "name"]


class VariantInput(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    is_active: bool = True


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    short_description: Optional[str] = Field(None, max_length=500)
    shop_id: Optional[str] = Field(None, description="Required for admins; owners always use their own shop")
    category_id: str
    subcategory_ids: List[str] = []
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    track_quantity: bool = True
    variants: List[VariantInput] = []
    images: List[str] = Field([], max_length=10)
    weight: Optional[float] = Field(None, ge=0)
    status: ProductStatus = "active"
    is_featured: bool = False
    attributes: List[Attribute] = []
    tags: List[str] = []


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    short_description: Optional[str] = Field(None, max_length=500)
    category_id: Optional[str] = None
    subcategory_ids: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    track_quantity: Optional[bool] = None
    variants: Optional[List[VariantInput]] = None
    images: Optional[List[str]] = Field(None, max_length=10)
    weight: Optional[float] = Field(None, ge=0)
    status: Optional[ProductStatus] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    attributes: Optional[List[Attribute]] = None
    tags: Optional[List[str]] = None


def find_product(id_or_slug: str) -> Optional[Dict[str, Any]]:
    oid = maybe_object_id(id_or_slug)
    if oid is not None:
        product = database.db["product"].find_one({"_id": oid})
        if product:
            return product
    return database.db["product"].find_one({"slug": id_or_slug})


def serialize_product(product: Dict[str, Any]) -> Dict[str, Any]:
    return with_derived_fields(serialize_doc(product))


def _variants(variants: List[VariantInput]) -> List[Dict[str, Any]]:
    result = []
    for variant in variants:
        data = variant.model_dump()
        data["id"] = data["id"] or str(ObjectId())
        result.append(Variant(**data).model_dump())
    return result


def _check_category(category_id: str) -> None:
    if not database.db["category"].find_one({"_id": object_id(category_id, "category id")}):
        raise HTTPException(status_code=400, detail="Invalid category")


def _product_access(product: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    shop = database.db["shop"].find_one({"_id": object_id(product["shop_id"])})
    if user.get("role") != "admin" and (not shop or shop.get("owner_id") != str(user["_id"])):
        raise ForbiddenError("Not authorized to modify this product")
    return shop


def deliverable_shop_ids(latitude: float, longitude: float, pincode: Optional[str], area: Optional[str]) -> List[str]:
    shops = database.db["shop"].find({
        "is_active": True,
        "verification.status": "verified",
        "settings.accepts_orders": True,
        "settings.is_open": True,
    })
    return [
        str(shop["_id"]) for shop in shops
        if geo.resolve_delivery(shop, latitude, longitude, pincode, area)["available"]
    ]


@router.get("")
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    shop: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    rating: Optional[float] = Query(None, ge=0, le=5),
    in_stock: Optional[bool] = None,
    featured: Optional[bool] = None,
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    pincode: Optional[str] = None,
    area: Optional[str] = None,
    sort: SortOption = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query: Dict[str, Any] = {"is_active": True, "status": "active"}
    conditions = []
    if search:
        conditions.append({"$or": [
            {"name": text_match(search)},
            {"description": text_match(search)},
            {"tags": text_match(search)},
        ]})
    if category:
        conditions.append({"$or": [{"category_id": category}, {"subcategory_ids": category}]})
    if conditions:
        query["$and"] = conditions
    if shop:
        query["shop_id"] = shop
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if rating is not None:
        query["rating.average"] = {"$gte": rating}
    if in_stock:
        query["stock"] = {"$gt": 0}
    if featured is not None:
        query["is_featured"] = featured
    if latitude is not None and longitude is not None:
        shop_ids = deliverable_shop_ids(latitude, longitude, pincode, area)
        if shop:
            shop_ids = [s for s in shop_ids if s == shop]
        query["shop_id"] = {"$in": shop_ids}

    total = database.db["product"].count_documents(query)
    cursor = database.db["product"].find(query).sort(PRODUCT_SORTS[sort]).skip((page - 1) * limit).limit(limit)
    return {"products": [serialize_product(p) for p in cursor], "pagination": paginate(page, limit, total)}


@router.get("/search")
def search_products(
    q: str = Query(..., min_length=2),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query = {
        "is_active": True,
        "status": "active",
        "$or": [
            {"name": text_match(q)},
            {"description": text_match(q)},
            {"tags": text_match(q)},
        ],
    }
    total = database.db["product"].count_documents(query)
    cursor = database.db["product"].find(query).sort("rating.average", -1).skip((page - 1) * limit).limit(limit)
    return {"query": q, "products": [serialize_product(p) for p in cursor], "pagination": paginate(page, limit, total)}


@router.get("/featured")
def featured_products(limit: int = Query(10, ge=1, le=50)):
    cursor = database.db["product"].find(
        {"is_active": True, "status": "active", "is_featured": True}
    ).sort("rating.average", -1).limit(limit)
    return {"products": [serialize_product(p) for p in cursor]}


@router.get("/{id_or_slug}")
def get_product(id_or_slug: str):
    product = find_product(id_or_slug)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    database.db["product"].update_one({"_id": product["_id"]}, {"$inc": {"stats.views": 1}})
    product.setdefault("stats", {})["views"] = product.get("stats", {}).get("views", 0) + 1

    related: List[Dict[str, Any]] = [{"category_id": product["category_id"]}, {"shop_id": product["shop_id"]}]
    if product.get("subcategory_ids"):
        related.append({"subcategory_ids": {"$in": product["subcategory_ids"]}})
    similar = database.db["product"].find({
        "_id": {"$ne": product["_id"]},
        "is_active": True,
        "status": "active",
        "$or": related,
    }).sort("rating.average", -1).limit(8)

    shop = database.db["shop"].find_one({"_id": object_id(product["shop_id"])}, {"business_name": 1, "slug": 1, "stats": 1})
    return {
        "product": serialize_product(product),
        "shop": serialize_doc(shop),
        "similar_products": [serialize_product(p) for p in similar],
    }


@router.post("", status_code=201)
def create_product(req: ProductCreateRequest, user=Depends(require_roles("shop_owner", "admin"))):
    if user.get("role") == "admin" and req.shop_id:
        shop = database.db["shop"].find_one({"_id": object_id(req.shop_id, "shop id")})
    else:
        shop = database.db["shop"].find_one({"owner_id": str(user["_id"])})
    if not shop:
        raise HTTPException(status_code=400, detail="You must have a shop to create products")
    if shop.get("verification", {}).get("status") != "verified":
        raise HTTPException(status_code=400, detail="Your shop must be verified before adding products")
    _check_category(req.category_id)

    data = req.model_dump(exclude={"shop_id", "variants"})
    variants = _variants(req.variants)
    if req.track_quantity and req.stock == 0 and req.status == "active":
        data["status"] = "out_of_stock"
    product = Product(
        shop_id=str(shop["_id"]),
        slug=slugify(req.name, unique=True),
        has_variants=bool(variants),
        variants=variants,
        **data,
    )
    product_id = database.create_document("product", product)
    database.db["shop"].update_one({"_id": shop["_id"]}, {"$inc": {"stats.total_products": 1}})
    logger.info("product_created", product_id=product_id, shop_id=str(shop["_id"]))
    return {"message": "Product created successfully", "product": serialize_product(find_product(product_id))}


@router.put("/{product_id}")
def update_product(product_id: str, req: ProductUpdateRequest, user=Depends(get_current_user)):
    product = database.db["product"].find_one({"_id": object_id(product_id, "product id")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    _product_access(product, user)

    updates = req.model_dump(exclude_none=True, exclude={"variants"})
    if req.variants is not None:
        updates["variants"] = _variants(req.variants)
        updates["has_variants"] = bool(updates["variants"])
    if "category_id" in updates:
        _check_category(updates["category_id"])
    if "name" in updates and updates["name"] != product["name"]:
        updates["slug"] = slugify(updates["name"], unique=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    database.db["product"].update_one({"_id": product["_id"]}, {"$set": updates})
    inventory.sync_status(product["_id"])
    return {"message": "Product updated successfully", "product": serialize_product(find_product(product_id))}


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user)):
    product = database.db["product"].find_one({"_id": object_id(product_id, "product id")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    shop = _product_access(product, user)
    database.db["product"].delete_one({"_id": product["_id"]})
    if shop:
        database.db["shop"].update_one(
            {"_id": shop["_id"], "stats.total_products": {"$gt": 0}},
            {"$inc": {"stats.total_products": -1}},
        )
    logger.info("product_deleted", product_id=product_id)
    return {"message": "Product deleted successfully"}
