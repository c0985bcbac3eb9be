from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import database
from ..pricing import with_derived_fields
from ..schemas import Category
from ..security import require_admin
from ..utils import maybe_object_id, object_id, paginate, serialize_doc, slugify, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/categories", tags=["categories"])

MAX_LEVEL = 3

PRODUCT_SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("rating.average", -1)],
    "newest": [("created_at", -1)],
    "popularity": [("stats.orders", -1)],
    "name": [("name", 1)],
}


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Empty string moves the category to the root")
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None


class ReorderItem(BaseModel):
    id: str
    sort_order: int


class ReorderRequest(BaseModel):
    categories: List[ReorderItem] = Field(..., min_length=1)


def find_category(id_or_slug: str) -> Optional[Dict[str, Any]]:
    oid = maybe_object_id(id_or_slug)
    if oid is not None:
        category = database.db["category"].find_one({"_id": oid})
        if category:
            return category
    return database.db["category"].find_one({"slug": id_or_slug})


def _category_or_404(id_or_slug: str) -> Dict[str, Any]:
    category = find_category(id_or_slug)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


def _in_category(category_id: str) -> Dict[str, Any]:
    return {"$or": [{"category_id": category_id}, {"subcategory_ids": category_id}]}


def product_count(category_id: str) -> int:
    query = _in_category(category_id)
    query.update({"is_active": True, "status": "active"})
    return database.db["product"].count_documents(query)


def with_count(category: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(category)
    data["product_count"] = product_count(data["id"])
    return data


def placement(parent_id: Optional[str]) -> Dict[str, Any]:
    """Level and materialized path for a category placed under `parent_id`."""
    if not parent_id:
        return {"parent_id": None, "level": 0, "path": []}
    parent = database.db["category"].find_one({"_id": object_id(parent_id, "parent category id")})
    if not parent:
        raise HTTPException(status_code=404, detail="Parent category not found")
    level = parent.get("level", 0) + 1
    if level > MAX_LEVEL:
        raise HTTPException(status_code=400, detail=f"Category depth cannot exceed {MAX_LEVEL} levels")
    return {"parent_id": str(parent["_id"]), "level": level, "path": list(parent.get("path", [])) + [str(parent["_id"])]}


def breadcrumb(category: Dict[str, Any]) -> List[Dict[str, Any]]:
    crumbs = []
    for ancestor_id in category.get("path", []):
        ancestor = database.db["category"].find_one({"_id": object_id(ancestor_id)})
        if ancestor:
            crumbs.append({"id": ancestor_id, "name": ancestor["name"], "slug": ancestor["slug"]})
    crumbs.append({"id": str(category["_id"]), "name": category["name"], "slug": category["slug"]})
    return crumbs


def build_tree(categories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    nodes = {}
    for category in categories:
        node = serialize_doc(category)
        node["children"] = []
        nodes[node["id"]] = node
    roots = []
    for node in nodes.values():
        parent = nodes.get(node.get("parent_id"))
        if parent is not None:
            parent["children"].append(node)
        elif not node.get("parent_id"):
            roots.append(node)
    return roots


CATEGORY_SORT = [("sort_order", 1), ("name", 1)]


@router.get("")
def list_categories(
    parent: Optional[str] = None,
    level: Optional[int] = Query(None, ge=0, le=MAX_LEVEL),
    featured: Optional[bool] = None,
    active: bool = True,
):
    query: Dict[str, Any] = {}
    if active:
        query["is_active"] = True
    if parent is not None:
        query["parent_id"] = None if parent in ("null", "") else parent
    if level is not None:
        query["level"] = level
    if featured is not None:
        query["is_featured"] = featured
    categories = database.db["category"].find(query).sort(CATEGORY_SORT)
    return {"categories": [with_count(c) for c in categories]}


@router.get("/tree")
def category_tree():
    categories = list(database.db["category"].find({"is_active": True}).sort(CATEGORY_SORT))
    return {"categories": build_tree(categories)}


@router.get("/featured")
def featured_categories(limit: int = Query(10, ge=1, le=50)):
    categories = database.db["category"].find({"is_active": True, "is_featured": True}).sort(CATEGORY_SORT).limit(limit)
    return {"categories": [with_count(c) for c in categories]}


@router.get("/{id_or_slug}")
def get_category(id_or_slug: str):
    category = _category_or_404(id_or_slug)
    category_id = str(category["_id"])
    subcategories = database.db["category"].find({"parent_id": category_id, "is_active": True}).sort(CATEGORY_SORT)
    return {
        "category": with_count(category),
        "subcategories": [with_count(c) for c in subcategories],
        "breadcrumb": breadcrumb(category),
    }


@router.get("/{id_or_slug}/products")
def category_products(
    id_or_slug: str,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    rating: Optional[float] = Query(None, ge=0, le=5),
    in_stock: Optional[bool] = None,
    sort: Literal["price_asc", "price_desc", "rating", "newest", "popularity", "name"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    category = _category_or_404(id_or_slug)
    query = _in_category(str(category["_id"]))
    query.update({"is_active": True, "status": "active"})
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
    total = database.db["product"].count_documents(query)
    cursor = database.db["product"].find(query).sort(PRODUCT_SORTS[sort]).skip((page - 1) * limit).limit(limit)
    return {
        "category": {"id": str(category["_id"]), "name": category["name"], "slug": category["slug"]},
        "products": [with_derived_fields(serialize_doc(p)) for p in cursor],
        "pagination": paginate(page, limit, total),
    }


@router.post("", status_code=201)
def create_category(req: CategoryCreateRequest, admin=Depends(require_admin)):
    if database.db["category"].find_one({"name": req.name}):
        raise HTTPException(status_code=400, detail="Category with this name already exists")
    data = req.model_dump()
    data.update(placement(req.parent_id))
    category = Category(slug=slugify(req.name), **data)
    category_id = database.create_document("category", category)
    logger.info("category_created", category_id=category_id, level=category.level)
    return {"message": "Category created successfully", "category": with_count(find_category(category_id))}


@router.put("/reorder")
def reorder_categories(req: ReorderRequest, admin=Depends(require_admin)):
    updated = 0
    for item in req.categories:
        result = database.db["category"].update_one(
            {"_id": object_id(item.id, "category id")},
            {"$set": {"sort_order": item.sort_order, "updated_at": utcnow()}},
        )
        updated += result.matched_count
    return {"message": "Categories reordered successfully", "updated": updated}


def _move_descendants(category_id: str, new_path: List[str]) -> None:
    """Rewrite the path and level of every descendant after a parent change."""
    categories = database.db["category"]
    for descendant in categories.find({"path": category_id}):
        old_path = descendant["path"]
        tail = old_path[old_path.index(category_id):]
        path = new_path + tail
        categories.update_one(
            {"_id": descendant["_id"]},
            {"$set": {"path": path, "level": len(path), "updated_at": utcnow()}},
        )


@router.put("/{category_id}")
def update_category(category_id: str, req: CategoryUpdateRequest, admin=Depends(require_admin)):
    category = database.db["category"].find_one({"_id": object_id(category_id, "category id")})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    fields = req.model_fields_set
    updates = {k: v for k, v in req.model_dump(exclude={"parent_id"}).items() if k in fields and v is not None}
    if "name" in updates and updates["name"] != category["name"]:
        if database.db["category"].find_one({"name": updates["name"], "_id": {"$ne": category["_id"]}}):
            raise HTTPException(status_code=400, detail="Category with this name already exists")
        updates["slug"] = slugify(updates["name"])

    moved = False
    if "parent_id" in fields and (req.parent_id or None) != category.get("parent_id"):
        new_parent = req.parent_id or None
        if new_parent == category_id:
            raise HTTPException(status_code=400, detail="A category cannot be its own parent")
        new_place = placement(new_parent)
        if category_id in new_place["path"]:
            raise HTTPException(status_code=400, detail="A category cannot be moved under its own descendant")
        deepest = max([d.get("level", 0) for d in database.db["category"].find({"path": category_id})] or [category.get("level", 0)])
        if new_place["level"] + (deepest - category.get("level", 0)) > MAX_LEVEL:
            raise HTTPException(status_code=400, detail=f"Category depth cannot exceed {MAX_LEVEL} levels")
        updates.update(new_place)
        moved = True

    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    database.db["category"].update_one({"_id": category["_id"]}, {"$set": updates})
    if moved:
        _move_descendants(category_id, updates["path"])
        logger.info("category_moved", category_id=category_id, parent_id=updates["parent_id"])
    return {"message": "Category updated successfully", "category": with_count(find_category(category_id))}


@router.delete("/{category_id}")
def delete_category(category_id: str, admin=Depends(require_admin)):
    category = database.db["category"].find_one({"_id": object_id(category_id, "category id")})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    if database.db["product"].count_documents(_in_category(category_id)):
        raise HTTPException(status_code=400, detail="Cannot delete category with existing products")
    if database.db["category"].count_documents({"parent_id": category_id}):
        raise HTTPException(status_code=400, detail="Cannot delete category with subcategories")
    database.db["category"].delete_one({"_id": category["_id"]})
    logger.info("category_deleted", category_id=category_id)
    return {"message": "Category deleted successfully"}
