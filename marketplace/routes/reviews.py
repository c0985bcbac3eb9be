from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator

from .. import database
from ..errors import ForbiddenError
from ..schemas import Review
from ..security import get_current_user, require_admin, require_roles
from ..utils import object_id, paginate, serialize_doc, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["reviews"])

REVIEW_SORTS = {
    "newest": [("created_at", -1)],
    "helpful": [("helpful_votes", -1), ("created_at", -1)],
    "rating_high": [("rating", -1), ("created_at", -1)],
    "rating_low": [("rating", 1), ("created_at", -1)],
}


class ReviewCreateRequest(BaseModel):
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    comment: str = Field(..., min_length=1, max_length=1000)
    images: List[str] = Field([], max_length=5)

    @model_validator(mode="after")
    def needs_target(self):
        if not self.product_id and not self.shop_id:
            raise ValueError("product_id or shop_id is required")
        return self


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)
    images: Optional[List[str]] = Field(None, max_length=5)


class VoteRequest(BaseModel):
    helpful: bool


class ShopResponseRequest(BaseModel):
    comment: str = Field(..., min_length=1, max_length=500)


class ModerateRequest(BaseModel):
    status: Literal["approved", "rejected"]
    reason: Optional[str] = Field(None, max_length=500)


def rating_summary(reviews: List[Dict[str, Any]]) -> Dict[str, Any]:
    distribution = {str(i): 0 for i in range(1, 6)}
    for review in reviews:
        distribution[str(review["rating"])] += 1
    count = len(reviews)
    average = round(sum(r["rating"] for r in reviews) / count, 1) if count else 0
    return {"average": average, "count": count, "distribution": distribution}


def refresh_ratings(product_id: Optional[str], shop_id: Optional[str]) -> None:
    """Recompute product and shop rating aggregates over approved reviews."""
    reviews = database.db["review"]
    if product_id:
        summary = rating_summary(list(reviews.find({"product_id": product_id, "status": "approved"}, {"rating": 1})))
        database.db["product"].update_one({"_id": object_id(product_id)}, {"$set": {"rating": summary}})
    if shop_id:
        summary = rating_summary(list(reviews.find({"shop_id": shop_id, "status": "approved"}, {"rating": 1})))
        database.db["shop"].update_one(
            {"_id": object_id(shop_id)},
            {"$set": {"stats.average_rating": summary["average"], "stats.total_reviews": summary["count"]}},
        )


def serialize_review(review: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_doc(review)
    total = review.get("total_votes", 0)
    data["helpfulness_percentage"] = round(review.get("helpful_votes", 0) / total * 100) if total else 0
    data.pop("voters", None)
    return data


def _review_or_404(review_id: str) -> Dict[str, Any]:
    review = database.db["review"].find_one({"_id": object_id(review_id, "review id")})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@router.get("/products/{product_id}/reviews")
def product_reviews(
    product_id: str,
    sort: Literal["newest", "helpful", "rating_high", "rating_low"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
):
    product = database.db["product"].find_one({"_id": object_id(product_id, "product id")}, {"rating": 1})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    query = {"product_id": product_id, "status": "approved"}
    total = database.db["review"].count_documents(query)
    cursor = database.db["review"].find(query).sort(REVIEW_SORTS[sort]).skip((page - 1) * limit).limit(limit)
    return {
        "reviews": [serialize_review(r) for r in cursor],
        "rating": product.get("rating"),
        "pagination": paginate(page, limit, total),
    }


@router.post("/reviews", status_code=201)
def create_review(req: ReviewCreateRequest, user=Depends(require_roles("customer"))):
    customer_id = str(user["_id"])
    shop_id = req.shop_id
    if req.product_id:
        product = database.db["product"].find_one({"_id": object_id(req.product_id, "product id")})
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if database.db["review"].find_one({"product_id": req.product_id, "customer_id": customer_id}):
            raise HTTPException(status_code=400, detail="You have already reviewed this product")
        shop_id = shop_id or product["shop_id"]
    if shop_id and not database.db["shop"].find_one({"_id": object_id(shop_id, "shop id")}):
        raise HTTPException(status_code=404, detail="Shop not found")

    verified = False
    if req.product_id:
        verified = database.db["order"].find_one({
            "customer_id": customer_id,
            "status": "delivered",
            "items.product_id": req.product_id,
        }) is not None

    review = Review(customer_id=customer_id, is_verified=verified, **{**req.model_dump(), "shop_id": shop_id})
    review_id = database.create_document("review", review)
    refresh_ratings(req.product_id, shop_id)
    logger.info("review_created", review_id=review_id, product_id=req.product_id, shop_id=shop_id)
    return {"message": "Review added successfully", "review": serialize_review(_review_or_404(review_id))}


@router.put("/reviews/{review_id}")
def update_review(review_id: str, req: ReviewUpdateRequest, user=Depends(get_current_user)):
    review = _review_or_404(review_id)
    if review["customer_id"] != str(user["_id"]):
        raise ForbiddenError("Not authorized to update this review")
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates.update({"is_edited": True, "updated_at": utcnow()})
    database.db["review"].update_one({"_id": review["_id"]}, {"$set": updates})
    refresh_ratings(review.get("product_id"), review.get("shop_id"))
    return {"message": "Review updated successfully", "review": serialize_review(_review_or_404(review_id))}


@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user)):
    review = _review_or_404(review_id)
    if review["customer_id"] != str(user["_id"]) and user.get("role") != "admin":
        raise ForbiddenError("Not authorized to delete this review")
    database.db["review"].delete_one({"_id": review["_id"]})
    refresh_ratings(review.get("product_id"), review.get("shop_id"))
    return {"message": "Review deleted successfully"}


@router.post("/reviews/{review_id}/vote")
def vote_review(review_id: str, req: VoteRequest, user=Depends(get_current_user)):
    review = _review_or_404(review_id)
    user_id = str(user["_id"])
    if review["customer_id"] == user_id:
        raise HTTPException(status_code=400, detail="You cannot vote on your own review")

    vote = "helpful" if req.helpful else "not_helpful"
    voters = [v for v in review.get("voters", []) if v["user_id"] != user_id]
    voters.append({"user_id": user_id, "vote": vote, "voted_at": utcnow()})
    helpful = sum(1 for v in voters if v["vote"] == "helpful")
    database.db["review"].update_one(
        {"_id": review["_id"]},
        {"$set": {"voters": voters, "helpful_votes": helpful, "total_votes": len(voters)}},
    )
    return {"message": "Vote recorded", "review": serialize_review(_review_or_404(review_id))}


@router.post("/reviews/{review_id}/response")
def respond_to_review(review_id: str, req: ShopResponseRequest, user=Depends(get_current_user)):
    review = _review_or_404(review_id)
    shop = database.db["shop"].find_one({"_id": object_id(review["shop_id"])}) if review.get("shop_id") else None
    if not shop or shop.get("owner_id") != str(user["_id"]):
        raise ForbiddenError("Only the shop owner can respond to this review")
    response = {"comment": req.comment, "responded_at": utcnow(), "responded_by": str(user["_id"])}
    database.db["review"].update_one({"_id": review["_id"]}, {"$set": {"shop_response": response}})
    return {"message": "Response added successfully", "review": serialize_review(_review_or_404(review_id))}


@router.put("/reviews/{review_id}/moderate")
def moderate_review(review_id: str, req: ModerateRequest, admin=Depends(require_admin)):
    review = _review_or_404(review_id)
    database.db["review"].update_one(
        {"_id": review["_id"]},
        {"$set": {
            "status": req.status,
            "moderation": {"reason": req.reason, "moderated_by": str(admin["_id"]), "moderated_at": utcnow()},
            "updated_at": utcnow(),
        }},
    )
    refresh_ratings(review.get("product_id"), review.get("shop_id"))
    logger.info("review_moderated", review_id=review_id, status=req.status)
    return {"message": f"Review {req.status} successfully", "review": serialize_review(_review_or_404(review_id))}
