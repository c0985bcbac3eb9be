"""Payments against mock gateways (Razorpay, Stripe, Paytm). No money moves."""
import hashlib
import hmac
import secrets
import time
from datetime import datetime
from typing import Any, Callable, Dict, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .. import config, database
from ..errors import ForbiddenError
from ..notifications import emit
from ..schemas import PaymentMethod, PaymentStatus
from ..security import get_current_user, require_roles
from ..utils import as_utc, object_id, paginate, serialize_doc, utcnow
from .orders import get_order_or_404, is_order_shop_owner

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

Gateway = Literal["razorpay", "stripe", "paytm"]

SETTLED_PAYMENT_STATUSES = ("paid", "partially_refunded", "refunded")

PAYMENT_METHODS = [
    {"id": "cash", "name": "Cash on Delivery", "type": "cash",
     "description": "Pay with cash when order is delivered"},
    {"id": "card", "name": "Credit/Debit Card", "type": "online",
     "description": "Pay securely with your card", "gateways": ["razorpay", "stripe"]},
    {"id": "upi", "name": "UPI Payment", "type": "online",
     "description": "Pay with Google Pay, PhonePe, Paytm UPI", "gateways": ["razorpay", "paytm"]},
    {"id": "wallet", "name": "Digital Wallets", "type": "online",
     "description": "Pay with Paytm, Amazon Pay, etc.", "gateways": ["razorpay", "paytm"]},
    {"id": "bank_transfer", "name": "Net Banking", "type": "online",
     "description": "Pay directly from your bank account", "gateways": ["razorpay", "stripe"]},
]


class InitiateRequest(BaseModel):
    order_id: str
    payment_method: PaymentMethod
    gateway: str = "razorpay"


class VerifyRequest(BaseModel):
    order_id: str
    payment_id: str = Field(..., min_length=1)
    signature: Optional[str] = None
    gateway: Optional[str] = None


class RefundRequest(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)


def _stamp() -> int:
    return int(time.time() * 1000)


def _suffix() -> str:
    return secrets.token_hex(3)


def razorpay_signature(transaction_id: str, payment_id: str) -> str:
    message = f"{transaction_id}|{payment_id}".encode()
    return hmac.new(config.RAZORPAY_KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def _razorpay_payload(order: Dict[str, Any], user: Dict[str, Any], shop: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "transaction_id": f"rzp_{_stamp()}_{_suffix()}",
        "gateway_order_id": f"order_{_stamp()}",
        "amount": round(order["total"] * 100),
        "currency": "INR",
        "key": config.RAZORPAY_KEY_ID,
        "name": shop.get("business_name"),
        "description": f"Payment for order #{order['order_number']}",
        "prefill": {"name": user.get("name"), "email": user.get("email"), "contact": user.get("phone")},
    }


def _stripe_payload(order: Dict[str, Any], user: Dict[str, Any], shop: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "transaction_id": f"pi_{_stamp()}_{_suffix()}",
        "client_secret": f"pi_{_stamp()}_secret_{secrets.token_hex(8)}",
        "publishable_key": config.STRIPE_PUBLISHABLE_KEY,
        "amount": round(order["total"] * 100),
        "currency": "inr",
    }


def _paytm_payload(order: Dict[str, Any], user: Dict[str, Any], shop: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "transaction_id": f"paytm_{_stamp()}_{_suffix()}",
        "merchant_id": config.PAYTM_MERCHANT_ID,
        "order_id": order["order_number"],
        "amount": order["total"],
        "customer_info": {"cust_id": str(user["_id"]), "mobile": user.get("phone"), "email": user.get("email")},
    }


GATEWAYS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "razorpay": _razorpay_payload,
    "stripe": _stripe_payload,
    "paytm": _paytm_payload,
}


def verify_gateway_payment(gateway: str, order: Dict[str, Any], payment_id: str, signature: Optional[str]) -> bool:
    if gateway == "razorpay":
        transaction_id = order.get("payment", {}).get("transaction_id") or ""
        return bool(signature) and hmac.compare_digest(signature, razorpay_signature(transaction_id, payment_id))
    if gateway == "stripe":
        return payment_id.startswith("pi_")
    if gateway == "paytm":
        return payment_id.startswith("paytm_")
    raise HTTPException(status_code=400, detail="Unsupported payment gateway")


def _own_order(order_id: str, user: Dict[str, Any], action: str) -> Dict[str, Any]:
    order = get_order_or_404(order_id)
    if order["customer_id"] != str(user["_id"]):
        raise ForbiddenError(f"Not authorized to {action} for this order")
    return order


@router.get("/methods/{shop_id}")
def payment_methods(shop_id: str):
    shop = database.db["shop"].find_one({"_id": object_id(shop_id, "shop id")})
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    enabled = shop.get("settings", {}).get("payment_methods", ["cash"])
    return {
        "shop": {"id": shop_id, "name": shop["business_name"]},
        "payment_methods": [dict(m, enabled=True) for m in PAYMENT_METHODS if m["id"] in enabled],
    }


@router.post("/initiate")
def initiate_payment(req: InitiateRequest, user=Depends(get_current_user)):
    order = _own_order(req.order_id, user, "pay")
    if order["payment"]["status"] in SETTLED_PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail="Payment already completed for this order")
    if order["status"] not in ("pending", "confirmed"):
        raise HTTPException(status_code=400, detail="Order is not in a valid state for payment")
    shop = database.db["shop"].find_one({"_id": object_id(order["shop_id"])}) or {}
    if req.payment_method not in shop.get("settings", {}).get("payment_methods", ["cash"]):
        raise HTTPException(status_code=400, detail="Payment method not accepted by this shop")

    base = {
        "order_id": req.order_id,
        "order_number": order["order_number"],
        "payment_method": req.payment_method,
        "total": order["total"],
    }
    if req.payment_method == "cash":
        database.db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {"payment.method": "cash", "payment.status": "pending", "payment.gateway": None, "updated_at": utcnow()}},
        )
        return {"message": "Cash on delivery selected", **base, "requires_online_payment": False}

    builder = GATEWAYS.get(req.gateway)
    if builder is None:
        raise HTTPException(status_code=400, detail="Unsupported payment gateway")
    payload = builder(order, user, shop)
    database.db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {
            "payment.method": req.payment_method,
            "payment.gateway": req.gateway,
            "payment.transaction_id": payload["transaction_id"],
            "payment.status": "pending",
            "updated_at": utcnow(),
        }},
    )
    logger.info("payment_initiated", order_id=req.order_id, gateway=req.gateway, method=req.payment_method)
    return {"message": "Payment initiated successfully", **base, "gateway": req.gateway, "requires_online_payment": True, **payload}


@router.post("/verify")
def verify_payment(req: VerifyRequest, user=Depends(get_current_user)):
    order = _own_order(req.order_id, user, "verify payment")
    if order["payment"]["status"] in SETTLED_PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail="Payment already completed for this order")
    gateway = req.gateway or order["payment"].get("gateway") or "razorpay"
    now = utcnow()

    if not verify_gateway_payment(gateway, order, req.payment_id, req.signature):
        database.db["order"].update_one(
            {"_id": order["_id"], "payment.status": {"$nin": list(SETTLED_PAYMENT_STATUSES)}},
            {"$set": {"payment.status": "failed", "updated_at": now}},
        )
        logger.warning("payment_verification_failed", order_id=req.order_id, gateway=gateway)
        raise HTTPException(status_code=400, detail="Payment verification failed")

    updates: Dict[str, Any] = {
        "payment.status": "paid",
        "payment.paid_at": now,
        "payment.gateway": gateway,
        "payment.transaction_id": req.payment_id,
        "updated_at": now,
    }
    push = None
    if order["status"] == "pending":
        updates["status"] = "confirmed"
        updates["timestamps.confirmed_at"] = now
        push = {"status_history": {"status": "confirmed", "timestamp": now, "note": "Payment received", "updated_by": None}}
    operation: Dict[str, Any] = {"$set": updates}
    if push:
        operation["$push"] = push
    result = database.db["order"].update_one(
        {"_id": order["_id"], "payment.status": {"$nin": list(SETTLED_PAYMENT_STATUSES)}}, operation
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=400, detail="Payment already completed for this order")
    database.db["shop"].update_one({"_id": object_id(order["shop_id"])}, {"$inc": {"stats.total_revenue": order["total"]}})
    logger.info("payment_verified", order_id=req.order_id, gateway=gateway, total=order["total"])

    updated = get_order_or_404(req.order_id)
    emit("user", order["customer_id"], "payment:success", {"order_id": req.order_id, "order_number": order["order_number"]})
    emit("shop", order["shop_id"], "payment:received", {"order_id": req.order_id, "total": order["total"]})
    return {
        "message": "Payment verified successfully",
        "order_id": req.order_id,
        "order_number": order["order_number"],
        "payment_status": "paid",
        "order_status": updated["status"],
    }


@router.post("/refund")
def refund_payment(req: RefundRequest, user=Depends(require_roles("shop_owner", "admin"))):
    order = get_order_or_404(req.order_id)
    if user.get("role") != "admin" and not is_order_shop_owner(order, user):
        raise ForbiddenError("Not authorized to process refund for this order")
    payment = order["payment"]
    if payment["status"] not in ("paid", "partially_refunded"):
        raise HTTPException(status_code=400, detail="Order payment is not completed")
    if order["status"] not in ("cancelled", "delivered"):
        raise HTTPException(status_code=400, detail="Order must be cancelled or delivered to process refund")

    amount = req.amount or order["total"]
    if amount > order["total"]:
        raise HTTPException(status_code=400, detail="Refund amount cannot exceed order total")
    if amount <= payment.get("refund_amount", 0):
        raise HTTPException(status_code=400, detail="Refund amount already processed")

    now = utcnow()
    refund_id = f"refund_{_stamp()}_{_suffix()}"
    status = "refunded" if amount >= order["total"] else "partially_refunded"
    cancellation = dict(order.get("cancellation") or {})
    cancellation.update({"refund_id": refund_id, "refund_amount": amount, "refund_reason": req.reason})
    updates: Dict[str, Any] = {
        "payment.refund_amount": amount,
        "payment.status": status,
        "payment.refunded_at": now,
        "cancellation": cancellation,
        "updated_at": now,
    }
    operation: Dict[str, Any] = {"$set": updates}
    if order["status"] == "delivered":
        updates["status"] = "refunded"
        updates["timestamps.refunded_at"] = now
        operation["$push"] = {"status_history": {"status": "refunded", "timestamp": now, "note": req.reason, "updated_by": str(user["_id"])}}
    database.db["order"].update_one({"_id": order["_id"]}, operation)
    logger.info("payment_refunded", order_id=req.order_id, refund_id=refund_id, amount=amount, status=status)
    emit("user", order["customer_id"], "payment:refunded", {"order_id": req.order_id, "amount": amount})
    return {
        "message": "Refund processed successfully",
        "order_id": req.order_id,
        "order_number": order["order_number"],
        "refund_id": refund_id,
        "refund_amount": amount,
        "payment_status": status,
    }


@router.get("/history")
def payment_history(
    status: Optional[PaymentStatus] = None,
    method: Optional[PaymentMethod] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
):
    query: Dict[str, Any] = {"customer_id": str(user["_id"])}
    if status:
        query["payment.status"] = status
    if method:
        query["payment.method"] = method
    if start_date and end_date:
        query["created_at"] = {"$gte": as_utc(start_date), "$lte": as_utc(end_date)}
    total = database.db["order"].count_documents(query)
    cursor = database.db["order"].find(
        query, {"order_number": 1, "total": 1, "payment": 1, "shop_id": 1, "created_at": 1}
    ).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"payments": [serialize_doc(o) for o in cursor], "pagination": paginate(page, limit, total)}


@router.get("/analytics")
def payment_analytics(
    shop_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user=Depends(require_roles("shop_owner", "admin")),
):
    query: Dict[str, Any] = {}
    if user.get("role") == "shop_owner":
        shop = database.db["shop"].find_one({"owner_id": str(user["_id"])}, {"_id": 1})
        if not shop:
            raise HTTPException(status_code=404, detail="Shop not found")
        query["shop_id"] = str(shop["_id"])
    elif shop_id:
        query["shop_id"] = shop_id

    orders = list(database.db["order"].find(query, {"total": 1, "payment": 1, "created_at": 1}))
    if start_date and end_date:
        start, end = as_utc(start_date), as_utc(end_date)
        orders = [o for o in orders if start <= as_utc(o["created_at"]) <= end]

    by_method: Dict[str, Dict[str, Any]] = {}
    by_status: Dict[str, Dict[str, Any]] = {}
    daily: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        payment = order["payment"]
        method = by_method.setdefault(payment["method"], {"method": payment["method"], "total_orders": 0, "total_amount": 0.0, "paid_orders": 0, "paid_amount": 0.0})
        method["total_orders"] += 1
        method["total_amount"] = round(method["total_amount"] + order["total"], 2)
        status = by_status.setdefault(payment["status"], {"status": payment["status"], "total_orders": 0, "total_amount": 0.0})
        status["total_orders"] += 1
        status["total_amount"] = round(status["total_amount"] + order["total"], 2)
        if payment["status"] == "paid":
            method["paid_orders"] += 1
            method["paid_amount"] = round(method["paid_amount"] + order["total"], 2)
            day = as_utc(payment.get("paid_at") or order["created_at"]).strftime("%Y-%m-%d")
            trend = daily.setdefault(day, {"date": day, "total_payments": 0, "total_amount": 0.0})
            trend["total_payments"] += 1
            trend["total_amount"] = round(trend["total_amount"] + order["total"], 2)

    return {
        "payment_method_stats": list(by_method.values()),
        "payment_status_stats": list(by_status.values()),
        "daily_trends": [daily[d] for d in sorted(daily)],
    }
