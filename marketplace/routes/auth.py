import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, Literal, Optional

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from .. import config, database
from ..errors import AccountLockedError, AuthenticationError, ForbiddenError
from ..notifications import notify
from ..schemas import PHONE_PATTERN, BusinessType, ContactInfo, Shop, ShopAddress, User
from ..security import create_token, get_current_user, hash_password, public_user, verify_password
from ..utils import as_utc, serialize_doc, slugify, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# Request models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=6)
    role: Literal["customer", "shop_owner", "delivery_partner"] = "customer"
    business_name: Optional[str] = Field(None, max_length=200)
    business_type: Optional[BusinessType] = None
    date_of_birth: Optional[str] = None
    gender: Optional[Literal["male", "female", "other"]] = None


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, description="Email or phone")
    password: str = Field(..., min_length=1)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[str] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    preferences: Optional[Dict[str, Any]] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6)


class VerifyPhoneRequest(BaseModel):
    code: str = Field(..., pattern=r"^\d{6}$")


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def shop_summary(owner_id: str) -> Optional[Dict[str, Any]]:
    shop = database.db["shop"].find_one({"owner_id": owner_id})
    if not shop:
        return None
    return {
        "id": str(shop["_id"]),
        "business_name": shop["business_name"],
        "business_type": shop.get("business_type"),
        "verification_status": shop.get("verification", {}).get("status"),
    }


@router.post("/register", status_code=201)
def register(req: RegisterRequest):
    users = database.db["user"]
    if users.find_one({"$or": [{"email": req.email}, {"phone": req.phone}]}):
        raise HTTPException(status_code=400, detail="User with this email or phone already exists")

    user = User(
        name=req.name,
        email=req.email,
        phone=req.phone,
        password_hash=hash_password(req.password),
        role=req.role,
        date_of_birth=req.date_of_birth,
        gender=req.gender,
        email_verification_token=secrets.token_hex(32),
        phone_verification_token=f"{secrets.randbelow(900000) + 100000}",
    )
    user_id = database.create_document("user", user)

    shop = None
    if req.role == "shop_owner" and req.business_name and req.business_type:
        placeholder = Shop(
            owner_id=user_id,
            business_name=req.business_name,
            slug=slugify(req.business_name, unique=True),
            business_type=req.business_type,
            contact_info=ContactInfo(phone=req.phone, email=req.email),
            address=ShopAddress(address_line1="To be updated", city="To be updated", state="To be updated", pincode="000000"),
        )
        database.create_document("shop", placeholder)
        shop = shop_summary(user_id)

    created = users.find_one({"_id": ObjectId(user_id)})
    logger.info("user_registered", user_id=user_id, role=req.role)
    if config.ENVIRONMENT == "development":
        logger.debug("verification_tokens", user_id=user_id, email_token=user.email_verification_token, phone_code=user.phone_verification_token)

    response = {"message": "User registered successfully", "token": create_token(created), "user": public_user(created)}
    if shop:
        response["shop"] = shop
    return response


@router.post("/login")
def login(req: LoginRequest):
    users = database.db["user"]
    user = users.find_one({"$or": [{"email": req.login.lower()}, {"email": req.login}, {"phone": req.login}]})
    if not user:
        raise AuthenticationError("Invalid credentials")

    now = utcnow()
    lock_until = as_utc(user.get("lock_until"))
    if lock_until and lock_until > now:
        raise AccountLockedError()

    if not verify_password(req.password, user.get("password_hash", "")):
        attempts = 1 if lock_until else user.get("login_attempts", 0) + 1
        updates: Dict[str, Any] = {"login_attempts": attempts, "lock_until": None}
        if attempts >= config.MAX_LOGIN_ATTEMPTS:
            updates["lock_until"] = now + timedelta(minutes=config.LOCK_MINUTES)
            logger.warning("account_locked", user_id=str(user["_id"]), attempts=attempts)
        users.update_one({"_id": user["_id"]}, {"$set": updates})
        raise AuthenticationError("Invalid credentials")

    if not user.get("is_active", True):
        raise ForbiddenError("Account is deactivated")

    users.update_one(
        {"_id": user["_id"]},
        {"$set": {"login_attempts": 0, "lock_until": None, "last_login": now, "updated_at": now}},
    )
    user = users.find_one({"_id": user["_id"]})
    response = {"message": "Login successful", "token": create_token(user), "user": public_user(user)}
    if user.get("role") == "shop_owner":
        response["shop"] = shop_summary(str(user["_id"]))
    return response


@router.get("/me")
def me(user=Depends(get_current_user)):
    user_id = str(user["_id"])
    addresses = database.db["address"].find({"user_id": user_id, "is_active": True}).sort("is_default", -1)
    response = {"user": public_user(user), "addresses": [serialize_doc(a) for a in addresses]}
    if user.get("role") == "shop_owner":
        shop = database.db["shop"].find_one({"owner_id": user_id})
        response["shop"] = serialize_doc(shop) if shop else None
    return response


@router.put("/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(get_current_user)):
    updates = {k: v for k, v in req.model_dump(exclude={"preferences"}).items() if v is not None}
    if req.preferences is not None:
        preferences = dict(user.get("preferences") or {})
        preferences.update(req.preferences)
        updates["preferences"] = preferences
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = utcnow()
    database.db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    updated = database.db["user"].find_one({"_id": user["_id"]})
    return {"message": "Profile updated successfully", "user": public_user(updated)}


@router.put("/change-password")
def change_password(req: ChangePasswordRequest, user=Depends(get_current_user)):
    if not verify_password(req.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    database.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(req.new_password), "updated_at": utcnow()}},
    )
    logger.info("password_changed", user_id=str(user["_id"]))
    return {"message": "Password changed successfully"}


@router.post("/forgot-password")
def forgot_password(req: ForgotPasswordRequest):
    user = database.db["user"].find_one({"email": req.email})
    if user:
        token = secrets.token_hex(20)
        database.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {
                "password_reset_token": _hash_token(token),
                "password_reset_expires": utcnow() + timedelta(minutes=config.RESET_TOKEN_MINUTES),
            }},
        )
        notify(str(user["_id"]), "Password Reset", "Use this token to reset your password", transient={"reset_token": token})
        if config.ENVIRONMENT == "development":
            logger.info("password_reset_requested", user_id=str(user["_id"]), reset_token=token)
    # Same answer whether or not the email is registered
    return {"message": "If an account with that email exists, a password reset link has been sent"}


@router.post("/reset-password/{token}")
def reset_password(token: str, req: ResetPasswordRequest):
    users = database.db["user"]
    user = users.find_one({"password_reset_token": _hash_token(token)})
    expires = as_utc(user.get("password_reset_expires")) if user else None
    if not user or not expires or expires <= utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    users.update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_hash": hash_password(req.password),
            "password_reset_token": None,
            "password_reset_expires": None,
            "login_attempts": 0,
            "lock_until": None,
            "updated_at": utcnow(),
        }},
    )
    logger.info("password_reset", user_id=str(user["_id"]))
    return {"message": "Password reset successful", "token": create_token(user)}


@router.get("/verify-email/{token}")
def verify_email(token: str):
    users = database.db["user"]
    user = users.find_one({"email_verification_token": token})
    if not user:
        raise HTTPException(status_code=400, detail="Invalid verification token")
    users.update_one(
        {"_id": user["_id"]},
        {"$set": {"is_email_verified": True, "email_verification_token": None, "updated_at": utcnow()}},
    )
    return {"message": "Email verified successfully"}


@router.post("/verify-phone")
def verify_phone(req: VerifyPhoneRequest, user=Depends(get_current_user)):
    if not user.get("phone_verification_token") or user["phone_verification_token"] != req.code:
        raise HTTPException(status_code=400, detail="Invalid verification code")
    database.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_phone_verified": True, "phone_verification_token": None, "updated_at": utcnow()}},
    )
    return {"message": "Phone verified successfully"}
