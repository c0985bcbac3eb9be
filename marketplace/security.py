from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config, database
from .errors import AuthenticationError, ForbiddenError
from .utils import serialize_doc

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Fields that never leave the API
PRIVATE_USER_FIELDS = (
    "password_hash",
    "email_verification_token",
    "phone_verification_token",
    "password_reset_token",
    "password_reset_expires",
    "login_attempts",
    "lock_until",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "exp": datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def user_from_token(token: str) -> Dict[str, Any]:
    """Resolve a bearer token to an active user document or raise 401."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except JWTError:
        raise AuthenticationError("Not authorized to access this route")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise AuthenticationError("Not authorized to access this route")
    user = database.db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise AuthenticationError("No user found with this token")
    if not user.get("is_active", True):
        raise AuthenticationError("User account is deactivated")
    return user


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


def get_current_user(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    if not token:
        raise AuthenticationError("Not authorized to access this route")
    return user_from_token(token)


def get_optional_user(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    if not token:
        return None
    try:
        return user_from_token(token)
    except AuthenticationError:
        return None


def require_roles(*roles: str):
    def dependency(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise ForbiddenError(f"User role '{user.get('role')}' is not authorized to access this route")
        return user

    return dependency


require_admin = require_roles("admin")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}
    return serialize_doc(data)
