import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def object_id(value: str, name: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    return ObjectId(value)


def maybe_object_id(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if ObjectId.is_valid(value) else None


def _convert(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_convert(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return _convert(doc)


def slugify(text: str, unique: bool = False) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if unique:
        slug = f"{slug}-{int(time.time() * 1000)}"
    return slug


def paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    return {
        "current": page,
        "pages": math.ceil(total / limit) if limit else 0,
        "total": total,
        "has_next": page * limit < total,
        "has_prev": page > 1,
    }


def text_match(text: str) -> Dict[str, Any]:
    """Case-insensitive substring match with regex metacharacters taken literally."""
    return {"$regex": re.escape(text), "$options": "i"}
