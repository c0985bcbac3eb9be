"""
MongoDB access for the marketplace.

Collections (one per document type, lowercase singular names):
user, address, shop, category, product, review, cart, order, notification
"""
from datetime import datetime, timezone
from typing import Any, Dict, Union

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from . import config

logger = structlog.get_logger(__name__)

# MongoClient connects lazily, so importing this module never touches the network.
client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
db = client[config.DATABASE_NAME]


def use_database(database) -> None:
    """Swap the module-level database handle (tests install a mongomock database here)."""
    global db
    db = database


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes() -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("phone", ASCENDING)])
    db["address"].create_index([("user_id", ASCENDING), ("is_default", ASCENDING)])
    db["shop"].create_index([("slug", ASCENDING)], unique=True)
    db["shop"].create_index([("owner_id", ASCENDING)])
    db["shop"].create_index([("verification.status", ASCENDING), ("is_active", ASCENDING)])
    db["shop"].create_index([("address.pincode", ASCENDING)])
    db["category"].create_index([("slug", ASCENDING)], unique=True)
    db["category"].create_index([("name", ASCENDING)], unique=True)
    db["category"].create_index([("parent_id", ASCENDING), ("sort_order", ASCENDING)])
    db["product"].create_index([("slug", ASCENDING)], unique=True)
    db["product"].create_index([("shop_id", ASCENDING)])
    db["product"].create_index([("category_id", ASCENDING)])
    db["product"].create_index([("rating.average", DESCENDING)])
    db["review"].create_index([("product_id", ASCENDING), ("customer_id", ASCENDING)])
    db["review"].create_index([("shop_id", ASCENDING)])
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index([("shop_id", ASCENDING), ("status", ASCENDING)])
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("indexes_ensured", database=db.name)
