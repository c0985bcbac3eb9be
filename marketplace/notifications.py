"""In-app notifications: stored for the inbox and pushed over the real-time channel."""
from typing import Any, Dict, Optional

import structlog
from pymongo.errors import PyMongoError

from . import database
from .realtime import hub
from .schemas import Notification
from .utils import serialize_doc

logger = structlog.get_logger(__name__)


def notify(
    user_id: str,
    subject: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    transient: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Store and push a notification. Delivery is best effort and never raises.

    ``transient`` values ride along on the real-time push only and are never stored.
    """
    notification = Notification(user_id=str(user_id), subject=subject, message=message, data=data or {})
    try:
        notification_id = database.create_document("notification", notification)
    except PyMongoError:
        logger.exception("notification_store_failed", user_id=user_id, subject=subject)
        return None
    payload = notification.model_dump()
    payload["id"] = notification_id
    if transient:
        payload["data"] = {**payload["data"], **transient}
    try:
        hub.emit_to_user(str(user_id), "notification", serialize_doc(payload))
    except Exception:
        logger.exception("notification_emit_failed", user_id=user_id, subject=subject)
    return notification_id


def emit(room_kind: str, target_id: str, event: str, data: Dict[str, Any]) -> None:
    """Fire-and-forget emit to user/shop/order rooms."""
    try:
        hub.emit(f"{room_kind}:{target_id}", event, serialize_doc(data))
    except Exception:
        logger.exception("realtime_emit_failed", room=f"{room_kind}:{target_id}", event_name=event)
