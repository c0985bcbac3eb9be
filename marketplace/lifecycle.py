"""Order status lifecycle: the transition table and order numbering."""
import random
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransitionError
from .utils import utcnow

ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"preparing", "cancelled"}),
    "preparing": frozenset({"ready", "cancelled"}),
    "ready": frozenset({"out_for_delivery", "delivered"}),
    "out_for_delivery": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

ORDER_STATUSES = tuple(ORDER_TRANSITIONS)

ACTIVE_STATUSES = ("pending", "confirmed", "preparing", "ready", "out_for_delivery")

STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and is being prepared",
    "preparing": "Your order is being prepared",
    "ready": "Your order is ready for pickup/delivery",
    "out_for_delivery": "Your order is out for delivery",
    "delivered": "Your order has been delivered",
    "cancelled": "Your order has been cancelled",
    "refunded": "Your order has been refunded",
}


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def can_cancel(status: str) -> bool:
    return can_transition(status, "cancelled")


def is_active(status: str) -> bool:
    return status in ACTIVE_STATUSES


def status_message(status: str) -> str:
    return STATUS_MESSAGES.get(status, f"Your order status is now {status}")


def generate_order_number(now: Optional[datetime] = None) -> str:
    """ORD + YYMMDD + six random digits, e.g. ORD251019042137."""
    now = now or utcnow()
    return f"ORD{now.strftime('%y%m%d')}{random.randint(0, 999999):06d}"
