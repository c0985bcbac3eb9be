"""
Real-time push channel.

Clients connect to ``/ws?token=<jwt>`` and exchange ``{"event": ..., "data": ...}``
JSON messages. Every connection owns an asyncio queue drained by a writer task, so
request handlers running in the worker threadpool can publish without touching
the socket directly.
"""
import asyncio
import threading
from collections import defaultdict
from typing import Any, Dict, Optional, Set

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from .errors import AuthenticationError
from .security import user_from_token
from .utils import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()

ROLE_ROOMS = {
    "admin": "admins",
    "delivery_partner": "delivery_partners",
}


def _message(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


class Connection:
    def __init__(self, websocket: WebSocket, user: Dict[str, Any], loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.user_id = str(user["_id"])
        self.role = user.get("role", "customer")
        self.name = user.get("name")
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.rooms: Set[str] = set()

    def push(self, message: Dict[str, Any]) -> None:
        """Queue a message from any thread."""
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    async def writer(self) -> None:
        while True:
            message = await self.queue.get()
            await self.websocket.send_json(message)

    def writer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("realtime_send_failed", user_id=self.user_id, error=repr(error))
            # Stop routing events to a socket that can no longer be written
            hub.disconnect(self)


class RealtimeHub:
    def __init__(self):
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)
        self._lock = threading.Lock()

    def join(self, connection: Connection, room: str) -> None:
        with self._lock:
            self._rooms[room].add(connection)
            connection.rooms.add(room)

    def leave(self, connection: Connection, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._rooms[room]
            connection.rooms.discard(room)

    def disconnect(self, connection: Connection) -> None:
        for room in list(connection.rooms):
            self.leave(connection, room)

    def members(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        with self._lock:
            targets = list(self._rooms.get(room, ()))
        message = _message(event, data)
        for connection in targets:
            try:
                connection.push(message)
            except RuntimeError:
                # Loop already closed: the socket is going away
                logger.warning("realtime_emit_failed", room=room, event_name=event, user_id=connection.user_id)
        logger.debug("realtime_emit", room=room, event_name=event, recipients=len(targets))

    def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        self.emit(f"user:{user_id}", event, data)

    def emit_to_shop(self, shop_id: str, event: str, data: Dict[str, Any]) -> None:
        self.emit(f"shop:{shop_id}", event, data)

    def emit_to_order(self, order_id: str, event: str, data: Dict[str, Any]) -> None:
        self.emit(f"order:{order_id}", event, data)

    def emit_to_role(self, role: str, event: str, data: Dict[str, Any]) -> None:
        self.emit(ROLE_ROOMS.get(role, f"role:{role}"), event, data)


hub = RealtimeHub()


def initial_rooms(user_id: str, role: str):
    rooms = [f"user:{user_id}"]
    if role == "shop_owner":
        rooms.append(f"shop_owner:{user_id}")
    if role in ROLE_ROOMS:
        rooms.append(ROLE_ROOMS[role])
    return rooms


def _reply(connection: Connection, event: str, data: Dict[str, Any]) -> None:
    data.setdefault("timestamp", utcnow().isoformat())
    connection.queue.put_nowait(_message(event, data))


def handle_client_message(connection: Connection, message: Any) -> None:
    if not isinstance(message, dict):
        _reply(connection, "error", {"message": "Messages must be JSON objects"})
        return
    event = message.get("event")
    data = message.get("data")
    if not isinstance(data, dict):
        data = {}

    if event == "ping":
        _reply(connection, "pong", {})
    elif event == "subscribe:order":
        order_id = data.get("order_id")
        if not order_id:
            _reply(connection, "error", {"message": "order_id is required"})
            return
        hub.join(connection, f"order:{order_id}")
        _reply(connection, "subscribed:order", {"order_id": order_id, "message": "Subscribed to order updates"})
    elif event == "unsubscribe:order":
        order_id = data.get("order_id")
        hub.leave(connection, f"order:{order_id}")
        _reply(connection, "unsubscribed:order", {"order_id": order_id, "message": "Unsubscribed from order updates"})
    elif event == "subscribe:shop":
        shop_id = data.get("shop_id")
        if connection.role not in ("shop_owner", "admin"):
            _reply(connection, "error", {"message": "Unauthorized: Only shop owners can subscribe to shop notifications"})
            return
        hub.join(connection, f"shop:{shop_id}")
        _reply(connection, "subscribed:shop", {"shop_id": shop_id, "message": "Subscribed to shop order notifications"})
    elif event == "update:location":
        if connection.role != "delivery_partner":
            _reply(connection, "error", {"message": "Only delivery partners can share location"})
            return
        order_id = data.get("order_id")
        hub.emit_to_order(order_id, "order:location_update", {
            "order_id": order_id,
            "location": {"latitude": data.get("latitude"), "longitude": data.get("longitude")},
            "delivery_partner_id": connection.user_id,
            "timestamp": utcnow().isoformat(),
        })
    else:
        _reply(connection, "error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    try:
        if not token:
            raise AuthenticationError("No token provided")
        user = await run_in_threadpool(user_from_token, token)
    except AuthenticationError as exc:
        logger.info("realtime_auth_failed", reason=exc.message)
        await websocket.close(code=4401)
        return

    await websocket.accept()
    connection = Connection(websocket, user, asyncio.get_running_loop())
    for room in initial_rooms(connection.user_id, connection.role):
        hub.join(connection, room)
    _reply(connection, "connected", {
        "message": "Connected to marketplace real-time server",
        "user_id": connection.user_id,
    })
    logger.info("realtime_connected", user_id=connection.user_id, role=connection.role)

    writer = asyncio.create_task(connection.writer())
    writer.add_done_callback(connection.writer_done)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                _reply(connection, "error", {"message": "Invalid JSON"})
                continue
            handle_client_message(connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        writer.cancel()
        hub.disconnect(connection)
        logger.info("realtime_disconnected", user_id=connection.user_id)
