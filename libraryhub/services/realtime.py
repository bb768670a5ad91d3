"""Real-time delivery over WebSockets.

Frames in both directions are JSON objects ``{"event": <name>, "data": <payload>}``.
Every connection joins a personal room named after its user id, so pushing
to a user means emitting to that room. Delivery is best effort: nothing is
queued for users without an open connection.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from libraryhub.events import UserTopic
from libraryhub.models import Book, Notification, User
from libraryhub.policy import Action, is_allowed
from libraryhub.utils import new_id

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


class Connection:
    """One client socket and the rooms it has joined."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or new_id()
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING
        self.user: Optional[User] = None
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    def authenticate(self, user: User) -> None:
        if self.state != ConnectionState.CONNECTING:
            raise RuntimeError(f"Cannot authenticate a connection in state {self.state.value}")
        self.user = user
        self.state = ConnectionState.AUTHENTICATED

    def activate(self) -> None:
        if self.state != ConnectionState.AUTHENTICATED:
            raise RuntimeError(f"Cannot activate a connection in state {self.state.value}")
        self.state = ConnectionState.ACTIVE

    def close(self) -> None:
        self.state = ConnectionState.CLOSED

    async def send(self, event: str, data: Any) -> None:
        if self.state != ConnectionState.ACTIVE:
            raise RuntimeError(f"Connection {self.id} is not active")
        await self.websocket.send_json({"event": event, "data": data})


class PresenceRegistry:
    """Which users are online, and through which connections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Set[str]] = {}

    def add(self, user_id: str, connection_id: str) -> bool:
        """Record a connection; True if it is the user's first one."""
        with self._lock:
            connections = self._connections.setdefault(user_id, set())
            first = not connections
            connections.add(connection_id)
            return first

    def remove(self, user_id: str, connection_id: str) -> bool:
        """Forget a connection; True if it was the user's last one."""
        with self._lock:
            connections = self._connections.get(user_id)
            if not connections or connection_id not in connections:
                return False
            connections.discard(connection_id)
            if connections:
                return False
            del self._connections[user_id]
            return True

    def connections_for(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(user_id))

    def online_users(self) -> List[str]:
        with self._lock:
            return sorted(self._connections)


class NotificationHub:
    """Routes events to connections and implements the service ``Publisher``.

    Coroutine methods must run on the hub's event loop. ``publish_*`` may be
    called from any thread.
    """

    def __init__(self, presence: PresenceRegistry) -> None:
        self.presence = presence
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[[Connection, Any], Awaitable[None]]] = {
            "join:room": self._on_join_room,
            "message:private": self._on_private_message,
            "notification:send": self._on_notification_send,
            "book:update": self._on_book_update,
        }

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------- Lifecycle ------------------------- #
    async def register(self, connection: Connection) -> None:
        """Activate an authenticated connection and announce the user if newly online."""
        self._loop = asyncio.get_running_loop()
        connection.activate()
        user_id = connection.user_id
        self._connections[connection.id] = connection
        self.join(connection, UserTopic(user_id).room)
        first = self.presence.add(user_id, connection.id)
        logger.info(f"User {user_id} connected ({connection.id})")

        await self._deliver(connection, "connection:ack", {"connectionId": connection.id, "userId": user_id})
        if first:
            await self.broadcast("user:online", user_id, exclude=connection.id)

    async def unregister(self, connection: Connection) -> None:
        if self._connections.pop(connection.id, None) is None:
            connection.close()
            return
        connection.close()
        for room in list(connection.rooms):
            self._leave(connection, room)
        user_id = connection.user_id
        last = self.presence.remove(user_id, connection.id)
        logger.info(f"User {user_id} disconnected ({connection.id})")
        if last:
            await self.broadcast("user:offline", user_id)

    async def close_all(self) -> None:
        for connection in list(self._connections.values()):
            try:
                await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Closing {connection.id} failed: {e}")
            await self.unregister(connection)

    # ------------------------- Rooms ------------------------- #
    def join(self, connection: Connection, room: str) -> None:
        connection.rooms.add(room)
        self._rooms[room].add(connection.id)

    def _leave(self, connection: Connection, room: str) -> None:
        connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self._rooms[room]

    # ------------------------- Delivery ------------------------- #
    async def _deliver(self, connection: Connection, event: str, data: Any) -> bool:
        try:
            await connection.send(event, data)
            return True
        except Exception as e:
            logger.warning(f"Dropped {event} for connection {connection.id}: {e}")
            return False

    async def _deliver_many(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        delivered = 0
        for connection_id in list(connection_ids):
            connection = self._connections.get(connection_id)
            if connection is not None and await self._deliver(connection, event, data):
                delivered += 1
        return delivered

    async def emit_to_room(self, room: str, event: str, data: Any, exclude: Optional[str] = None) -> int:
        members = [cid for cid in self._rooms.get(room, ()) if cid != exclude]
        if not members:
            logger.debug(f"No connections in room {room}; {event} dropped")
            return 0
        return await self._deliver_many(members, event, data)

    async def send_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self.emit_to_room(UserTopic(user_id).room, event, data)

    async def broadcast(self, event: str, data: Any, exclude: Optional[str] = None) -> int:
        targets = [cid for cid in self._connections if cid != exclude]
        return await self._deliver_many(targets, event, data)

    # ------------------------- Publisher ------------------------- #
    def publish_notification(self, topic: UserTopic, notification: Notification) -> None:
        self._schedule(self.emit_to_room(topic.room, "notification:receive", notification.to_dict()))

    def publish_book_update(self, book: Book) -> None:
        self._schedule(self.broadcast("book:updated", book.to_dict()))

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not loop.is_running():
            coro.close()
            logger.debug("No active event loop for real-time delivery; event dropped")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    # ------------------------- Client events ------------------------- #
    async def handle_message(self, connection: Connection, message: Any) -> None:
        """Dispatch one frame received from a client."""
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await self._deliver(connection, "error", {"message": "Malformed message"})
            return
        event = message["event"]
        handler = self._handlers.get(event)
        if handler is None:
            await self._deliver(connection, "error", {"message": f"Unknown event: {event}"})
            return
        await handler(connection, message.get("data"))

    async def _on_join_room(self, connection: Connection, room: Any) -> None:
        if not isinstance(room, str) or not room:
            await self._deliver(connection, "error", {"message": "Room name is required"})
            return
        self.join(connection, room)
        logger.info(f"User {connection.user_id} joined room {room}")

    async def _on_private_message(self, connection: Connection, data: Any) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("to"), str):
            await self._deliver(connection, "error", {"message": "Private messages need a recipient"})
            return
        await self.send_to_user(data["to"], "message:receive",
                                {"from": connection.user_id, "message": data.get("message")})

    async def _on_notification_send(self, connection: Connection, data: Any) -> None:
        if not is_allowed(connection.user, Action.SOCKET_RELAY):
            await self._deliver(connection, "error", {"message": "Access denied: Insufficient permissions"})
            return
        if not isinstance(data, dict) or "to" not in data:
            await self._deliver(connection, "error", {"message": "Notification needs a recipient"})
            return
        recipients = data["to"] if isinstance(data["to"], list) else [data["to"]]
        for user_id in recipients:
            if isinstance(user_id, str):
                await self.send_to_user(user_id, "notification:receive", data.get("notification"))

    async def _on_book_update(self, connection: Connection, data: Any) -> None:
        if not is_allowed(connection.user, Action.SOCKET_RELAY):
            await self._deliver(connection, "error", {"message": "Access denied: Insufficient permissions"})
            return
        await self.broadcast("book:updated", data, exclude=connection.id)
