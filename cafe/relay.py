"""In-process fan-out of order events to connected WebSocket clients.

Every connection joins ``user:<id>`` and, for staff, ``staff``. Publishing
never blocks the caller: messages are handed to each subscriber's own event
loop and queued there; a writer task per connection drains the queue.
"""
import asyncio
import logging
import threading
from typing import Any, Dict, Iterable, Optional, Set

from .models import STAFF_ROLES

logger = logging.getLogger(__name__)

STAFF_ROOM = "staff"
ORDER_CREATED = "order:created"
ORDER_STATUS_UPDATED = "order:statusUpdated"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class Subscription:
    def __init__(self, user_id: int, role: str, loop: asyncio.AbstractEventLoop, maxsize: int = 100):
        self.user_id = user_id
        self.role = role
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    @property
    def rooms(self) -> Set[str]:
        rooms = {user_room(self.user_id)}
        if self.role in STAFF_ROLES:
            rooms.add(STAFF_ROOM)
        return rooms

    def offer(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._put, message)

    def _put(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("dropping %s for user %s: queue full", message.get("event"), self.user_id)


class NotificationRelay:
    def __init__(self):
        self._lock = threading.Lock()
        self._rooms: Dict[str, Set[Subscription]] = {}

    def subscribe(self, user_id: int, role: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        sub = Subscription(user_id, role, loop or asyncio.get_running_loop())
        with self._lock:
            for room in sub.rooms:
                self._rooms.setdefault(room, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for room in sub.rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(sub)
                if not members:
                    del self._rooms[room]

    def members(self, rooms: Iterable[str]) -> Set[Subscription]:
        with self._lock:
            targets: Set[Subscription] = set()
            for room in rooms:
                targets |= self._rooms.get(room, set())
            return targets

    def publish(self, event: str, payload: Dict[str, Any]) -> int:
        """Send ``event`` to the owner's room and the staff room.

        Returns how many connections the message was handed to. A connection
        in both rooms receives it once.
        """
        message = {"event": event, "data": payload}
        delivered = 0
        for sub in self.members((user_room(payload["userId"]), STAFF_ROOM)):
            try:
                sub.offer(message)
            except RuntimeError:
                # loop already closed; the connection is gone
                logger.warning("dropping %s for user %s: connection closed", event, sub.user_id)
                self.unsubscribe(sub)
                continue
            delivered += 1
        return delivered

    def order_created(self, order_id: int, user_id: int, total, status: str = "pending") -> int:
        return self.publish(ORDER_CREATED, {"id": order_id, "userId": user_id, "total": float(total), "status": status})

    def order_status_updated(self, order_id: int, user_id: int, status: str) -> int:
        return self.publish(ORDER_STATUS_UPDATED, {"id": order_id, "userId": user_id, "status": status})


relay = NotificationRelay()


def get_relay() -> NotificationRelay:
    return relay
