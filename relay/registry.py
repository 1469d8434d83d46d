"""In-memory room registry.

Tracks which live connections are subscribed to which room. Writers
(join, leave, disconnect) take a per-room ``asyncio.Lock`` so concurrent
joins on one room never lose updates, while different rooms never wait on
each other. Reads are synchronous snapshots and therefore atomic with
respect to the event loop.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Set

from constants import DEFAULT_MESSAGE_EXPIRY_SECONDS, DIRECTORY_TIMEOUT_SECONDS
from relay.blocking import run_in_thread
from relay.errors import NotAMember, RoomNotFound
from schemas.rooms import utcnow
from logging_config import get_logger

logger = get_logger(__name__)


class Subscription:
    __slots__ = ("room_id", "connection", "identity", "joined_at")

    def __init__(self, room_id: str, connection, identity, joined_at: Optional[datetime] = None):
        self.room_id = room_id
        self.connection = connection
        self.identity = identity
        self.joined_at = joined_at or utcnow()

    def __repr__(self):
        return f"<Subscription room={self.room_id} connection={self.connection.connection_id[:8]}>"


class _RoomSlot:
    __slots__ = ("lock", "subscribers", "pending", "expiry_seconds")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.subscribers: Dict[str, Subscription] = {}
        self.pending = 0
        self.expiry_seconds = DEFAULT_MESSAGE_EXPIRY_SECONDS


class RoomRegistry:
    def __init__(self, verifier, directory=None, require_participant: bool = True,
                 directory_timeout: float = DIRECTORY_TIMEOUT_SECONDS):
        self.verifier = verifier
        self.directory = directory
        self.require_participant = require_participant
        self.directory_timeout = directory_timeout
        self._slots: Dict[str, _RoomSlot] = {}
        self._memberships: Dict[str, Set[str]] = {}
        self._closed = False

    @asynccontextmanager
    async def _room(self, room_id: str):
        slot = self._slots.get(room_id)
        if slot is None:
            slot = self._slots[room_id] = _RoomSlot()
        slot.pending += 1
        try:
            async with slot.lock:
                yield slot
        finally:
            slot.pending -= 1
            # Slots live only while someone is subscribed or waiting
            if slot.pending == 0 and not slot.subscribers and self._slots.get(room_id) is slot:
                del self._slots[room_id]

    async def join(self, room_id: str, credential: Optional[str], connection) -> Subscription:
        if self._closed:
            raise RuntimeError("room registry is closed")

        identity = await self.verifier.verify(credential)

        expiry_seconds = None
        if self.directory is not None:
            room = await run_in_thread(self.directory.get_room, room_id, timeout=self.directory_timeout)
            if room is None:
                logger.info(f"Join rejected: room {room_id} not found")
                raise RoomNotFound(f"Room {room_id} not found")
            if self.require_participant and not room.has_participant(identity.username):
                logger.warning(f"Join rejected: {identity.username} is not a participant of room {room_id}")
                raise NotAMember(f"{identity.username} is not a participant of this room")
            expiry_seconds = room.message_expiry_time

        async with self._room(room_id) as slot:
            if expiry_seconds is not None:
                slot.expiry_seconds = expiry_seconds
            existing = slot.subscribers.get(connection.connection_id)
            if existing is not None:
                existing.identity = identity
                connection.identity = identity
                logger.debug(f"Connection {connection.connection_id} already in room {room_id}")
                return existing

            subscription = Subscription(room_id, connection, identity)
            slot.subscribers[connection.connection_id] = subscription
            self._memberships.setdefault(connection.connection_id, set()).add(room_id)
            connection.identity = identity
            logger.info(f"User {identity.username} joined room {room_id} ({len(slot.subscribers)} subscribers)")
            return subscription

    async def leave(self, room_id: str, connection) -> bool:
        if room_id not in self._slots:
            return False
        async with self._room(room_id) as slot:
            subscription = slot.subscribers.pop(connection.connection_id, None)
            if subscription is None:
                return False
            rooms = self._memberships.get(connection.connection_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    del self._memberships[connection.connection_id]
            logger.info(f"User {subscription.identity.username} left room {room_id} ({len(slot.subscribers)} subscribers)")
            return True

    async def disconnect(self, connection) -> List[str]:
        """Leave every room the connection joined; returns the rooms left."""
        left = []
        for room_id in sorted(self.rooms_of(connection)):
            try:
                if await self.leave(room_id, connection):
                    left.append(room_id)
            except Exception as e:
                logger.error(f"Error removing connection {connection.connection_id} from room {room_id}: {e}", exc_info=True)
        if left:
            logger.debug(f"Connection {connection.connection_id} disconnected from {len(left)} room(s)")
        return left

    def subscribers_of(self, room_id: str) -> FrozenSet:
        slot = self._slots.get(room_id)
        if slot is None:
            return frozenset()
        return frozenset(s.connection for s in slot.subscribers.values())

    def subscription(self, room_id: str, connection) -> Optional[Subscription]:
        slot = self._slots.get(room_id)
        if slot is None:
            return None
        return slot.subscribers.get(connection.connection_id)

    def is_subscribed(self, room_id: str, connection) -> bool:
        return self.subscription(room_id, connection) is not None

    def subscriber_count(self, room_id: str) -> int:
        slot = self._slots.get(room_id)
        return len(slot.subscribers) if slot else 0

    def room_count(self) -> int:
        return sum(1 for slot in self._slots.values() if slot.subscribers)

    def rooms_of(self, connection) -> Set[str]:
        return set(self._memberships.get(connection.connection_id, ()))

    def expiry_for(self, room_id: str) -> int:
        slot = self._slots.get(room_id)
        return slot.expiry_seconds if slot else DEFAULT_MESSAGE_EXPIRY_SECONDS

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        self._closed = True
        count = sum(len(slot.subscribers) for slot in self._slots.values())
        self._slots.clear()
        self._memberships.clear()
        logger.info(f"Room registry closed, dropped {count} subscription(s)")
