import json
import uuid
from datetime import datetime
from functools import wraps
from typing import Iterable, List, Optional, Tuple

import bcrypt
import redis

from constants import (
    REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB,
    DEFAULT_MESSAGE_EXPIRY_SECONDS, DIRECTORY_TIMEOUT_SECONDS, BCRYPT_ROUNDS,
)
from redis_keys import (
    REDIS_ROOM_KEY, REDIS_ROOM_PAIR_KEY, REDIS_USER_ROOMS_KEY, REDIS_EXPIRY_INDEX_KEY,
    REDIS_USER_KEY, REDIS_USERNAME_KEY, REDIS_EMAIL_KEY,
)
from relay.errors import AlreadyTaken, DirectoryUnavailable, RoomNotFound, UserNotFound
from relay.expiry import compute_deadline, is_expired, validate_expiry_time
from schemas.rooms import LastMessage, Room, utcnow
from schemas.users import User
from logging_config import get_logger

logger = get_logger(__name__)

BCRYPT_MAX_PASSWORD_BYTES = 72
SEARCH_LIMIT = 20


def create_redis_client() -> redis.Redis:
    # Connection is lazy; the app pings the server on startup
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
        socket_timeout=DIRECTORY_TIMEOUT_SECONDS,
        socket_connect_timeout=DIRECTORY_TIMEOUT_SECONDS,
    )


def directory_call(method):
    """Translate redis failures into DirectoryUnavailable."""
    @wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except redis.RedisError as e:
            logger.error(f"Redis error in {method.__name__}: {e}")
            raise DirectoryUnavailable(str(e))
    return wrapper


def _encode(data: dict, json_fields: Iterable[str]) -> dict:
    # Redis hashes hold strings only; None values are skipped
    encoded = {}
    for k, v in data.items():
        if v is None:
            continue
        if k in json_fields:
            encoded[k] = json.dumps(v)
        elif isinstance(v, datetime):
            encoded[k] = v.isoformat()
        else:
            encoded[k] = str(v)
    return encoded


def _decode(raw: dict, json_fields: Iterable[str]) -> dict:
    result = {}
    for k, v in raw.items():
        if k in json_fields:
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Could not decode field {k}, dropping it")
                continue
        else:
            result[k] = v
    return result


def canonical_pair(first: str, second: str) -> Tuple[str, str]:
    a, b = sorted((first.casefold(), second.casefold()))
    return a, b


class RoomDirectory:
    JSON_FIELDS = ("participants", "last_message", "is_active")

    def __init__(self, client: redis.Redis):
        self.redis_client = client

    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    def _room_key(self, room_id: str) -> str:
        return REDIS_ROOM_KEY.format(room_id=room_id)

    def _pair_key(self, first: str, second: str) -> str:
        a, b = canonical_pair(first, second)
        return REDIS_ROOM_PAIR_KEY.format(first=a, second=b)

    def _user_rooms_key(self, username: str) -> str:
        return REDIS_USER_ROOMS_KEY.format(username=username.casefold())

    def _load(self, raw: dict) -> Optional[Room]:
        if not raw:
            return None
        return Room.model_validate(_decode(raw, self.JSON_FIELDS))

    def _store(self, room: Room):
        data = room.model_dump(mode="json")
        self.redis_client.hset(self._room_key(room.id), mapping=_encode(data, self.JSON_FIELDS))

    @directory_call
    def get_room(self, room_id: str) -> Optional[Room]:
        logger.debug(f"Fetching room {room_id}")
        return self._load(self.redis_client.hgetall(self._room_key(room_id)))

    @directory_call
    def find_room_by_participants(self, first: str, second: str) -> Optional[Room]:
        room_id = self.redis_client.get(self._pair_key(first, second))
        if not room_id:
            return None
        return self.get_room(room_id)

    @directory_call
    def create_room(self, participants: List[str], message_expiry_time: int = DEFAULT_MESSAGE_EXPIRY_SECONDS) -> Tuple[Room, bool]:
        """Create the room for an unordered participant pair unless it exists.

        Returns ``(room, created)``. The pair key is claimed with SET NX after
        the room document is written, so whoever wins the claim owns the pair
        and a losing request deletes its own document and returns the winner's.
        """
        if len(participants) != 2 or participants[0].casefold() == participants[1].casefold():
            raise ValueError("a room pairs exactly two distinct participants")
        validate_expiry_time(message_expiry_time)
        pair_key = self._pair_key(*participants)

        existing_id = self.redis_client.get(pair_key)
        if existing_id:
            existing = self.get_room(existing_id)
            if existing:
                logger.debug(f"Room {existing_id} already exists for {participants}")
                return existing, False
            logger.warning(f"Pair key {pair_key} points to missing room {existing_id}, recreating")
            self.redis_client.delete(pair_key)

        room = Room(id=uuid.uuid4().hex, participants=list(participants), message_expiry_time=message_expiry_time)
        self._store(room)

        if not self.redis_client.set(pair_key, room.id, nx=True):
            self.redis_client.delete(self._room_key(room.id))
            winner = self.get_room(self.redis_client.get(pair_key) or "")
            if winner is None:
                raise DirectoryUnavailable("Concurrent room creation did not settle")
            logger.info(f"Lost room creation race for {participants}, using {winner.id}")
            return winner, False

        pipe = self.redis_client.pipeline()
        for username in room.participants:
            pipe.zadd(self._user_rooms_key(username), {room.id: room.updated_at.timestamp()})
        pipe.execute()
        logger.info(f"Room {room.id} created for {room.participants} (message_expiry_time={message_expiry_time}s)")
        return room, True

    @directory_call
    def find_rooms_containing(self, username: str) -> List[Room]:
        """Rooms the user participates in, most recently updated first."""
        key = self._user_rooms_key(username)
        room_ids = self.redis_client.zrevrange(key, 0, -1)
        if not room_ids:
            return []
        pipe = self.redis_client.pipeline()
        for room_id in room_ids:
            pipe.hgetall(self._room_key(room_id))
        rooms = []
        for room_id, raw in zip(room_ids, pipe.execute()):
            room = self._load(raw)
            if room is None:
                self.redis_client.zrem(key, room_id)
                continue
            rooms.append(room)
        return rooms

    @directory_call
    def update_last_message(self, room_id: str, message) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise RoomNotFound(f"Room {room_id} not found")

        last = LastMessage(text=message.text, sender=message.sender or "", timestamp=message.timestamp)
        if room.last_message and room.last_message.timestamp > last.timestamp:
            logger.debug(f"Skipping stale last message update for room {room_id}")
            return room

        now = utcnow()
        deadline = compute_deadline(room, last.timestamp)
        pipe = self.redis_client.pipeline()
        pipe.hset(self._room_key(room_id), mapping={
            "last_message": last.model_dump_json(),
            "updated_at": now.isoformat(),
        })
        for username in room.participants:
            pipe.zadd(self._user_rooms_key(username), {room_id: now.timestamp()})
        pipe.zadd(REDIS_EXPIRY_INDEX_KEY, {room_id: deadline.timestamp()})
        pipe.execute()

        room.last_message = last
        room.updated_at = now
        logger.debug(f"Last message for room {room_id} updated, expires at {deadline.isoformat()}")
        return room

    @directory_call
    def clear_last_message(self, room_id: str, now: datetime) -> bool:
        """Clear the room's last message if it is expired at ``now``.

        The check and the delete run under WATCH on the room hash, so a
        message written in between aborts the transaction and is re-checked.
        """
        key = self._room_key(room_id)
        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    room = self._load(pipe.hgetall(key))
                    if room is not None and room.last_message is not None:
                        if not is_expired(room.last_message, now=now, ttl=room.message_expiry_time):
                            return False
                    pipe.multi()
                    if room is not None and room.last_message is not None:
                        pipe.hdel(key, "last_message")
                    pipe.zrem(REDIS_EXPIRY_INDEX_KEY, room_id)
                    pipe.execute()
                except redis.WatchError:
                    logger.debug(f"Room {room_id} changed during expiry check, retrying")
                    continue
                if room is None or room.last_message is None:
                    return False
                logger.debug(f"Cleared expired last message of room {room_id}")
                return True

    @directory_call
    def sweep_expired_last_messages(self, now: datetime) -> List[str]:
        due = self.redis_client.zrangebyscore(REDIS_EXPIRY_INDEX_KEY, "-inf", now.timestamp())
        return [room_id for room_id in due if self.clear_last_message(room_id, now)]


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def check_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), stored.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a bcrypt hash")
        return False


class UserStore:
    JSON_FIELDS = ()

    def __init__(self, client: redis.Redis):
        self.redis_client = client

    def _user_key(self, user_id: str) -> str:
        return REDIS_USER_KEY.format(user_id=user_id)

    def _username_key(self, username: str) -> str:
        return REDIS_USERNAME_KEY.format(username=username.casefold())

    def _email_key(self, email: str) -> str:
        return REDIS_EMAIL_KEY.format(email=email.casefold())

    def _load(self, raw: dict) -> Optional[User]:
        if not raw:
            return None
        return User.model_validate(_decode(raw, self.JSON_FIELDS))

    def _claim(self, key: str, user_id: str, what: str):
        if not self.redis_client.set(key, user_id, nx=True):
            if self.redis_client.get(key) != user_id:
                raise AlreadyTaken(f"{what} already taken")

    @directory_call
    def get_user(self, user_id: str) -> Optional[User]:
        return self._load(self.redis_client.hgetall(self._user_key(user_id)))

    @directory_call
    def get_user_by_username(self, username: str) -> Optional[User]:
        user_id = self.redis_client.get(self._username_key(username))
        if not user_id:
            return None
        return self.get_user(user_id)

    @directory_call
    def create_user(self, username: str, password: str, name: Optional[str] = None, email: Optional[str] = None) -> User:
        user_id = uuid.uuid4().hex
        self._claim(self._username_key(username), user_id, "Username")
        if email:
            try:
                self._claim(self._email_key(email), user_id, "Email")
            except AlreadyTaken:
                self.redis_client.delete(self._username_key(username))
                raise
        now = utcnow()
        user = User(
            id=user_id, username=username, name=name, email=email,
            password_hash=hash_password(password), last_active=now, created_at=now,
        )
        self.redis_client.hset(self._user_key(user_id), mapping=_encode(user.model_dump(mode="json"), self.JSON_FIELDS))
        logger.info(f"User {username} registered with id {user_id}")
        return user

    @directory_call
    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self.get_user_by_username(username)
        if user is None or not check_password(password, user.password_hash or ""):
            return None
        return user

    @directory_call
    def update_profile(self, user_id: str, name: Optional[str] = None, username: Optional[str] = None,
                       email: Optional[str] = None, profile_picture: Optional[str] = None) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFound()

        if username and username.casefold() != user.username.casefold():
            self._claim(self._username_key(username), user_id, "Username")
            self.redis_client.delete(self._username_key(user.username))
        if email and (user.email is None or email.casefold() != user.email.casefold()):
            self._claim(self._email_key(email), user_id, "Email")
            if user.email:
                self.redis_client.delete(self._email_key(user.email))

        changes = {"name": name, "username": username, "email": email, "profile_picture": profile_picture}
        changes = {k: v for k, v in changes.items() if v is not None}
        if changes:
            self.redis_client.hset(self._user_key(user_id), mapping=_encode(changes, self.JSON_FIELDS))
        logger.debug(f"Profile of user {user_id} updated: {sorted(changes)}")
        return user.model_copy(update=changes)

    @directory_call
    def update_status(self, user_id: str, status: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFound()
        now = utcnow()
        self.redis_client.hset(self._user_key(user_id), mapping={"status": status, "last_active": now.isoformat()})
        return user.model_copy(update={"status": status, "last_active": now})

    @directory_call
    def search(self, query: str) -> List[User]:
        """Case-insensitive substring match over usernames."""
        needle = query.casefold()
        prefix = REDIS_USERNAME_KEY.format(username="")
        matches = []
        for key in self.redis_client.scan_iter(match=f"{prefix}*", count=200):
            if needle not in key[len(prefix):]:
                continue
            user = self.get_user(self.redis_client.get(key) or "")
            if user:
                matches.append(user)
            if len(matches) >= SEARCH_LIMIT:
                break
        return sorted(matches, key=lambda u: u.username.casefold())


redis_client = create_redis_client()
room_directory = RoomDirectory(redis_client)
user_store = UserStore(redis_client)
