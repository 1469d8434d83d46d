"""Message expiry policy.

Every message carries a deadline of ``sent_at + room.message_expiry_time``.
The relay never withholds a message because of it; the deadline decides
whether a room's ``last_message`` may still be shown, and the optional
sweeper clears stored summaries once they pass it.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from constants import DEFAULT_MESSAGE_EXPIRY_SECONDS, DIRECTORY_TIMEOUT_SECONDS
from relay.blocking import run_in_thread
from relay.errors import DirectoryUnavailable
from schemas.rooms import utcnow
from logging_config import get_logger

logger = get_logger(__name__)

def _aware(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_expiry_time(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"message expiry time must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"message expiry time must be >= 0, got {value}")
    return value


def compute_deadline(room_or_ttl: Union[int, object], sent_at: datetime) -> datetime:
    """deadline = sent_at + room.message_expiry_time"""
    if isinstance(room_or_ttl, int):
        ttl = room_or_ttl
    else:
        ttl = room_or_ttl.message_expiry_time
    return _aware(sent_at) + timedelta(seconds=validate_expiry_time(ttl))


def is_expired(message, now: Optional[datetime] = None, ttl: Optional[int] = None) -> bool:
    """True once ``now`` reaches the message deadline.

    Uses the ``expires_at`` stamped at broadcast time when the message has
    one, otherwise ``timestamp + ttl`` (the default room expiry if not given).
    """
    now = _aware(now or utcnow())
    deadline = getattr(message, "expires_at", None)
    if deadline is None:
        deadline = compute_deadline(DEFAULT_MESSAGE_EXPIRY_SECONDS if ttl is None else ttl, message.timestamp)
    return now >= _aware(deadline)


def visible_last_message(room, now: Optional[datetime] = None):
    """The room's last message, or None once it is past its deadline."""
    if room.last_message is None:
        return None
    if is_expired(room.last_message, now=now, ttl=room.message_expiry_time):
        return None
    return room.last_message


class ExpirySweeper:
    """Background task that clears expired ``last_message`` summaries."""

    def __init__(self, directory, interval: float, timeout: float = DIRECTORY_TIMEOUT_SECONDS):
        self.directory = directory
        self.interval = interval
        self.timeout = timeout
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Expiry sweeper started (interval={self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def sweep_once(self, now: Optional[datetime] = None) -> list:
        cleared = await run_in_thread(
            self.directory.sweep_expired_last_messages, now or utcnow(), timeout=self.timeout
        )
        if cleared:
            logger.info(f"Cleared expired last message for {len(cleared)} room(s)")
        return cleared

    async def _run(self):
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep_once()
                except DirectoryUnavailable as e:
                    logger.warning(f"Expiry sweep skipped: {e.detail}")
        except asyncio.CancelledError:
            logger.debug("Expiry sweeper task cancelled")
            raise
