"""Room-scoped message fan-out.

``send`` validates one message, stamps its expiry deadline, hands it to
every current subscriber's outbound queue in a single synchronous step, and
then schedules the ``last_message`` upsert as an independent task. Delivery
never waits on the directory and is never reversed by a persistence failure.
"""
import asyncio
from typing import Dict, Set

from pydantic import ValidationError

from constants import DIRECTORY_TIMEOUT_SECONDS
from relay.blocking import run_in_thread
from relay.errors import ChatError, InvalidMessage, NotAMember
from relay.expiry import compute_deadline
from schemas.events import Ack, ChatMessage, MessageIn, message_event
from schemas.rooms import utcnow
from logging_config import get_logger

logger = get_logger(__name__)


class MessageRelay:
    def __init__(self, registry, directory=None, strict: bool = True, echo_to_sender: bool = True,
                 directory_timeout: float = DIRECTORY_TIMEOUT_SECONDS):
        self.registry = registry
        self.directory = directory
        self.strict = strict
        self.echo_to_sender = echo_to_sender
        self.directory_timeout = directory_timeout
        self._pending: Set[asyncio.Task] = set()
        self._persist_locks: Dict[str, asyncio.Lock] = {}
        self._persist_waiting: Dict[str, int] = {}

    def _coerce(self, message) -> MessageIn:
        try:
            incoming = MessageIn.model_validate(message)
        except ValidationError:
            raise InvalidMessage("Message must be an object with text")
        if not incoming.text.strip():
            raise InvalidMessage()
        return incoming

    async def send(self, room_id: str, sender, message) -> Ack:
        incoming = self._coerce(message)

        subscription = self.registry.subscription(room_id, sender)
        if subscription is None and self.strict:
            logger.warning(f"Rejected message from connection {sender.connection_id}: not subscribed to room {room_id}")
            raise NotAMember(f"Connection is not subscribed to room {room_id}")

        # A subscribed sender is stamped with its verified handle
        handle = subscription.identity.username if subscription is not None else incoming.sender
        sent_at = utcnow()
        chat_message = ChatMessage(
            text=incoming.text,
            sender=handle,
            timestamp=sent_at,
            expires_at=compute_deadline(self.registry.expiry_for(room_id), sent_at),
        )

        payload = message_event(room_id, chat_message)
        delivered = 0
        for connection in self.registry.subscribers_of(room_id):
            if not self.echo_to_sender and connection is sender:
                continue
            if connection.deliver(payload):
                delivered += 1
        logger.debug(f"Broadcast message from {handle} to {delivered} connection(s) in room {room_id}")

        if self.directory is not None:
            task = asyncio.create_task(self._persist_last_message(room_id, chat_message, sender))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return Ack(room_id=room_id, delivered=delivered, message=chat_message)

    async def _persist_last_message(self, room_id: str, message: ChatMessage, sender):
        # Updates for one room run in send order
        lock = self._persist_locks.setdefault(room_id, asyncio.Lock())
        self._persist_waiting[room_id] = self._persist_waiting.get(room_id, 0) + 1
        try:
            async with lock:
                await run_in_thread(
                    self.directory.update_last_message, room_id, message, timeout=self.directory_timeout
                )
        except ChatError as e:
            logger.warning(f"Could not persist last message for room {room_id}: {e.detail}")
            warning = e.to_payload(room_id)
            warning["type"] = "warning"
            warning["detail"] = f"Message delivered but not saved: {e.detail}"
            sender.deliver(warning)
        finally:
            self._persist_waiting[room_id] -= 1
            if not self._persist_waiting[room_id]:
                del self._persist_waiting[room_id]
                self._persist_locks.pop(room_id, None)

    async def drain(self):
        """Wait for outstanding last-message updates."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
