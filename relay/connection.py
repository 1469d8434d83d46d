import asyncio
import json
import uuid
from typing import Optional

from constants import OUTBOUND_QUEUE_SIZE
from schemas.rooms import utcnow
from logging_config import get_logger

logger = get_logger(__name__)


class Connection:
    """One live WebSocket plus its outbound queue.

    Payloads handed to ``deliver`` are written by a dedicated writer task in
    the order they were queued. A full queue or a broken socket only affects
    this connection.
    """

    def __init__(self, websocket, connection_id: Optional[str] = None, queue_size: int = OUTBOUND_QUEUE_SIZE):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity = None
        self.connected_at = utcnow()
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<Connection {self.connection_id[:8]}>"

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain_outbox())

    def deliver(self, payload: dict) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for connection {self.connection_id}, dropping {payload.get('type')} payload")
            return False
        return True

    async def flush(self):
        """Wait until everything queued so far has been written."""
        if self._writer is None or self._writer.done():
            return
        await self._outbox.join()

    async def close(self):
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None

    async def _drain_outbox(self):
        while True:
            payload = await self._outbox.get()
            try:
                await self.websocket.send_text(json.dumps(payload))
            except Exception as e:
                logger.warning(f"Error sending to connection {self.connection_id}: {e}")
                self.closed = True
                self._discard_pending()
                return
            finally:
                self._outbox.task_done()

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()
