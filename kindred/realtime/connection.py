"""
Push channel connection

Wraps one accepted WebSocket. Outbound frames go through a bounded FIFO drained
by a single writer task, so emission never blocks the caller and per-connection
order equals emission order. A full queue means the client stopped reading; the
connection is closed instead of buffering without limit.
"""

import asyncio
import uuid
from typing import Any, Optional

from fastapi import WebSocket

from kindred.core.logging import get_logger

logger = get_logger(__name__)

SLOW_CONSUMER_CLOSE_CODE = 1013


class Connection:
    def __init__(self, websocket: WebSocket, user_id: str, queue_size: int = 256):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.websocket = websocket
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.create_task(self._drain(), name=f"ws-writer:{self.id}")

    def send(self, event: str, data: Any) -> bool:
        """Enqueue a frame; returns False if the connection is gone"""
        if self.closed:
            return False
        try:
            self._queue.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            logger.warning(f"Closing slow consumer {self.id} (user {self.user_id})")
            self.closed = True
            asyncio.create_task(self._abort())
            return False
        return True

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                logger.info(f"Send failed on {self.id}: {e}")
                self.closed = True
                return

    async def _abort(self) -> None:
        try:
            await self.websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"Close after overflow failed on {self.id}: {e}")

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user={self.user_id})"
