"""
Outbound side of a relay WebSocket.

Frames destined for a session are queued and written by a dedicated task so
that routing never awaits a recipient. The queue is bounded; when a recipient
falls behind, the oldest queued frame is dropped.
"""

import asyncio
import json
import logging
from typing import Optional
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class OutboundChannel:
    """Bounded, fire-and-forget sender for one WebSocket"""

    def __init__(self, websocket: WebSocket, max_queue: int = 64):
        self.websocket = websocket
        self.session_id: Optional[str] = None
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    def start(self):
        """Start the writer task on the running loop"""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, message: dict):
        """
        Queue a frame without waiting.

        Drops the oldest queued frame if the queue is full. Frames sent after
        close() are discarded.
        """
        if self._closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(message)
            self.dropped += 1
            logger.warning(
                "Outbound queue full for session %s, dropped oldest frame (%d dropped so far)",
                self.session_id, self.dropped
            )

    async def _drain(self):
        try:
            while True:
                message = await self._queue.get()
                await self.websocket.send_text(json.dumps(message))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The socket is gone; the receive loop will notice and clean up
            logger.info("Writer for session %s stopped: %s", self.session_id, e)
            self._closed = True

    async def close(self):
        """Stop the writer, discarding anything still queued"""
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()
