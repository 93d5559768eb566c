from __future__ import annotations

import asyncio
import logging

from channel_relay.channel.messages import InboundMessage

logger = logging.getLogger("uvicorn.error")

_CLOSED = object()


class QueueTimeoutError(TimeoutError):
    def __init__(self, request_id: str, timeout_seconds: float) -> None:
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"No message for request '{request_id}' within {timeout_seconds:g}s."
        )


class QueueClosedError(RuntimeError):
    pass


class MessageQueue:
    """Unbounded FIFO of inbound messages for one request id."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, message: InboundMessage) -> None:
        if self._closed:
            logger.debug(
                "message_queue_put_after_close request_id=%s event_type=%s",
                self.request_id,
                message.event_type,
            )
            return
        self._queue.put_nowait(message)

    async def get(self, timeout_seconds: float | None = None) -> InboundMessage:
        if self._closed:
            raise QueueClosedError(f"Queue for '{self.request_id}' is closed.")
        try:
            if timeout_seconds is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout_seconds)
        except TimeoutError as exc:
            raise QueueTimeoutError(self.request_id, timeout_seconds or 0.0) from exc
        if item is _CLOSED:
            raise QueueClosedError(f"Queue for '{self.request_id}' is closed.")
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if dropped:
            logger.debug(
                "message_queue_closed request_id=%s dropped=%d",
                self.request_id,
                dropped,
            )
        self._queue.put_nowait(_CLOSED)
