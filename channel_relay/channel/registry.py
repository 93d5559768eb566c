from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from channel_relay.channel.message_queue import MessageQueue
from channel_relay.channel.messages import (
    EnvelopeError,
    ErrorMessage,
    InboundMessage,
    parse_inbound_envelope,
)

logger = logging.getLogger("uvicorn.error")


class TransportUnavailableError(RuntimeError):
    """Raised when no live upstream channel can carry a frame."""


class DuplicateQueueError(RuntimeError):
    pass


class UpstreamChannel(Protocol):
    channel_id: str
    account_index: int | None

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class ConnectionRegistry:
    """Live upstream channels plus the per-request queues they feed.

    Inbound frames from any channel are routed by ``request_id``; a frame whose
    queue no longer exists is dropped.
    """

    def __init__(self) -> None:
        self._channels: list[UpstreamChannel] = []
        self._queues: dict[str, MessageQueue] = {}
        self._channel_event = asyncio.Event()

    @property
    def channels(self) -> list[UpstreamChannel]:
        return list(self._channels)

    @property
    def outstanding_request_ids(self) -> list[str]:
        return list(self._queues)

    def has_live_channel(self) -> bool:
        return bool(self._channels)

    def add_channel(self, channel: UpstreamChannel) -> None:
        self._channels.append(channel)
        logger.info(
            "channel_added channel_id=%s account=%s live=%d",
            channel.channel_id,
            channel.account_index,
            len(self._channels),
        )
        event = self._channel_event
        self._channel_event = asyncio.Event()
        event.set()

    def remove_channel(self, channel: UpstreamChannel) -> None:
        if channel not in self._channels:
            return
        self._channels.remove(channel)
        logger.info(
            "channel_removed channel_id=%s account=%s live=%d",
            channel.channel_id,
            channel.account_index,
            len(self._channels),
        )
        if not self._channels:
            self._fail_outstanding("Upstream channel closed.")

    def channel_for(
        self, account_index: int, *, allow_unbound: bool = False
    ) -> UpstreamChannel | None:
        for channel in self._channels:
            if channel.account_index == account_index:
                return channel
        if allow_unbound:
            for channel in self._channels:
                if channel.account_index is None:
                    return channel
        return None

    async def wait_for_channel(
        self,
        account_index: int,
        timeout_seconds: float,
        *,
        allow_unbound: bool = False,
    ) -> UpstreamChannel:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            channel = self.channel_for(account_index, allow_unbound=allow_unbound)
            if channel is not None:
                return channel
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            event = self._channel_event
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except TimeoutError:
                break
        raise TransportUnavailableError(
            f"No upstream channel for account {account_index} "
            f"within {timeout_seconds:g}s."
        )

    async def retire_channels(self, keep: UpstreamChannel) -> None:
        retired = [channel for channel in self._channels if channel is not keep]
        for channel in retired:
            self._channels.remove(channel)
        for channel in retired:
            logger.info(
                "channel_retired channel_id=%s account=%s",
                channel.channel_id,
                channel.account_index,
            )
            await channel.close()

    async def send_to_first_live(self, data: str) -> None:
        if not self._channels:
            raise TransportUnavailableError("No live upstream channel.")
        await self._channels[0].send_text(data)

    def create_queue(self, request_id: str) -> MessageQueue:
        if request_id in self._queues:
            raise DuplicateQueueError(f"Queue for '{request_id}' already exists.")
        queue = MessageQueue(request_id)
        self._queues[request_id] = queue
        return queue

    def enqueue(self, request_id: str, message: InboundMessage) -> None:
        queue = self._queues.get(request_id)
        if queue is None:
            logger.warning(
                "channel_message_dropped request_id=%s event_type=%s",
                request_id,
                message.event_type,
            )
            return
        queue.put(message)

    def destroy_queue(self, request_id: str) -> None:
        queue = self._queues.pop(request_id, None)
        if queue is not None:
            queue.close()

    def dispatch_raw(self, raw: str | bytes) -> None:
        try:
            message = parse_inbound_envelope(raw)
        except EnvelopeError as exc:
            logger.warning("channel_envelope_invalid error=%s", exc)
            return
        self.enqueue(message.request_id, message)

    def _fail_outstanding(self, reason: str) -> None:
        for request_id, queue in self._queues.items():
            queue.put(ErrorMessage(request_id=request_id, status=503, message=reason))
        if self._queues:
            logger.warning(
                "channel_loss_failed_requests count=%d", len(self._queues)
            )
