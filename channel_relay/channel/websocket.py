from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from channel_relay.channel.registry import ConnectionRegistry, TransportUnavailableError

logger = logging.getLogger("uvicorn.error")


class WebSocketChannel:
    def __init__(self, websocket: WebSocket, *, account_index: int | None) -> None:
        self.channel_id = uuid4().hex[:12]
        self.account_index = account_index
        self._websocket = websocket

    async def send_text(self, data: str) -> None:
        try:
            await self._websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TransportUnavailableError(
                f"Channel {self.channel_id} is not writable: {exc}"
            ) from exc

    async def close(self) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=1000)
        except RuntimeError as exc:
            logger.debug(
                "channel_close_ignored channel_id=%s error=%s", self.channel_id, exc
            )


async def serve_channel(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    *,
    account_index: int | None,
) -> None:
    """Pump inbound frames from one accepted websocket into the registry."""
    channel = WebSocketChannel(websocket, account_index=account_index)
    registry.add_channel(channel)
    try:
        while True:
            raw = await websocket.receive_text()
            registry.dispatch_raw(raw)
    except WebSocketDisconnect as exc:
        logger.info(
            "channel_disconnected channel_id=%s code=%s", channel.channel_id, exc.code
        )
    except RuntimeError as exc:
        logger.info(
            "channel_receive_stopped channel_id=%s error=%s", channel.channel_id, exc
        )
    finally:
        registry.remove_channel(channel)
