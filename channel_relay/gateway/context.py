from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from channel_relay.channel.messages import ErrorMessage, ProxyRequest

if TYPE_CHECKING:
    from fastapi import Request

    from channel_relay.channel.message_queue import MessageQueue
    from channel_relay.gateway.errors import Dialect


@dataclass(slots=True)
class ClientRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    is_disconnected: Callable[[], Awaitable[bool]] | None = None

    @classmethod
    async def from_fastapi(cls, request: Request) -> ClientRequest:
        return cls(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            query_params=dict(request.query_params),
            body=await request.body(),
            is_disconnected=request.is_disconnected,
        )

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass(slots=True)
class OrchestratorConfig:
    max_retries: int = 1
    retry_delay_seconds: float = 2.0
    first_message_timeout_seconds: float = 300.0
    stream_idle_timeout_seconds: float = 30.0
    body_idle_timeout_seconds: float = 300.0
    heartbeat_interval_seconds: float = 3.0
    model_list_timeout_seconds: float = 30.0
    default_model: str = "gemini-2.5-pro"
    fallback_models: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class RequestContext:
    proxy_request: ProxyRequest
    queue: MessageQueue
    dialect: Dialect
    model: str
    upstream_done: bool = False
    delivered: bool = False
    client_gone: bool = False
    finished: bool = False

    @property
    def request_id(self) -> str:
        return self.proxy_request.request_id


class UpstreamRequestError(Exception):
    """Terminal failure of one client request after local retries."""

    def __init__(
        self,
        error: ErrorMessage,
        *,
        notice: str | None = None,
        user_aborted: bool = False,
    ) -> None:
        self.error = error
        self.notice = notice
        self.user_aborted = user_aborted
        super().__init__(error.message)

    @property
    def status(self) -> int:
        return self.error.status

    @property
    def client_message(self) -> str:
        text = f"Request failed: {self.error.message}"
        if self.notice:
            text = f"{text}\n{self.notice}"
        return text
