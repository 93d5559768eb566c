"""Wire envelopes exchanged with the upstream automation channel.

Every frame is a JSON object. Outbound frames are either a ``ProxyRequest`` or a
small control command (``cancel_request``, ``switch_account``). Inbound frames
always carry the ``request_id`` they answer and an ``event_type`` naming one of
the four message kinds below.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

USER_ABORT_MARKER = "The user aborted a request"


class EnvelopeError(ValueError):
    """Raised when an inbound frame is not a valid message envelope."""


class ProxyRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    method: str
    path: str
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    streaming_mode: Literal["real", "fake"] = "real"
    is_generative: bool = False
    requested_model: str | None = None
    normalized_model: str | None = None

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


class _InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    request_id: str


class HeaderInfoMessage(_InboundMessage):
    event_type: Literal["response_headers"] = "response_headers"
    status: int = 200
    headers: dict[str, Any] = Field(default_factory=dict)


class ChunkMessage(_InboundMessage):
    event_type: Literal["chunk"] = "chunk"
    data: str = ""


class StreamEndMessage(_InboundMessage):
    event_type: Literal["stream_close"] = "stream_close"


class ErrorMessage(_InboundMessage):
    event_type: Literal["error"] = "error"
    status: int = 500
    message: str = ""

    @property
    def is_user_aborted(self) -> bool:
        return USER_ABORT_MARKER in self.message


InboundMessage = Annotated[
    HeaderInfoMessage | ChunkMessage | StreamEndMessage | ErrorMessage,
    Field(discriminator="event_type"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def parse_inbound_envelope(raw: str | bytes) -> InboundMessage:
    try:
        return _INBOUND_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        raise EnvelopeError(
            f"Invalid channel envelope: {exc.error_count()} error(s)"
        ) from exc


def timeout_error(request_id: str, timeout_seconds: float) -> ErrorMessage:
    return ErrorMessage(
        request_id=request_id,
        status=504,
        message=f"Response from upstream timed out after {timeout_seconds:g} seconds",
    )


class CancelRequest(BaseModel):
    event_type: Literal["cancel_request"] = "cancel_request"
    request_id: str

    def to_wire(self) -> str:
        return self.model_dump_json()


class SwitchAccountCommand(BaseModel):
    event_type: Literal["switch_account"] = "switch_account"
    account_index: int
    account_name: str | None = None

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)
