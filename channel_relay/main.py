from __future__ import annotations

import hmac
import logging
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from channel_relay.accounts.directory import AuthSourceDirectory
from channel_relay.channel.registry import ConnectionRegistry, TransportUnavailableError
from channel_relay.channel.session import ChannelSessionManager
from channel_relay.channel.websocket import serve_channel
from channel_relay.gateway.auth import Authenticator
from channel_relay.gateway.context import ClientRequest, OrchestratorConfig
from channel_relay.gateway.errors import error_response
from channel_relay.gateway.orchestrator import RequestOrchestrator
from channel_relay.rotation import (
    AccountRotator,
    RotationConfig,
    RotationFallbackFailedError,
    RotationInProgressError,
    RotationOnlyOneAccountError,
    RotationState,
    RotationTargetError,
)
from channel_relay.runtime.log_buffer import RecentLogBuffer, attach_log_buffer
from channel_relay.settings import Settings, get_settings
from channel_relay.streaming_mode import StreamingModePolicy
from channel_relay.translation.catalog import load_fallback_models

app = FastAPI(
    title="Channel Relay",
    description=(
        "OpenAI-compatible and native API relay multiplexed over a single "
        "upstream automation channel."
    ),
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

_AUTH_PATH_PREFIXES = ("/v1", "/api")


class SwitchAccountBody(BaseModel):
    target_index: int | None = None


class SetModeBody(BaseModel):
    mode: str


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith(_AUTH_PATH_PREFIXES):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def build_orchestrator(
    settings: Settings,
    *,
    directory: AuthSourceDirectory,
    registry: ConnectionRegistry,
) -> RequestOrchestrator:
    usable = directory.list_usable_indices()
    initial_index = settings.initial_account_index
    if initial_index not in usable:
        if initial_index is not None:
            logger.warning(
                "initial_account_unusable index=%d fallback=%s",
                initial_index,
                usable[0] if usable else None,
            )
        initial_index = usable[0] if usable else 0

    session = ChannelSessionManager(
        registry=registry,
        directory=directory,
        connect_timeout_seconds=max(1.0, settings.channel_connect_timeout_seconds),
        initial_index=initial_index,
    )
    rotator = AccountRotator(
        state=RotationState(),
        config=RotationConfig(
            failure_threshold=max(0, settings.failure_threshold),
            switch_on_uses=max(0, settings.switch_on_uses),
            immediate_switch_status_codes=settings.immediate_switch_status_codes_set,
        ),
        session=session,
        directory=directory,
    )
    if settings.streaming_mode.strip().lower() != settings.normalized_streaming_mode:
        logger.warning(
            "streaming_mode_invalid value=%s fallback=%s",
            settings.streaming_mode,
            settings.normalized_streaming_mode,
        )
    policy = StreamingModePolicy(
        settings.normalized_streaming_mode, prefix=settings.fake_stream_prefix
    )
    return RequestOrchestrator(
        registry=registry,
        session=session,
        rotator=rotator,
        policy=policy,
        config=OrchestratorConfig(
            max_retries=max(1, settings.max_retries),
            retry_delay_seconds=max(0, settings.retry_delay_ms) / 1000.0,
            first_message_timeout_seconds=settings.first_message_timeout_seconds,
            stream_idle_timeout_seconds=settings.stream_idle_timeout_seconds,
            body_idle_timeout_seconds=settings.body_idle_timeout_seconds,
            heartbeat_interval_seconds=max(0.1, settings.heartbeat_interval_seconds),
            model_list_timeout_seconds=settings.model_list_timeout_seconds,
            default_model=settings.default_model,
            fallback_models=load_fallback_models(
                settings.models_path, settings.default_model
            ),
        ),
        directory=directory,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.log_buffer = attach_log_buffer(logger, settings.status_log_buffer_size)
    app.state.authenticator = Authenticator(settings)
    directory = AuthSourceDirectory(settings.auth_dir)
    registry = ConnectionRegistry()
    orchestrator = build_orchestrator(settings, directory=directory, registry=registry)
    app.state.directory = directory
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    logger.info(
        (
            "startup complete accounts=%d current_account=%d streaming_mode=%s "
            "failure_threshold=%d switch_on_uses=%d max_retries=%d"
        ),
        len(directory.list_usable_indices()),
        orchestrator.session.current_index,
        orchestrator.policy.mode,
        orchestrator.rotator.config.failure_threshold,
        orchestrator.rotator.config.switch_on_uses,
        orchestrator.config.max_retries,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    registry: ConnectionRegistry | None = getattr(app.state, "registry", None)
    if registry is not None:
        for channel in registry.channels:
            registry.remove_channel(channel)
            await channel.close()
    orchestrator: RequestOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.wait_background()
    log_buffer: RecentLogBuffer | None = getattr(app.state, "log_buffer", None)
    if log_buffer is not None:
        logger.removeHandler(log_buffer)
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return {"object": "list", "data": await orchestrator.list_models()}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return await orchestrator.handle_openai_request(
        await ClientRequest.from_fastapi(request)
    )


@app.api_route(
    "/v1beta/{subpath:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"]
)
async def native_passthrough(subpath: str, request: Request) -> Response:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return await orchestrator.handle_native_request(
        await ClientRequest.from_fastapi(request)
    )


@app.api_route("/v1/{subpath:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def v1_passthrough(subpath: str, request: Request) -> Response:
    # Remaining /v1 paths are native-dialect calls.
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return await orchestrator.handle_native_request(
        await ClientRequest.from_fastapi(request)
    )


@app.get("/api/status")
async def status() -> dict[str, Any]:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    directory: AuthSourceDirectory = app.state.directory
    log_buffer: RecentLogBuffer = app.state.log_buffer
    snapshot = orchestrator.status_snapshot()
    snapshot["current_account_name"] = directory.name_of(snapshot["current_index"])
    snapshot["accounts"] = directory.describe()
    snapshot["invalid_accounts"] = list(directory.invalid_indices)
    snapshot["recent_logs"] = log_buffer.lines()
    return snapshot


@app.post("/api/switch-account")
async def switch_account(body: SwitchAccountBody) -> Response:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    try:
        if body.target_index is None:
            result = await orchestrator.switch_to_next()
        else:
            result = await orchestrator.switch_to_specific(body.target_index)
    except RotationInProgressError as exc:
        return error_response(409, str(exc), "openai")
    except (RotationOnlyOneAccountError, RotationTargetError) as exc:
        return error_response(400, str(exc), "openai")
    except RotationFallbackFailedError as exc:
        return error_response(500, str(exc), "openai")
    return JSONResponse(
        {
            "outcome": result.outcome.value,
            "previous": result.previous,
            "target": result.target,
            "current": result.current,
            "reason": result.reason,
        }
    )


@app.post("/api/set-mode")
async def set_mode(body: SetModeBody) -> Response:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    try:
        orchestrator.policy.set_mode(body.mode)
    except ValueError as exc:
        return error_response(400, str(exc), "openai")
    return JSONResponse({"streaming_mode": orchestrator.policy.mode})


@app.websocket("/ws")
async def upstream_channel(
    websocket: WebSocket, account: int | None = None, token: str | None = None
) -> None:
    settings: Settings = app.state.settings
    expected = settings.channel_token
    if expected and not hmac.compare_digest(token or "", expected):
        logger.warning("channel_rejected reason=invalid_token")
        await websocket.close(code=1008)
        return
    await websocket.accept()
    await serve_channel(websocket, app.state.registry, account_index=account)


@app.exception_handler(TransportUnavailableError)
async def transport_unavailable_handler(
    request: Request, exc: TransportUnavailableError
) -> JSONResponse:
    dialect = "openai" if request.url.path.startswith("/v1/chat") else "native"
    return error_response(503, str(exc), dialect)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "channel_relay.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()
