from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Coroutine
from typing import Any
from uuid import uuid4

from fastapi.responses import Response

from channel_relay.accounts.directory import AccountDirectory
from channel_relay.channel.message_queue import QueueTimeoutError
from channel_relay.channel.messages import (
    CancelRequest,
    ChunkMessage,
    ErrorMessage,
    HeaderInfoMessage,
    InboundMessage,
    ProxyRequest,
    StreamEndMessage,
    timeout_error,
)
from channel_relay.channel.registry import ConnectionRegistry, TransportUnavailableError
from channel_relay.channel.session import UpstreamSessionManager
from channel_relay.gateway import responders
from channel_relay.gateway.context import (
    ClientRequest,
    OrchestratorConfig,
    RequestContext,
    UpstreamRequestError,
)
from channel_relay.gateway.errors import Dialect, error_response
from channel_relay.rotation import AccountRotator, RotationError, RotationResult
from channel_relay.streaming_mode import ModelModeContext, StreamingModePolicy
from channel_relay.translation.catalog import (
    append_fake_stream_variants,
    extract_model_path_info,
    models_from_listing_payload,
    to_openai_model_entry,
)
from channel_relay.translation.openai_request import TranslationError, openai_to_native

logger = logging.getLogger("uvicorn.error")

DISCONNECT_POLL_SECONDS = 1.0
MODEL_LISTING_PATH = "/v1beta/models"

_DROPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "authorization",
        "x-goog-api-key",
        "x-api-key",
        "content-length",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "accept-encoding",
        "cookie",
    }
)
_DROPPED_QUERY_PARAMS = frozenset({"key"})


def new_request_id() -> str:
    return uuid4().hex[:12]


def forward_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in _DROPPED_REQUEST_HEADERS
    }


def forward_query_params(params: dict[str, str]) -> dict[str, str]:
    return {
        key: value for key, value in params.items() if key not in _DROPPED_QUERY_PARAMS
    }


class RequestOrchestrator:
    """Serializes client requests onto the shared upstream channel.

    Each request owns one message queue keyed by its request id. Retries reuse
    the same id. Rotation state is shared process-wide through ``rotator``.
    """

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        session: UpstreamSessionManager,
        rotator: AccountRotator,
        policy: StreamingModePolicy,
        config: OrchestratorConfig,
        directory: AccountDirectory | None = None,
    ) -> None:
        self.registry = registry
        self.session = session
        self.rotator = rotator
        self.policy = policy
        self.config = config
        self.directory = directory
        self._background_tasks: set[asyncio.Task[Any]] = set()

    async def handle_native_request(self, client: ClientRequest) -> Response:
        rejection = await self._admit("native")
        if rejection is not None:
            return rejection

        accept = client.header("accept") or ""
        wants_stream = (
            "text/event-stream" in accept or ":streamGenerateContent" in client.path
        )
        is_generative = (
            client.method.upper() == "POST"
            and "generatecontent" in client.path.lower()
        )
        path, model_context = self._normalize_native_path(client.path)
        mode = self.policy.resolve_mode(model_context) if wants_stream else "fake"
        proxy_request = ProxyRequest(
            request_id=new_request_id(),
            method=client.method.upper(),
            path=path,
            headers=forward_headers(client.headers),
            query_params=forward_query_params(client.query_params),
            body=client.body.decode("utf-8", errors="replace"),
            streaming_mode=mode,
            is_generative=is_generative,
            requested_model=model_context.requested_model if model_context else None,
            normalized_model=model_context.normalized_model if model_context else None,
        )
        model = (model_context.requested_model if model_context else None) or ""
        ctx = self.open_request(proxy_request, dialect="native", model=model)
        logger.info(
            "request_start request_id=%s dialect=native method=%s path=%s "
            "stream=%s mode=%s",
            ctx.request_id,
            proxy_request.method,
            proxy_request.path,
            wants_stream,
            mode,
        )
        if not wants_stream:
            return await self._run_with_disconnect_guard(
                client, ctx, responders.native_non_stream(self, ctx)
            )
        if mode == "fake":
            return responders.native_fake_stream(self, ctx)
        return await responders.native_real_stream(self, ctx)

    async def handle_openai_request(self, client: ClientRequest) -> Response:
        rejection = await self._admit("openai")
        if rejection is not None:
            return rejection

        try:
            payload = json.loads(client.body or b"null")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response(400, "Request body must be valid JSON.", "openai")
        try:
            native_body = openai_to_native(payload)
        except TranslationError as exc:
            logger.warning("openai_translation_failed error=%s", exc)
            return error_response(
                400, f"Invalid OpenAI request format: {exc}", "openai"
            )

        raw_model = payload.get("model")
        model = (
            raw_model.strip()
            if isinstance(raw_model, str) and raw_model.strip()
            else self.config.default_model
        )
        model_context = self.policy.resolve_model(model)
        upstream_model = model_context.normalized_model or model
        wants_stream = payload.get("stream") is True
        mode = self.policy.resolve_mode(model_context) if wants_stream else "fake"
        endpoint = "streamGenerateContent" if wants_stream else "generateContent"
        proxy_request = ProxyRequest(
            request_id=new_request_id(),
            method="POST",
            path=f"/v1beta/models/{upstream_model}:{endpoint}",
            headers={"Content-Type": "application/json"},
            query_params={"alt": "sse"} if wants_stream else {},
            body=json.dumps(native_body, ensure_ascii=False),
            streaming_mode=mode,
            is_generative=True,
            requested_model=model,
            normalized_model=upstream_model,
        )
        ctx = self.open_request(proxy_request, dialect="openai", model=model)
        logger.info(
            "request_start request_id=%s dialect=openai model=%s upstream_model=%s "
            "stream=%s mode=%s",
            ctx.request_id,
            model,
            upstream_model,
            wants_stream,
            mode,
        )
        if not wants_stream:
            return await self._run_with_disconnect_guard(
                client, ctx, responders.openai_non_stream(self, ctx)
            )
        if mode == "fake":
            return responders.openai_fake_stream(self, ctx)
        return await responders.openai_real_stream(self, ctx)

    async def list_models(self) -> list[dict[str, Any]]:
        models = await self._fetch_live_models()
        if not models:
            models = list(self.config.fallback_models) or [self.config.default_model]
        if self.policy.mode == "mix":
            models = append_fake_stream_variants(models, self.policy.prefix)
        created = int(time.time())
        entries: list[dict[str, Any]] = []
        for model in models:
            entry = to_openai_model_entry(
                model, fake_prefix=self.policy.prefix, created=created
            )
            if entry is not None:
                entries.append(entry)
        return entries

    def status_snapshot(self) -> dict[str, Any]:
        state = self.rotator.state
        return {
            "current_index": self.session.current_index,
            "usage_count": state.usage_count,
            "failure_count": state.failure_count,
            "streaming_mode": self.policy.mode,
            "is_switching": state.is_switching,
            "is_system_busy": state.is_system_busy,
            "failure_threshold": self.rotator.config.failure_threshold,
            "switch_on_uses": self.rotator.config.switch_on_uses,
            "immediate_switch_status_codes": sorted(
                self.rotator.config.immediate_switch_status_codes
            ),
            "live_channels": len(self.registry.channels),
            "outstanding_requests": len(self.registry.outstanding_request_ids),
        }

    async def switch_to_next(self) -> RotationResult:
        return await self.rotator.switch_to_next()

    async def switch_to_specific(self, account_index: int) -> RotationResult:
        return await self.rotator.switch_to_specific(account_index)

    def open_request(
        self, proxy_request: ProxyRequest, *, dialect: Dialect, model: str
    ) -> RequestContext:
        queue = self.registry.create_queue(proxy_request.request_id)
        return RequestContext(
            proxy_request=proxy_request, queue=queue, dialect=dialect, model=model
        )

    async def dispatch_with_retry(self, ctx: RequestContext) -> InboundMessage:
        """Forward the request until a non-error first message arrives."""
        wire = ctx.proxy_request.to_wire()
        attempts = max(1, self.config.max_retries)
        timeout_seconds = self.config.first_message_timeout_seconds
        last_error: ErrorMessage | None = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info(
                    "proxy_retry request_id=%s attempt=%d/%d",
                    ctx.request_id,
                    attempt,
                    attempts,
                )
            message: InboundMessage
            try:
                await self.registry.send_to_first_live(wire)
            except TransportUnavailableError as exc:
                message = ErrorMessage(
                    request_id=ctx.request_id, status=503, message=str(exc)
                )
            else:
                try:
                    message = await ctx.queue.get(timeout_seconds)
                except QueueTimeoutError:
                    message = timeout_error(ctx.request_id, timeout_seconds)

            if not isinstance(message, ErrorMessage):
                return message

            last_error = message
            if message.is_user_aborted:
                ctx.upstream_done = True
                logger.info("proxy_user_aborted request_id=%s", ctx.request_id)
                raise UpstreamRequestError(message, user_aborted=True)
            logger.warning(
                "proxy_attempt_failed request_id=%s attempt=%d/%d status=%d error=%s",
                ctx.request_id,
                attempt,
                attempts,
                message.status,
                message.message,
            )
            if attempt < attempts:
                await asyncio.sleep(self.config.retry_delay_seconds)

        assert last_error is not None
        ctx.upstream_done = last_error.status != 504
        logger.error(
            "proxy_retries_exhausted request_id=%s attempts=%d status=%d",
            ctx.request_id,
            attempts,
            last_error.status,
        )
        notice = await self.rotator.handle_request_failure(
            last_error.status, last_error.message
        )
        raise UpstreamRequestError(last_error, notice=notice)

    async def iter_chunks(
        self,
        ctx: RequestContext,
        first: InboundMessage,
        *,
        idle_timeout_seconds: float,
        account_failures: bool = True,
    ) -> AsyncIterator[str]:
        """Yield chunk payloads until the stream ends or fails."""
        message = first
        while True:
            if isinstance(message, ChunkMessage):
                if message.data:
                    yield message.data
            elif isinstance(message, StreamEndMessage):
                ctx.upstream_done = True
                return
            elif isinstance(message, ErrorMessage):
                raise await self._stream_failure(
                    ctx, message, account_failures=account_failures
                )
            try:
                message = await ctx.queue.get(idle_timeout_seconds)
            except QueueTimeoutError:
                message = timeout_error(ctx.request_id, idle_timeout_seconds)

    async def collect_body(
        self,
        ctx: RequestContext,
        first: InboundMessage,
        *,
        idle_timeout_seconds: float | None = None,
        account_failures: bool = True,
    ) -> tuple[int, dict[str, Any], str]:
        status_code = 200
        headers: dict[str, Any] = {}
        if isinstance(first, HeaderInfoMessage):
            status_code = first.status
            headers = dict(first.headers)
        timeout_seconds = (
            idle_timeout_seconds
            if idle_timeout_seconds is not None
            else self.config.body_idle_timeout_seconds
        )
        pieces = [
            piece
            async for piece in self.iter_chunks(
                ctx,
                first,
                idle_timeout_seconds=timeout_seconds,
                account_failures=account_failures,
            )
        ]
        return status_code, headers, "".join(pieces)

    def record_success(self, ctx: RequestContext, status_code: int = 200) -> None:
        ctx.delivered = True
        if status_code >= 400:
            return
        self.rotator.record_success(is_generative=ctx.proxy_request.is_generative)

    def finish(self, ctx: RequestContext) -> None:
        if ctx.finished:
            return
        ctx.finished = True
        self.registry.destroy_queue(ctx.request_id)
        if not ctx.upstream_done:
            logger.info("request_cancel request_id=%s", ctx.request_id)
            self._spawn(self._send_cancel(ctx.request_id))

    async def after_delivery(self, ctx: RequestContext, status_code: int) -> None:
        """Count a buffered response once its body has been sent."""
        self.record_success(ctx, status_code)
        await self.after_response(ctx)

    async def after_response(self, ctx: RequestContext) -> None:
        # One pending rotation is shared by every request that crossed the
        # usage threshold; only the first background hook to see it switches.
        if not self.rotator.state.take_pending_rotation():
            return
        logger.info(
            "rotation_deferred_start request_id=%s usage=%d/%d",
            ctx.request_id,
            self.rotator.state.usage_count,
            self.rotator.config.switch_on_uses,
        )
        try:
            await self.rotator.switch_to_next()
        except RotationError as exc:
            logger.error("rotation_deferred_failed error=%s", exc)

    async def wait_background(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _admit(self, dialect: Dialect) -> Response | None:
        state = self.rotator.state
        if state.is_system_busy:
            logger.warning("request_rejected reason=busy")
            return error_response(
                503, "Account switch in progress, please retry shortly.", dialect
            )
        if self.registry.has_live_channel():
            return None
        if not state.try_begin_recovery():
            return error_response(
                503, "Account switch in progress, please retry shortly.", dialect
            )
        try:
            account_index = self.session.current_index
            logger.warning("channel_recovery_start account=%d", account_index)
            result = await self.session.ensure_channel_for(account_index)
        finally:
            state.end_recovery()
        if not result.ok:
            logger.error("channel_recovery_failed error=%s", result.error)
            return error_response(503, "Upstream channel is unavailable.", dialect)
        logger.info("channel_recovery_succeeded account=%d", result.account_index)
        return None

    def _normalize_native_path(
        self, path: str
    ) -> tuple[str, ModelModeContext | None]:
        if self.policy.mode != "mix":
            return path, None
        info = extract_model_path_info(path, fake_prefix=self.policy.prefix)
        if info is None:
            return path, None
        context = self.policy.resolve_model(info.model_id)
        if context.is_fake and context.normalized_model:
            return info.with_model(context.normalized_model), context
        return path, context

    async def _stream_failure(
        self,
        ctx: RequestContext,
        message: ErrorMessage,
        *,
        account_failures: bool,
    ) -> UpstreamRequestError:
        ctx.upstream_done = message.status != 504
        if message.is_user_aborted:
            logger.info("proxy_user_aborted request_id=%s", ctx.request_id)
            return UpstreamRequestError(message, user_aborted=True)
        logger.error(
            "proxy_stream_failed request_id=%s status=%d error=%s",
            ctx.request_id,
            message.status,
            message.message,
        )
        notice = None
        if account_failures:
            notice = await self.rotator.handle_request_failure(
                message.status, message.message
            )
        return UpstreamRequestError(message, notice=notice)

    async def _fetch_live_models(self) -> list[Any]:
        if not self.registry.has_live_channel() or self.rotator.state.is_system_busy:
            return []
        proxy_request = ProxyRequest(
            request_id=new_request_id(),
            method="GET",
            path=MODEL_LISTING_PATH,
            headers={"Accept": "application/json"},
            streaming_mode="fake",
        )
        ctx = self.open_request(proxy_request, dialect="native", model="")
        timeout_seconds = self.config.model_list_timeout_seconds
        try:
            await self.registry.send_to_first_live(proxy_request.to_wire())
            first = await ctx.queue.get(timeout_seconds)
            if isinstance(first, ErrorMessage):
                ctx.upstream_done = True
                logger.warning("model_list_upstream_error error=%s", first.message)
                return []
            _, _, body = await self.collect_body(
                ctx,
                first,
                idle_timeout_seconds=timeout_seconds,
                account_failures=False,
            )
        except (
            TransportUnavailableError,
            QueueTimeoutError,
            UpstreamRequestError,
        ) as exc:
            logger.warning("model_list_fetch_failed error=%s", exc)
            return []
        finally:
            self.finish(ctx)
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("model_list_invalid_json request_id=%s", ctx.request_id)
            return []
        return models_from_listing_payload(payload)

    async def _run_with_disconnect_guard(
        self,
        client: ClientRequest,
        ctx: RequestContext,
        work: Coroutine[Any, Any, Response],
    ) -> Response:
        if client.is_disconnected is None:
            try:
                return await work
            finally:
                self.finish(ctx)

        task = asyncio.ensure_future(work)
        watcher = asyncio.create_task(self._watch_disconnect(client, ctx, task))
        try:
            return await task
        except asyncio.CancelledError:
            if not ctx.client_gone:
                raise
            logger.warning("request_abandoned request_id=%s", ctx.request_id)
            return Response(status_code=499)
        finally:
            watcher.cancel()
            self.finish(ctx)

    async def _watch_disconnect(
        self,
        client: ClientRequest,
        ctx: RequestContext,
        task: asyncio.Future[Response],
    ) -> None:
        assert client.is_disconnected is not None
        while not task.done():
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)
            if task.done():
                return
            if await client.is_disconnected():
                ctx.client_gone = True
                logger.warning("client_disconnected request_id=%s", ctx.request_id)
                task.cancel()
                return

    async def _send_cancel(self, request_id: str) -> None:
        try:
            await self.registry.send_to_first_live(
                CancelRequest(request_id=request_id).to_wire()
            )
        except TransportUnavailableError as exc:
            logger.debug(
                "request_cancel_skipped request_id=%s error=%s", request_id, exc
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
