"""Client-facing delivery for each dialect and streaming discipline.

Real streams forward upstream chunks as they arrive. Fake streams hold the
client connection open with heartbeats until the full upstream body is
accumulated, then emit one content event and one finish event. Every client
stream ends with ``data: [DONE]``, including failed ones.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from channel_relay.channel.messages import HeaderInfoMessage, InboundMessage
from channel_relay.gateway.context import RequestContext, UpstreamRequestError
from channel_relay.gateway.errors import error_response, native_error_event
from channel_relay.translation.catalog import (
    augment_model_listing_payload,
    is_model_listing_path,
)
from channel_relay.translation.native_response import (
    DONE_EVENT,
    NativeResponse,
    candidate_text,
    merge_native_events,
    native_to_openai_chunk,
    native_to_openai_completion,
    openai_chunk,
    parse_native_response,
    rewrite_inline_images,
    safety_block_text,
    sse_data,
)
from channel_relay.translation.openai_request import TranslationError
from channel_relay.translation.sse import SseEventReassembler, looks_like_sse

if TYPE_CHECKING:
    from channel_relay.gateway.orchestrator import RequestOrchestrator

logger = logging.getLogger("uvicorn.error")

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
NATIVE_HEARTBEAT = b": keep-alive\n\n"

_DROPPED_RESPONSE_HEADERS = frozenset(
    {
        "content-length",
        "content-encoding",
        "transfer-encoding",
        "connection",
        "keep-alive",
    }
)


def _response_headers(headers: dict[str, Any]) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in _DROPPED_RESPONSE_HEADERS:
            continue
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value)
        filtered[key.lower()] = str(value)
    return filtered


def _first_status(first: InboundMessage) -> tuple[int, dict[str, Any]]:
    if isinstance(first, HeaderInfoMessage):
        return first.status, dict(first.headers)
    return 200, {}


def _load_native_payload(body: str) -> Any:
    if looks_like_sse(body):
        return merge_native_events(body)
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise TranslationError(f"Upstream body is not JSON: {exc}") from exc


def _parse_native_body(body: str) -> NativeResponse:
    if looks_like_sse(body):
        return NativeResponse.model_validate(merge_native_events(body))
    return parse_native_response(body)


def _after(orchestrator: RequestOrchestrator, ctx: RequestContext) -> BackgroundTask:
    return BackgroundTask(orchestrator.after_response, ctx)


def _after_delivery(
    orchestrator: RequestOrchestrator, ctx: RequestContext, status_code: int
) -> BackgroundTask:
    return BackgroundTask(orchestrator.after_delivery, ctx, status_code)


def _openai_failure_events(
    ctx: RequestContext, exc: UpstreamRequestError
) -> list[bytes]:
    if exc.user_aborted:
        return [DONE_EVENT]
    chunk = openai_chunk(
        request_id=ctx.request_id,
        model=ctx.model,
        content=f"[ProxySystem] {exc.client_message}",
        finish_reason="stop",
    )
    return [sse_data(chunk), DONE_EVENT]


def _native_failure_events(exc: UpstreamRequestError) -> list[bytes]:
    if exc.user_aborted:
        return [DONE_EVENT]
    return [native_error_event(exc.status, exc.client_message), DONE_EVENT]


def _rewrite_native_body(
    orchestrator: RequestOrchestrator, ctx: RequestContext, body: str
) -> str:
    try:
        payload = _load_native_payload(body)
    except TranslationError:
        if body.strip():
            logger.warning(
                "native_body_passthrough request_id=%s reason=not_json",
                ctx.request_id,
            )
        return body
    payload, changed = rewrite_inline_images(payload)
    if orchestrator.policy.mode == "mix" and is_model_listing_path(
        ctx.proxy_request.path
    ):
        payload, augmented = augment_model_listing_payload(
            payload, orchestrator.policy.prefix
        )
        changed = changed or augmented
    if not changed and not looks_like_sse(body):
        return body
    return json.dumps(payload, ensure_ascii=False)


async def native_non_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> Response:
    try:
        first = await orchestrator.dispatch_with_retry(ctx)
        status_code, headers, body = await orchestrator.collect_body(ctx, first)
    except UpstreamRequestError as exc:
        return error_response(exc.status, exc.client_message, "native")
    content = _rewrite_native_body(orchestrator, ctx, body)
    return Response(
        content=content,
        status_code=status_code,
        headers=_response_headers(headers),
        media_type="application/json",
        background=_after_delivery(orchestrator, ctx, status_code),
    )


async def openai_non_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> Response:
    try:
        first = await orchestrator.dispatch_with_retry(ctx)
        status_code, _, body = await orchestrator.collect_body(ctx, first)
    except UpstreamRequestError as exc:
        return error_response(exc.status, exc.client_message, "openai")
    try:
        response = _parse_native_body(body)
    except TranslationError as exc:
        logger.warning(
            "openai_translation_passthrough request_id=%s error=%s",
            ctx.request_id,
            exc,
        )
        return Response(
            content=body,
            status_code=status_code,
            media_type="application/json",
            background=_after_delivery(orchestrator, ctx, status_code),
        )
    return JSONResponse(
        content=native_to_openai_completion(
            response, request_id=ctx.request_id, model=ctx.model
        ),
        status_code=status_code,
        background=_after_delivery(orchestrator, ctx, status_code),
    )


async def native_real_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> Response:
    try:
        first = await orchestrator.dispatch_with_retry(ctx)
    except UpstreamRequestError as exc:
        orchestrator.finish(ctx)
        return error_response(exc.status, exc.client_message, "native")
    status_code, headers = _first_status(first)
    response_headers = {**_response_headers(headers), **SSE_HEADERS}
    media_type = response_headers.pop("content-type", "text/event-stream")
    idle_timeout = orchestrator.config.stream_idle_timeout_seconds

    async def events() -> AsyncIterator[bytes]:
        try:
            try:
                async for piece in orchestrator.iter_chunks(
                    ctx, first, idle_timeout_seconds=idle_timeout
                ):
                    yield piece.encode()
            except UpstreamRequestError as exc:
                for event in _native_failure_events(exc):
                    yield event
                return
            yield DONE_EVENT
            orchestrator.record_success(ctx, status_code)
        finally:
            orchestrator.finish(ctx)

    return StreamingResponse(
        content=events(),
        status_code=status_code,
        headers=response_headers,
        media_type=media_type,
        background=_after(orchestrator, ctx),
    )


def _openai_stream_event(ctx: RequestContext, payload: str) -> bytes | None:
    try:
        response = parse_native_response(payload)
    except TranslationError as exc:
        logger.warning(
            "openai_stream_event_passthrough request_id=%s error=%s",
            ctx.request_id,
            exc,
        )
        return sse_data(payload)
    chunk = native_to_openai_chunk(response, request_id=ctx.request_id, model=ctx.model)
    if chunk is None:
        return None
    return sse_data(chunk)


async def openai_real_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> Response:
    try:
        first = await orchestrator.dispatch_with_retry(ctx)
    except UpstreamRequestError as exc:
        orchestrator.finish(ctx)
        failure_events = _openai_failure_events(ctx, exc)

        async def failure() -> AsyncIterator[bytes]:
            for event in failure_events:
                yield event

        return StreamingResponse(
            content=failure(), media_type="text/event-stream", headers=SSE_HEADERS
        )

    idle_timeout = orchestrator.config.stream_idle_timeout_seconds

    async def events() -> AsyncIterator[bytes]:
        reassembler = SseEventReassembler()
        try:
            try:
                async for piece in orchestrator.iter_chunks(
                    ctx, first, idle_timeout_seconds=idle_timeout
                ):
                    for payload in reassembler.feed(piece):
                        event = _openai_stream_event(ctx, payload)
                        if event is not None:
                            yield event
                for payload in reassembler.flush():
                    event = _openai_stream_event(ctx, payload)
                    if event is not None:
                        yield event
            except UpstreamRequestError as exc:
                for event in _openai_failure_events(ctx, exc):
                    yield event
                return
            yield DONE_EVENT
            orchestrator.record_success(ctx)
        finally:
            orchestrator.finish(ctx)

    return StreamingResponse(
        content=events(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=_after(orchestrator, ctx),
    )


def _openai_fake_events(ctx: RequestContext, body: str) -> list[bytes]:
    try:
        response = _parse_native_body(body)
    except TranslationError as exc:
        logger.warning(
            "openai_translation_passthrough request_id=%s error=%s",
            ctx.request_id,
            exc,
        )
        content, finish_reason = body, "stop"
    else:
        blocked = safety_block_text(response)
        candidate = response.first_candidate
        if blocked is not None:
            content, finish_reason = blocked, "stop"
        elif candidate is not None:
            content = candidate_text(candidate)
            finish_reason = candidate.finish_reason or "stop"
        else:
            content, finish_reason = "", "stop"
    return [
        sse_data(
            openai_chunk(
                request_id=ctx.request_id,
                model=ctx.model,
                content=content,
                role="assistant",
            )
        ),
        sse_data(
            openai_chunk(
                request_id=ctx.request_id,
                model=ctx.model,
                content=None,
                finish_reason=finish_reason,
            )
        ),
    ]


def _native_finish_event(payload: Any) -> dict[str, Any]:
    finish_reason = "STOP"
    usage = None
    if isinstance(payload, dict):
        usage = payload.get("usageMetadata")
        candidates = payload.get("candidates")
        first = candidates[0] if isinstance(candidates, list) and candidates else None
        if isinstance(first, dict) and first.get("finishReason"):
            finish_reason = str(first["finishReason"])
        elif first is None and payload.get("promptFeedback"):
            finish_reason = "SAFETY"
    event: dict[str, Any] = {
        "candidates": [
            {
                "content": {"role": "model", "parts": []},
                "finishReason": finish_reason,
                "index": 0,
            }
        ]
    }
    if usage is not None:
        event["usageMetadata"] = usage
    return event


def _native_fake_events(ctx: RequestContext, body: str) -> list[bytes]:
    try:
        payload = _load_native_payload(body)
    except TranslationError:
        logger.warning(
            "native_body_passthrough request_id=%s reason=not_json", ctx.request_id
        )
        return [sse_data(body), sse_data(_native_finish_event(None))]
    payload, _ = rewrite_inline_images(payload)
    content_event = copy.deepcopy(payload)
    if isinstance(content_event, dict):
        content_event.pop("usageMetadata", None)
        for candidate in content_event.get("candidates") or []:
            if isinstance(candidate, dict):
                candidate.pop("finishReason", None)
                candidate.pop("finish_reason", None)
    return [sse_data(content_event), sse_data(_native_finish_event(payload))]


def _fake_stream(
    orchestrator: RequestOrchestrator,
    ctx: RequestContext,
    *,
    heartbeat: Callable[[], bytes],
    render: Callable[[str], list[bytes]],
    failure: Callable[[UpstreamRequestError], list[bytes]],
) -> StreamingResponse:
    async def accumulate() -> tuple[int, dict[str, Any], str]:
        first = await orchestrator.dispatch_with_retry(ctx)
        return await orchestrator.collect_body(ctx, first)

    async def events() -> AsyncIterator[bytes]:
        upstream = asyncio.create_task(accumulate())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {upstream}, timeout=orchestrator.config.heartbeat_interval_seconds
                )
                if done:
                    break
                yield heartbeat()
            try:
                status_code, _, body = upstream.result()
            except UpstreamRequestError as exc:
                for event in failure(exc):
                    yield event
                return
            for event in render(body):
                yield event
            yield DONE_EVENT
            orchestrator.record_success(ctx, status_code)
        finally:
            if not upstream.done():
                upstream.cancel()
            orchestrator.finish(ctx)

    return StreamingResponse(
        content=events(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=_after(orchestrator, ctx),
    )


def openai_fake_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> StreamingResponse:
    def heartbeat() -> bytes:
        return sse_data(
            openai_chunk(
                request_id=ctx.request_id, model=ctx.model, content="", role="assistant"
            )
        )

    return _fake_stream(
        orchestrator,
        ctx,
        heartbeat=heartbeat,
        render=lambda body: _openai_fake_events(ctx, body),
        failure=lambda exc: _openai_failure_events(ctx, exc),
    )


def native_fake_stream(
    orchestrator: RequestOrchestrator, ctx: RequestContext
) -> StreamingResponse:
    return _fake_stream(
        orchestrator,
        ctx,
        heartbeat=lambda: NATIVE_HEARTBEAT,
        render=lambda body: _native_fake_events(ctx, body),
        failure=_native_failure_events,
    )
