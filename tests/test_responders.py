import asyncio
import json
import logging
from typing import Any

from channel_relay.gateway.responders import NATIVE_HEARTBEAT
from channel_relay.translation.native_response import DONE_EVENT
from tests.relay_test_utils import (
    ScriptedChannel,
    always,
    build_relay,
    chunk_message,
    end_message,
    error_message,
    header_message,
    native_body,
    native_request,
    openai_request,
    read_stream,
    reply_with,
    sse_payloads,
)

STREAM_PATH = "/v1beta/models/gemini-2.5-pro:streamGenerateContent"
SSE_ACCEPT = {"content-type": "application/json", "accept": "text/event-stream"}

FIRST_EVENT = 'data: {"candidates":[{"content":{"parts":[{"text":"Hel"}]}}]}\n\n'
SECOND_EVENT = (
    'data: {"candidates":[{"content":{"parts":[{"text":"lo"}]},'
    '"finishReason":"STOP"}]}\n\n'
)


def _split_stream() -> list[dict[str, Any]]:
    joined = FIRST_EVENT + SECOND_EVENT
    cut = len(FIRST_EVENT) + 12
    return [
        header_message(200, {"content-type": "text/event-stream"}),
        chunk_message(joined[:20]),
        chunk_message(joined[20:cut]),
        chunk_message(joined[cut:]),
        end_message(),
    ]


def test_openai_real_stream_translates_reassembled_events() -> None:
    async def scenario() -> tuple[list[bytes], ScriptedChannel, Any]:
        orchestrator, channel, _ = build_relay(script=always(_split_stream()))
        response = await orchestrator.handle_openai_request(openai_request(stream=True))
        return await read_stream(response), channel, orchestrator

    chunks, channel, orchestrator = asyncio.run(scenario())

    forwarded = channel.requests[0]
    assert forwarded["path"] == STREAM_PATH
    assert forwarded["query_params"] == {"alt": "sse"}
    assert forwarded["streaming_mode"] == "real"
    payloads = sse_payloads(chunks)
    assert payloads[-1] == "[DONE]"
    events = [json.loads(payload) for payload in payloads[:-1]]
    assert [event["choices"][0]["delta"]["content"] for event in events] == [
        "Hel",
        "lo",
    ]
    assert [event["choices"][0]["finish_reason"] for event in events] == [None, "STOP"]
    assert {event["object"] for event in events} == {"chat.completion.chunk"}
    assert orchestrator.registry.outstanding_request_ids == []


def test_openai_real_stream_reports_mid_stream_error_in_band() -> None:
    messages = [
        header_message(),
        chunk_message(FIRST_EVENT),
        error_message(500, "connection reset"),
    ]

    async def scenario() -> tuple[list[bytes], Any]:
        orchestrator, _, _ = build_relay(script=always(messages))
        response = await orchestrator.handle_openai_request(openai_request(stream=True))
        return await read_stream(response), orchestrator

    chunks, orchestrator = asyncio.run(scenario())

    payloads = sse_payloads(chunks)
    assert payloads[-1] == "[DONE]"
    first, failure = (json.loads(payload) for payload in payloads[:-1])
    assert first["choices"][0]["delta"]["content"] == "Hel"
    assert failure["choices"][0]["delta"]["content"].startswith(
        "[ProxySystem] Request failed: connection reset"
    )
    assert orchestrator.rotator.state.failure_count == 1


def test_openai_real_stream_failure_before_headers_is_in_band() -> None:
    async def scenario() -> list[bytes]:
        orchestrator, _, _ = build_relay(script=always([error_message(500, "down")]))
        response = await orchestrator.handle_openai_request(openai_request(stream=True))
        assert response.status_code == 200
        return await read_stream(response)

    payloads = sse_payloads(asyncio.run(scenario()))

    assert len(payloads) == 2
    assert "Request failed: down" in json.loads(payloads[0])["choices"][0]["delta"][
        "content"
    ]
    assert payloads[1] == "[DONE]"


def test_native_real_stream_passes_chunks_through() -> None:
    async def scenario() -> tuple[Any, list[bytes]]:
        orchestrator, _, _ = build_relay(script=always(_split_stream()))
        response = await orchestrator.handle_native_request(
            native_request(STREAM_PATH, headers=SSE_ACCEPT)
        )
        return response, await read_stream(response)

    response, chunks = asyncio.run(scenario())

    assert response.media_type == "text/event-stream"
    assert b"".join(chunks) == (FIRST_EVENT + SECOND_EVENT).encode() + DONE_EVENT


def test_native_real_stream_error_before_headers_is_json() -> None:
    async def scenario() -> Any:
        orchestrator, _, _ = build_relay(script=always([error_message(503, "busy")]))
        return await orchestrator.handle_native_request(
            native_request(STREAM_PATH, headers=SSE_ACCEPT)
        )

    response = asyncio.run(scenario())

    assert response.status_code == 503
    assert json.loads(response.body)["error"]["status"] == "SERVICE_UNAVAILABLE"


def test_openai_fake_stream_sends_heartbeats_then_two_events() -> None:
    async def scenario() -> tuple[list[bytes], list[bytes], ScriptedChannel]:
        orchestrator, channel, _ = build_relay(
            script=always([]), mode="fake", heartbeat_interval_seconds=0.01
        )
        response = await orchestrator.handle_openai_request(openai_request(stream=True))
        iterator = response.body_iterator
        beats = [await iterator.__anext__(), await iterator.__anext__()]
        channel.reply(
            channel.requests[0]["request_id"], reply_with(native_body("All done"))
        )
        rest = [chunk async for chunk in iterator]
        return beats, rest, channel

    beats, rest, channel = asyncio.run(scenario())

    assert channel.requests[0]["streaming_mode"] == "fake"
    for beat in beats:
        delta = json.loads(sse_payloads([beat])[0])["choices"][0]["delta"]
        assert delta == {"role": "assistant", "content": ""}
    payloads = sse_payloads(rest)
    assert payloads[-1] == "[DONE]"
    content, finish = (json.loads(payload) for payload in payloads[-3:-1])
    assert content["choices"][0]["delta"] == {
        "role": "assistant",
        "content": "All done",
    }
    assert content["choices"][0]["finish_reason"] is None
    assert finish["choices"][0]["delta"] == {}
    assert finish["choices"][0]["finish_reason"] == "STOP"


def test_openai_fake_stream_failure_ends_with_done() -> None:
    async def scenario() -> list[bytes]:
        orchestrator, _, _ = build_relay(
            script=always([error_message(500, "boom")]), mode="fake"
        )
        response = await orchestrator.handle_openai_request(openai_request(stream=True))
        return await read_stream(response)

    payloads = sse_payloads(asyncio.run(scenario()))

    assert payloads[-1] == "[DONE]"
    failure = json.loads(payloads[-2])
    assert failure["choices"][0]["delta"]["content"] == (
        "[ProxySystem] Request failed: boom"
    )


def test_native_fake_stream_splits_content_and_finish_events() -> None:
    upstream = json.dumps(
        {
            "candidates": [
                {
                    "content": {
                        "role": "model",
                        "parts": [
                            {"inlineData": {"mimeType": "image/png", "data": "QUJD"}}
                        ],
                    },
                    "finishReason": "STOP",
                    "index": 0,
                }
            ],
            "usageMetadata": {"totalTokenCount": 9},
        }
    )

    async def scenario() -> tuple[list[bytes], ScriptedChannel]:
        orchestrator, channel, _ = build_relay(
            script=always(reply_with(upstream)), mode="fake"
        )
        response = await orchestrator.handle_native_request(
            native_request(STREAM_PATH, headers=SSE_ACCEPT)
        )
        return await read_stream(response), channel

    chunks, channel = asyncio.run(scenario())

    assert channel.requests[0]["streaming_mode"] == "fake"
    payloads = sse_payloads([chunk for chunk in chunks if chunk != NATIVE_HEARTBEAT])
    assert payloads[-1] == "[DONE]"
    content, finish = (json.loads(payload) for payload in payloads[:-1])
    assert content == {
        "candidates": [
            {
                "content": {
                    "role": "model",
                    "parts": [
                        {"text": "![Generated Image](data:image/png;base64,QUJD)"}
                    ],
                },
                "index": 0,
            }
        ]
    }
    assert finish["candidates"][0]["finishReason"] == "STOP"
    assert finish["candidates"][0]["content"]["parts"] == []
    assert finish["usageMetadata"] == {"totalTokenCount": 9}


def test_native_non_stream_rewrites_inline_images() -> None:
    upstream = json.dumps(
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"inlineData": {"mimeType": "image/png", "data": "eA"}}
                        ]
                    }
                }
            ]
        }
    )

    async def scenario() -> Any:
        orchestrator, _, _ = build_relay(script=always(reply_with(upstream)))
        return await orchestrator.handle_native_request(native_request())

    response = asyncio.run(scenario())

    assert json.loads(response.body)["candidates"][0]["content"]["parts"] == [
        {"text": "![Generated Image](data:image/png;base64,eA)"}
    ]


def test_native_model_listing_is_augmented_in_mix_mode() -> None:
    listing = json.dumps({"models": [{"name": "models/gemini-2.5-pro"}]})

    async def scenario() -> Any:
        orchestrator, _, _ = build_relay(script=always(reply_with(listing)), mode="mix")
        return await orchestrator.handle_native_request(
            native_request("/v1beta/models", method="GET", body="")
        )

    response = asyncio.run(scenario())

    names = [model["name"] for model in json.loads(response.body)["models"]]
    assert names == ["models/gemini-2.5-pro", "models/假流式/gemini-2.5-pro"]


def test_openai_non_stream_passes_unparseable_body_through(caplog: Any) -> None:
    async def scenario() -> Any:
        orchestrator, _, _ = build_relay(script=always(reply_with("<html>oops</html>")))
        return await orchestrator.handle_openai_request(openai_request())

    with caplog.at_level(logging.WARNING):
        response = asyncio.run(scenario())

    assert response.status_code == 200
    assert response.body == b"<html>oops</html>"
    assert "openai_translation_passthrough" in caplog.text


def test_openai_mix_mode_picks_discipline_from_model_prefix() -> None:
    prefixed = "假流式/gemini-2.5-pro"

    async def scenario() -> tuple[list[bytes], list[bytes], ScriptedChannel]:
        orchestrator, channel, _ = build_relay(
            script=always(_split_stream()), mode="mix"
        )
        fake = await orchestrator.handle_openai_request(
            openai_request(model=prefixed, stream=True)
        )
        fake_chunks = await read_stream(fake)
        real = await orchestrator.handle_openai_request(openai_request(stream=True))
        real_chunks = await read_stream(real)
        return fake_chunks, real_chunks, channel

    fake_chunks, real_chunks, channel = asyncio.run(scenario())

    forwarded = [
        (request["path"], request["streaming_mode"]) for request in channel.requests
    ]
    assert forwarded == [
        ("/v1beta/models/gemini-2.5-pro:streamGenerateContent", "fake"),
        ("/v1beta/models/gemini-2.5-pro:streamGenerateContent", "real"),
    ]
    fake_events = [json.loads(payload) for payload in sse_payloads(fake_chunks)[:-1]]
    assert {event["model"] for event in fake_events} == {prefixed}
    assert "".join(
        event["choices"][0]["delta"].get("content", "") for event in fake_events
    ) == "Hello"
    real_events = [json.loads(payload) for payload in sse_payloads(real_chunks)[:-1]]
    assert {event["model"] for event in real_events} == {"gemini-2.5-pro"}
    assert sse_payloads(fake_chunks)[-1] == "[DONE]"
