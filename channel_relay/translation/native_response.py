"""Native-dialect response model and its translation to OpenAI chat chunks.

Upstream bodies are parsed once into ``NativeResponse``; camelCase and
snake_case spellings of the same field are both accepted here so nothing past
this boundary needs to sniff shapes.
"""

from __future__ import annotations

import json
import time
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from channel_relay.translation.openai_request import TranslationError
from channel_relay.translation.sse import split_sse_payloads

DONE_EVENT = b"data: [DONE]\n\n"


class InlineData(BaseModel):
    model_config = ConfigDict(extra="allow")

    mime_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mimeType", "mime_type"),
    )
    data: str = ""


class Part(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str | None = None
    inline_data: InlineData | None = Field(
        default=None, validation_alias=AliasChoices("inlineData", "inline_data")
    )


class Content(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str | None = None
    parts: list[Part] = Field(default_factory=list)


class Candidate(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: Content | None = None
    finish_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("finishReason", "finish_reason")
    )
    index: int = 0


class PromptFeedback(BaseModel):
    model_config = ConfigDict(extra="allow")

    block_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("blockReason", "block_reason")
    )


class UsageMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_token_count: int = Field(
        default=0,
        validation_alias=AliasChoices("promptTokenCount", "prompt_token_count"),
    )
    candidates_token_count: int = Field(
        default=0,
        validation_alias=AliasChoices(
            "candidatesTokenCount", "candidates_token_count"
        ),
    )
    total_token_count: int = Field(
        default=0,
        validation_alias=AliasChoices("totalTokenCount", "total_token_count"),
    )


class NativeResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    candidates: list[Candidate] = Field(default_factory=list)
    prompt_feedback: PromptFeedback | None = Field(
        default=None,
        validation_alias=AliasChoices("promptFeedback", "prompt_feedback"),
    )
    usage_metadata: UsageMetadata | None = Field(
        default=None,
        validation_alias=AliasChoices("usageMetadata", "usage_metadata"),
    )

    @property
    def first_candidate(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None


def parse_native_response(text: str | bytes) -> NativeResponse:
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TranslationError(f"Upstream body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise TranslationError("Upstream body is not a JSON object.")
    try:
        return NativeResponse.model_validate(payload)
    except ValidationError as exc:
        raise TranslationError(
            f"Upstream body has an unexpected shape: {exc.error_count()} error(s)"
        ) from exc


def markdown_image(mime_type: str, data: str) -> str:
    return f"![Generated Image](data:{mime_type};base64,{data})"


def candidate_text(candidate: Candidate) -> str:
    if candidate.content is None:
        return ""
    for part in candidate.content.parts:
        if part.inline_data is not None:
            return markdown_image(part.inline_data.mime_type, part.inline_data.data)
    return "".join(part.text for part in candidate.content.parts if part.text)


def safety_block_text(response: NativeResponse) -> str | None:
    if response.first_candidate is not None or response.prompt_feedback is None:
        return None
    return (
        "[ProxySystem Error] Request blocked due to safety settings. "
        f"Finish Reason: {response.prompt_feedback.block_reason}"
    )


def _completion_id(request_id: str) -> str:
    return f"chatcmpl-{request_id}"


def openai_chunk(
    *,
    request_id: str,
    model: str,
    content: str | None,
    finish_reason: str | None = None,
    role: str | None = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return {
        "id": _completion_id(request_id),
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def sse_data(payload: dict[str, Any] | str) -> bytes:
    if isinstance(payload, str):
        return f"data: {payload}\n\n".encode()
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode()


def native_to_openai_chunk(
    response: NativeResponse, *, request_id: str, model: str
) -> dict[str, Any] | None:
    """Translate one native stream event; ``None`` when it carries nothing."""
    blocked = safety_block_text(response)
    if blocked is not None:
        return openai_chunk(
            request_id=request_id, model=model, content=blocked, finish_reason="stop"
        )
    candidate = response.first_candidate
    if candidate is None:
        return None
    return openai_chunk(
        request_id=request_id,
        model=model,
        content=candidate_text(candidate),
        finish_reason=candidate.finish_reason,
    )


def native_to_openai_completion(
    response: NativeResponse, *, request_id: str, model: str
) -> dict[str, Any]:
    blocked = safety_block_text(response)
    candidate = response.first_candidate
    if blocked is not None:
        content, finish_reason = blocked, "stop"
    elif candidate is not None:
        content, finish_reason = candidate_text(candidate), candidate.finish_reason
    else:
        content, finish_reason = "", None
    completion: dict[str, Any] = {
        "id": _completion_id(request_id),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }
    usage = response.usage_metadata
    if usage is not None:
        completion["usage"] = {
            "prompt_tokens": usage.prompt_token_count,
            "completion_tokens": usage.candidates_token_count,
            "total_tokens": usage.total_token_count,
        }
    return completion


def rewrite_inline_images(payload: Any) -> tuple[Any, bool]:
    """Replace inline image parts of every candidate with a markdown text part."""
    if not isinstance(payload, dict):
        return payload, False
    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return payload, False
    changed = False
    for candidate in candidates:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        rewritten: list[Any] = []
        for part in parts:
            inline = None
            if isinstance(part, dict):
                inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict):
                mime_type = inline.get("mimeType") or inline.get("mime_type")
                text = markdown_image(
                    str(mime_type or "application/octet-stream"),
                    str(inline.get("data") or ""),
                )
                rewritten.append({"text": text})
                changed = True
            else:
                rewritten.append(part)
        content["parts"] = rewritten
    return payload, changed


def merge_native_events(body: str) -> dict[str, Any]:
    """Fold an SSE-framed native body into one native response object.

    Text parts are concatenated; inline data parts are kept; the last finish
    reason and usage block win.
    """
    texts: list[str] = []
    extra_parts: list[dict[str, Any]] = []
    finish_reason: str | None = None
    usage: Any = None
    prompt_feedback: Any = None
    for payload in split_sse_payloads(body):
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise TranslationError(f"Upstream event is not JSON: {exc}") from exc
        if not isinstance(event, dict):
            continue
        usage = event.get("usageMetadata", usage)
        prompt_feedback = event.get("promptFeedback", prompt_feedback)
        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            continue
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        finish_reason = candidate.get("finishReason", finish_reason)
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in parts if isinstance(parts, list) else []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                texts.append(part["text"])
            else:
                extra_parts.append(part)

    merged: dict[str, Any] = {}
    if texts or extra_parts or finish_reason is not None:
        parts_out: list[dict[str, Any]] = []
        if texts:
            parts_out.append({"text": "".join(texts)})
        parts_out.extend(extra_parts)
        candidate_out: dict[str, Any] = {
            "content": {"role": "model", "parts": parts_out},
            "index": 0,
        }
        if finish_reason is not None:
            candidate_out["finishReason"] = finish_reason
        merged["candidates"] = [candidate_out]
    if prompt_feedback is not None:
        merged["promptFeedback"] = prompt_feedback
    if usage is not None:
        merged["usageMetadata"] = usage
    return merged
