from __future__ import annotations

import re
from typing import Any

_DATA_URL_PATTERN = re.compile(r"^data:(image/.*?);base64,(.*)$", re.DOTALL)

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

_GENERATION_FIELDS = (
    ("temperature", "temperature"),
    ("top_p", "topP"),
    ("top_k", "topK"),
    ("max_tokens", "maxOutputTokens"),
    ("stop", "stopSequences"),
)


class TranslationError(ValueError):
    """Raised when a client body cannot be mapped to the native dialect."""


def _drop_none_fields(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            if item is None:
                continue
            cleaned_item = _drop_none_fields(item)
            if cleaned_item is None:
                continue
            cleaned[key] = cleaned_item
        return cleaned
    if isinstance(value, list):
        return [_drop_none_fields(item) for item in value if item is not None]
    return value


def _extract_text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: list[str] = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    texts.append(text)
        return "".join(texts)
    if content is None:
        return ""
    raise TranslationError("Message content must be a string or a list of parts.")


def _image_part(part: dict[str, Any]) -> dict[str, Any] | None:
    image_url = part.get("image_url")
    url = image_url.get("url") if isinstance(image_url, dict) else image_url
    if not isinstance(url, str):
        raise TranslationError("image_url parts must carry a url string.")
    match = _DATA_URL_PATTERN.match(url)
    if match is None:
        return None
    return {"inlineData": {"mimeType": match.group(1), "data": match.group(2)}}


def _native_parts(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    if content is None:
        return []
    if not isinstance(content, list):
        raise TranslationError("Message content must be a string or a list of parts.")
    parts: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, str):
            parts.append({"text": part})
            continue
        if not isinstance(part, dict):
            raise TranslationError("Message content parts must be objects.")
        part_type = part.get("type")
        if part_type == "text":
            text = part.get("text")
            if not isinstance(text, str):
                raise TranslationError("Text parts must carry a text string.")
            parts.append({"text": text})
        elif part_type == "image_url":
            image = _image_part(part)
            if image is not None:
                parts.append(image)
    return parts


def _generation_config(payload: dict[str, Any]) -> dict[str, Any]:
    config: dict[str, Any] = {}
    for source, target in _GENERATION_FIELDS:
        value = payload.get(source)
        if value is None:
            continue
        if source == "stop" and isinstance(value, str):
            value = [value]
        config[target] = value
    return config


def openai_to_native(payload: Any) -> dict[str, Any]:
    """Map an OpenAI chat-completions body to a native generateContent body."""
    if not isinstance(payload, dict):
        raise TranslationError("Expected a JSON object request body.")
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise TranslationError("'messages' must be a non-empty list.")

    system_texts: list[str] = []
    contents: list[dict[str, Any]] = []
    for message in messages:
        if not isinstance(message, dict):
            raise TranslationError("Each message must be an object.")
        role = message.get("role")
        content = message.get("content")
        if role == "system":
            system_texts.append(_extract_text_content(content))
            continue
        parts = _native_parts(content)
        if not parts:
            continue
        contents.append(
            {"role": "model" if role == "assistant" else "user", "parts": parts}
        )

    native: dict[str, Any] = {"contents": contents}
    if system_texts:
        native["systemInstruction"] = {"parts": [{"text": "\n".join(system_texts)}]}
    native["generationConfig"] = _generation_config(payload)
    native["safetySettings"] = [
        {"category": category, "threshold": "BLOCK_NONE"}
        for category in SAFETY_CATEGORIES
    ]
    return _drop_none_fields(native)
