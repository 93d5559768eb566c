from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from channel_relay.utils.yaml_utils import load_yaml_dict

logger = logging.getLogger("uvicorn.error")

MODEL_PATH_PREFIXES = ("/v1beta/models/", "/v1/models/")
MODEL_LISTING_PATHS = ("/v1/models", "/v1beta/models")

BLOCKED_MODEL_KEYWORDS = (
    "embed",
    "embedding",
    "search",
    "moderation",
    "speech",
    "audio",
    "vision",
    "image",
    "video",
)
TEXT_GENERATION_METHODS = (
    "generatecontent",
    "streamgeneratecontent",
    "createcontent",
    "generateanswer",
    "generatechatcompletions",
    "respond",
)


@dataclass(slots=True, frozen=True)
class ModelPathInfo:
    base_path: str
    encoded_segment: str
    suffix: str
    model_id: str

    def with_model(self, model_id: str) -> str:
        return f"{self.base_path}{quote(model_id, safe='')}{self.suffix}"


def extract_model_path_info(
    path: str, *, fake_prefix: str | None = None
) -> ModelPathInfo | None:
    base_path = next(
        (prefix for prefix in MODEL_PATH_PREFIXES if path.startswith(prefix)), None
    )
    if base_path is None:
        return None
    remainder = path[len(base_path) :]
    if not remainder:
        return None

    split_index = len(remainder)
    colon_index = remainder.find(":")
    if colon_index != -1:
        split_index = colon_index
    elif not (fake_prefix and unquote(remainder).startswith(fake_prefix)):
        slash_index = remainder.find("/")
        if slash_index != -1:
            split_index = slash_index

    segment = remainder[:split_index]
    if not segment:
        return None
    return ModelPathInfo(
        base_path=base_path,
        encoded_segment=segment,
        suffix=remainder[split_index:],
        model_id=unquote(segment),
    )


def is_model_listing_path(path: str) -> bool:
    return path.rstrip("/") in MODEL_LISTING_PATHS


def _tail(value: str, fake_prefix: str | None) -> str:
    if fake_prefix and fake_prefix in value:
        return value[value.index(fake_prefix) :]
    return value.rsplit("/", 1)[-1]


def model_identifier(model: Any, *, fake_prefix: str | None = None) -> str | None:
    if isinstance(model, str):
        return model or None
    if not isinstance(model, dict):
        return None
    for key in ("id", "name"):
        value = model.get(key)
        if isinstance(value, str) and value:
            return _tail(value, fake_prefix)
    display_name = model.get("displayName")
    if isinstance(display_name, str):
        return display_name
    return None


def supported_methods(model: Any) -> list[str]:
    if not isinstance(model, dict):
        return []
    for key in (
        "supportedGenerationMethods",
        "supported_generation_methods",
        "supportedMethods",
    ):
        value = model.get(key)
        if isinstance(value, list):
            return [str(item) for item in value]
    return []


def is_text_model(model: Any, identifier: str | None = None) -> bool:
    model_id = (identifier or model_identifier(model) or "").strip().lower()
    if not model_id:
        return False
    if any(keyword in model_id for keyword in BLOCKED_MODEL_KEYWORDS):
        return False
    methods = [method.lower() for method in supported_methods(model)]
    if not methods:
        return True
    if any(
        text_method in method
        for method in methods
        for text_method in TEXT_GENERATION_METHODS
    ):
        return True
    return not all("embed" in method for method in methods)


def _prefixed_name(name: Any, fake_id: str) -> str:
    if not isinstance(name, str) or not name:
        return f"models/{fake_id}"
    base, slash, _ = name.rpartition("/")
    if not slash:
        return fake_id
    return f"{base}/{fake_id}"


def fake_stream_variant(model: Any, identifier: str, fake_prefix: str) -> Any:
    fake_id = f"{fake_prefix}{identifier}"
    if isinstance(model, str):
        return fake_id
    clone = dict(model)
    clone["id"] = fake_id
    clone["name"] = _prefixed_name(clone.get("name"), fake_id)
    display_name = clone.get("displayName")
    if isinstance(display_name, str) and display_name:
        clean = display_name.removeprefix(fake_prefix)
        clone["displayName"] = f"{fake_prefix}{clean}"
    else:
        clone["displayName"] = fake_id
    return clone


def append_fake_stream_variants(models: list[Any], fake_prefix: str) -> list[Any]:
    existing = {
        identifier
        for identifier in (
            model_identifier(model, fake_prefix=fake_prefix) for model in models
        )
        if identifier
    }
    additions: list[Any] = []
    for model in models:
        identifier = model_identifier(model, fake_prefix=fake_prefix)
        if not identifier or identifier.startswith(fake_prefix):
            continue
        if not is_text_model(model, identifier):
            continue
        fake_id = f"{fake_prefix}{identifier}"
        if fake_id in existing:
            continue
        additions.append(fake_stream_variant(model, identifier, fake_prefix))
        existing.add(fake_id)
    if not additions:
        return models
    return [*models, *additions]


def augment_model_listing_payload(
    payload: Any, fake_prefix: str
) -> tuple[Any, bool]:
    if isinstance(payload, list):
        augmented = append_fake_stream_variants(payload, fake_prefix)
        return augmented, augmented is not payload
    if not isinstance(payload, dict):
        return payload, False
    changed = False
    result = payload
    for key in ("models", "data"):
        models = payload.get(key)
        if not isinstance(models, list):
            continue
        augmented = append_fake_stream_variants(models, fake_prefix)
        if augmented is not models:
            if result is payload:
                result = dict(payload)
            result[key] = augmented
            changed = True
    return result, changed


def models_from_listing_payload(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("models", "data"):
            models = payload.get(key)
            if isinstance(models, list):
                return models
    return []


def to_openai_model_entry(
    model: Any, *, fake_prefix: str | None = None, created: int | None = None
) -> dict[str, Any] | None:
    identifier = model_identifier(model, fake_prefix=fake_prefix)
    if not identifier:
        return None
    descriptor = model if isinstance(model, dict) else {}
    display_name = descriptor.get("displayName") or descriptor.get("display_name")
    return {
        "id": identifier,
        "object": "model",
        "created": created if created is not None else int(time.time()),
        "owned_by": "google",
        "name": descriptor.get("name") or f"models/{identifier}",
        "display_name": display_name or identifier,
        "supported_generation_methods": supported_methods(model),
    }


def load_fallback_models(path: str | Path, default_model: str) -> list[Any]:
    try:
        payload = load_yaml_dict(path, missing_ok=True)
    except (OSError, ValueError) as exc:
        logger.warning("model_catalog_invalid path=%s error=%s", path, exc)
        return [default_model]
    models = payload.get("models")
    if not isinstance(models, list) or not models:
        return [default_model]
    return [model for model in models if isinstance(model, (str, dict))]
