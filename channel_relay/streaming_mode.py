from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from channel_relay.settings import STREAMING_MODES

logger = logging.getLogger("uvicorn.error")

DEFAULT_FAKE_STREAM_PREFIX = "假流式/"


@dataclass(slots=True, frozen=True)
class ModelModeContext:
    requested_model: str | None
    normalized_model: str | None
    is_fake: bool


class StreamingModePolicy:
    """Global streaming mode plus the mix-mode model-identifier marker.

    Only the exact configured prefix marks a fake-stream variant.
    """

    def __init__(
        self, mode: str = "real", *, prefix: str = DEFAULT_FAKE_STREAM_PREFIX
    ) -> None:
        self.prefix = prefix
        self._mode = "real"
        self.set_mode(mode)

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        normalized = (mode or "").strip().lower()
        if normalized not in STREAMING_MODES:
            raise ValueError(
                f"Unknown streaming mode '{mode}'. Expected one of: "
                + ", ".join(STREAMING_MODES)
            )
        if normalized != self._mode:
            logger.info(
                "streaming_mode_changed previous=%s mode=%s", self._mode, normalized
            )
        self._mode = normalized

    def resolve_model(self, model: str | None) -> ModelModeContext:
        if model and self._mode == "mix" and model.startswith(self.prefix):
            stripped = model[len(self.prefix) :]
            if stripped:
                return ModelModeContext(
                    requested_model=model, normalized_model=stripped, is_fake=True
                )
        return ModelModeContext(
            requested_model=model, normalized_model=model, is_fake=False
        )

    def resolve_mode(
        self, context: ModelModeContext | None = None
    ) -> Literal["real", "fake"]:
        if self._mode == "mix":
            return "fake" if context is not None and context.is_fake else "real"
        return "fake" if self._mode == "fake" else "real"

    def with_prefix(self, model_id: str) -> str:
        return f"{self.prefix}{model_id}"
