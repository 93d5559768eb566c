from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

STREAMING_MODES = ("real", "fake", "mix")


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 7860
    api_keys: str = ""
    channel_token: str | None = None
    auth_dir: str = "auth"
    initial_account_index: int | None = None
    streaming_mode: str = "real"
    fake_stream_prefix: str = "假流式/"
    failure_threshold: int = 3
    switch_on_uses: int = 40
    max_retries: int = 1
    retry_delay_ms: int = 2000
    immediate_switch_status_codes: str = "429,503"
    first_message_timeout_seconds: float = 300.0
    stream_idle_timeout_seconds: float = 30.0
    body_idle_timeout_seconds: float = 300.0
    heartbeat_interval_seconds: float = 3.0
    channel_connect_timeout_seconds: float = 60.0
    model_list_timeout_seconds: float = 30.0
    models_path: str = "models.yaml"
    default_model: str = "gemini-2.5-pro"
    status_log_buffer_size: int = 200

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def api_keys_list(self) -> list[str]:
        return _split_csv(self.api_keys)

    @property
    def normalized_streaming_mode(self) -> str:
        return normalize_streaming_mode(self.streaming_mode)

    @property
    def immediate_switch_status_codes_set(self) -> frozenset[int]:
        codes: set[int] = set()
        for item in _split_csv(self.immediate_switch_status_codes):
            try:
                code = int(item)
            except ValueError:
                continue
            if 400 <= code <= 599:
                codes.add(code)
        return frozenset(codes)


def normalize_streaming_mode(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized in STREAMING_MODES:
        return normalized
    return "real"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
