from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from channel_relay.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


def extract_api_key(request: Request) -> tuple[str | None, str | None]:
    """Return the presented key and where it came from."""
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip(), "bearer"
    for header in ("x-goog-api-key", "x-api-key"):
        value = request.headers.get(header, "").strip()
        if value:
            return value, header
    query_key = request.query_params.get("key", "").strip()
    if query_key:
        return query_key, "query"
    return None, None


class Authenticator:
    def __init__(self, settings: Settings):
        self.api_keys = set(settings.api_keys_list)
        if not self.api_keys:
            logger.warning("auth_disabled reason=no_api_keys_configured")

    @property
    def required(self) -> bool:
        return bool(self.api_keys)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        key, source = extract_api_key(request)
        if key is None:
            return _unauthorized("Missing API key.")
        if key not in self.api_keys:
            logger.warning(
                "auth_rejected path=%s source=%s", request.url.path, source
            )
            return _unauthorized("Invalid API key.")

        request.state.auth = AuthResult(
            method=f"api_key:{source}", principal="api-key-client"
        )
        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
