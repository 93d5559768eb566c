from __future__ import annotations

import json
from http import HTTPStatus
from typing import Literal

from fastapi.responses import JSONResponse

Dialect = Literal["native", "openai"]

_OPENAI_ERROR_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    404: "not_found_error",
    429: "rate_limit_error",
}


def status_token(status_code: int) -> str:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        return "UNKNOWN"
    return phrase.upper().replace(" ", "_").replace("-", "_")


def native_error_body(status_code: int, message: str) -> dict[str, object]:
    return {
        "error": {
            "code": status_code,
            "message": message,
            "status": status_token(status_code),
        }
    }


def openai_error_body(status_code: int, message: str) -> dict[str, object]:
    error_type = _OPENAI_ERROR_TYPES.get(status_code)
    if error_type is None:
        error_type = "server_error" if status_code >= 500 else "proxy_error"
    return {
        "error": {
            "message": message,
            "type": error_type,
            "code": status_code,
        }
    }


def error_response(status_code: int, message: str, dialect: Dialect) -> JSONResponse:
    if dialect == "openai":
        content = openai_error_body(status_code, message)
    else:
        content = native_error_body(status_code, message)
    return JSONResponse(status_code=status_code, content=content)


def native_error_event(status_code: int, message: str) -> bytes:
    payload = json.dumps(native_error_body(status_code, message), separators=(",", ":"))
    return f"data: {payload}\n\n".encode()
