import json
import logging

from channel_relay.gateway.errors import (
    native_error_body,
    native_error_event,
    openai_error_body,
    status_token,
)
from channel_relay.runtime.log_buffer import RecentLogBuffer, attach_log_buffer


def test_error_bodies_per_dialect() -> None:
    assert native_error_body(504, "slow") == {
        "error": {"code": 504, "message": "slow", "status": "GATEWAY_TIMEOUT"}
    }
    assert openai_error_body(401, "no")["error"]["type"] == "authentication_error"
    assert openai_error_body(502, "bad")["error"]["type"] == "server_error"
    assert openai_error_body(418, "tea")["error"]["type"] == "proxy_error"
    assert status_token(499) == "UNKNOWN"


def test_native_error_event_is_sse_framed() -> None:
    event = native_error_event(500, "boom")

    assert event.startswith(b"data: ")
    assert event.endswith(b"\n\n")
    assert json.loads(event[len(b"data: ") :])["error"]["code"] == 500


def test_log_buffer_keeps_most_recent_lines() -> None:
    logger = logging.getLogger("channel-relay-test-buffer")
    logger.setLevel(logging.INFO)
    buffer = attach_log_buffer(logger, capacity=2)
    try:
        for index in range(3):
            logger.info("event index=%d", index)
        lines = buffer.lines()
        assert len(lines) == 2
        assert lines[0].endswith("event index=1")
        assert lines[1].endswith("event index=2")
        assert buffer.lines(limit=1) == lines[-1:]
        assert buffer.lines(limit=0) == []
    finally:
        logger.removeHandler(buffer)


def test_attach_log_buffer_replaces_previous_handler() -> None:
    logger = logging.getLogger("channel-relay-test-replace")
    first = attach_log_buffer(logger, capacity=5)
    second = attach_log_buffer(logger, capacity=5)
    try:
        assert first not in logger.handlers
        assert second in logger.handlers
        assert isinstance(second, RecentLogBuffer)
    finally:
        logger.removeHandler(second)
