from __future__ import annotations

DONE_PAYLOAD = "[DONE]"


def _event_payload(raw_event: str) -> str | None:
    data_lines: list[str] = []
    for line in raw_event.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:") :].removeprefix(" "))
    if not data_lines:
        return None
    payload = "\n".join(data_lines)
    if not payload.strip() or payload.strip() == DONE_PAYLOAD:
        return None
    return payload


class SseEventReassembler:
    """Rebuilds blank-line delimited SSE events from arbitrarily split chunks.

    ``feed`` returns the ``data:`` payload of every event completed so far;
    comment-only events, empty events and ``[DONE]`` yield nothing.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pending_cr = False

    def feed(self, chunk: str) -> list[str]:
        if self._pending_cr:
            chunk = "\r" + chunk
            self._pending_cr = False
        if chunk.endswith("\r"):
            chunk = chunk[:-1]
            self._pending_cr = True
        self._buffer += chunk.replace("\r\n", "\n")

        payloads: list[str] = []
        while "\n\n" in self._buffer:
            raw_event, self._buffer = self._buffer.split("\n\n", 1)
            payload = _event_payload(raw_event)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        remainder = self._buffer
        self._buffer = ""
        self._pending_cr = False
        payload = _event_payload(remainder)
        return [payload] if payload is not None else []


def split_sse_payloads(body: str) -> list[str]:
    reassembler = SseEventReassembler()
    return reassembler.feed(body) + reassembler.flush()


def looks_like_sse(body: str) -> bool:
    stripped = body.lstrip()
    return stripped.startswith("data:") or stripped.startswith(":")
