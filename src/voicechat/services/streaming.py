from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

CONTENT = "content"
DONE = "done"
ERROR = "error"
RESET = "reset"

EVENT_TYPES = (CONTENT, DONE, ERROR, RESET)
TERMINAL_TYPES = (DONE, ERROR)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class StreamEvent:
    type: str
    content: str = ""
    message_id: Optional[str] = None
    user_message_id: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.type == CONTENT:
            payload["content"] = self.content
        elif self.type == DONE:
            payload["message_id"] = self.message_id
            payload["user_message_id"] = self.user_message_id
            payload["cancelled"] = self.cancelled
        elif self.type == ERROR:
            payload["error"] = self.error
            payload["message_id"] = self.message_id
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StreamEvent":
        kind = payload.get("type")
        if kind not in EVENT_TYPES:
            raise ValueError(f"Unknown stream event type: {kind!r}")
        return cls(
            type=kind,
            content=str(payload.get("content") or ""),
            message_id=payload.get("message_id"),
            user_message_id=payload.get("user_message_id"),
            error=payload.get("error"),
            cancelled=bool(payload.get("cancelled", False)),
        )


def content_event(delta: str) -> StreamEvent:
    return StreamEvent(type=CONTENT, content=delta)


def encode_sse(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_payload())}\n\n"


def decode_sse_line(line: str) -> Optional[StreamEvent]:
    """Parse one line of an SSE body; blank, comment and non-data lines give ``None``."""
    line = (line or "").strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    return StreamEvent.from_payload(json.loads(data))


class StreamChannel:
    """Ordered, single-consumer event queue owned by one stream session.

    ``emit`` never blocks the producer. Once a terminal event is emitted the
    channel is closed and further emits are rejected, so ``done``/``error`` is
    always the last event a consumer sees.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("Stream channel already closed")
        self._queue.put_nowait(event)
        if event.terminal:
            self._closed = True

    async def next_event(self) -> StreamEvent:
        return await self._queue.get()

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return
