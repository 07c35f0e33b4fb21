from __future__ import annotations

"""Client side of the chat stream.

``StreamConsumer`` turns raw SSE body chunks into ``StreamEvent``s and keeps
the transient typing text for the conversation on screen. ``ChatStreamClient``
talks to the HTTP API with ``requests``.
"""

import codecs
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import requests

from ..services.streaming import CONTENT, DONE, ERROR, RESET, StreamEvent, decode_sse_line

logger = logging.getLogger(__name__)


class TypingBuffer:
    """Text of the reply being streamed into one conversation."""

    def __init__(self, conversation_id: Optional[str] = None) -> None:
        self.conversation_id = conversation_id
        self._parts: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def visible(self) -> bool:
        return bool(self._parts)

    def append(self, conversation_id: Optional[str], delta: str) -> None:
        # Deltas for a conversation that is no longer on screen are dropped.
        if conversation_id != self.conversation_id:
            return
        self._parts.append(delta)

    def clear(self) -> None:
        self._parts = []

    def switch(self, conversation_id: Optional[str]) -> None:
        self.conversation_id = conversation_id
        self.clear()


class StreamConsumer:
    def __init__(
        self,
        conversation_id: str,
        typing: Optional[TypingBuffer] = None,
        on_refresh: Optional[Callable[[str], None]] = None,
        on_event: Optional[Callable[[StreamEvent], None]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.typing = typing or TypingBuffer(conversation_id)
        self.on_refresh = on_refresh
        self.on_event = on_event
        self.refresh_requested = False
        self.final_event: Optional[StreamEvent] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def finished(self) -> bool:
        return self.final_event is not None

    def feed(self, chunk: Union[str, bytes]) -> List[StreamEvent]:
        """Parse one body chunk; a line split across chunks is held until complete."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        events: List[StreamEvent] = []
        for line in lines:
            event = self._parse(line)
            if event is not None:
                self.handle(event)
                events.append(event)
        return events

    def close(self) -> List[StreamEvent]:
        """Flush a trailing line the server did not terminate."""
        tail = self._decoder.decode(b"", final=True)
        line, self._pending = self._pending + tail, ""
        event = self._parse(line)
        if event is None:
            return []
        self.handle(event)
        return [event]

    def _parse(self, line: str) -> Optional[StreamEvent]:
        if self.finished:
            return None
        try:
            return decode_sse_line(line)
        except ValueError as exc:
            logger.warning("stream_event_unparseable", extra={"line": line[:200], "err": str(exc)})
            return None

    def handle(self, event: StreamEvent) -> None:
        if event.type == CONTENT:
            self.typing.append(self.conversation_id, event.content)
        elif event.type == RESET:
            self.typing.clear()
        elif event.type in (DONE, ERROR):
            self.typing.clear()
            self.final_event = event
            self._request_refresh()
        if self.on_event is not None:
            self.on_event(event)

    def _request_refresh(self) -> None:
        self.refresh_requested = True
        if self.on_refresh is not None:
            self.on_refresh(self.conversation_id)


class ChatStreamClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._headers: Dict[str, str] = {}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def create_conversation(self, title: Optional[str] = None) -> Dict[str, Any]:
        resp = self._session.post(
            self._url("/chat/conversations"), json={"title": title}, headers=self._headers, timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.json()

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        resp = self._session.get(
            self._url(f"/chat/conversations/{conversation_id}/messages"), headers=self._headers, timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.json()

    def stream(
        self,
        conversation_id: str,
        content: str,
        consumer: Optional[StreamConsumer] = None,
        model: Optional[str] = None,
        voice_profile_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Iterator[StreamEvent]:
        consumer = consumer or StreamConsumer(conversation_id)
        payload = {
            "conversation_id": conversation_id,
            "content": content,
            "model": model,
            "voice_profile_id": voice_profile_id,
            "client_message_id": client_message_id,
        }
        headers = dict(self._headers, Accept="text/event-stream")
        with self._session.post(
            self._url("/chat/stream"), json=payload, headers=headers, stream=True, timeout=self.timeout
        ) as resp:
            resp.raise_for_status()
            for chunk in resp.iter_content(chunk_size=None):
                for event in consumer.feed(chunk):
                    yield event
                if consumer.finished:
                    return
            for event in consumer.close():
                yield event

    def stop(self, conversation_id: str) -> bool:
        resp = self._session.post(
            self._url(f"/chat/conversations/{conversation_id}/stop"), headers=self._headers, timeout=self.timeout
        )
        resp.raise_for_status()
        return bool(resp.json().get("stopped"))

    def generate(
        self,
        conversation_id: str,
        content: str,
        model: Optional[str] = None,
        voice_profile_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        resp = self._session.post(
            self._url("/chat/generate"),
            json={"conversation_id": conversation_id, "content": content, "model": model, "voice_profile_id": voice_profile_id},
            headers=self._headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()
