from __future__ import annotations

import threading
from typing import Iterator, List, Optional

from src.voicechat.domain.chat_models import ComposedRequest
from src.voicechat.services.providers import StreamingAdapter

ALPHABET = "abcdefghijklmnopqrstuvwxyz"


class LetterEmbedder:
    """Deterministic embedder: letter frequencies as a 26-d vector."""

    def __init__(self, name: str = "openai", fail_on: Optional[str] = None) -> None:
        self.name = name
        self.fail_on = fail_on
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding service unavailable")
        lowered = text.lower()
        return [float(lowered.count(ch)) for ch in ALPHABET]


class ScriptedAdapter(StreamingAdapter):
    """Adapter that replays fixed deltas and records the requests it saw.

    ``fail_after`` raises once that many deltas were produced. ``gate`` makes
    the stream wait after ``gate_after`` deltas until the event is set, so a
    test can stop the turn at a known point.
    """

    name = "gemini"

    def __init__(
        self,
        deltas: List[str],
        model: str = "gemini-2.5-flash",
        fail_after: Optional[int] = None,
        gate_after: Optional[int] = None,
        title: str = "Quarterly Planning Summary",
    ) -> None:
        super().__init__(model)
        self.deltas = deltas
        self.fail_after = fail_after
        self.gate_after = gate_after
        self.gate = threading.Event()
        self.reached_gate = threading.Event()
        self.title = title
        self.requests: List[ComposedRequest] = []
        self.closed = False

    def _iter_deltas(self, request: ComposedRequest) -> Iterator[str]:
        self.requests.append(request)
        if request.messages and request.messages[-1]["content"].startswith("Generate a concise, descriptive title"):
            yield self.title
            return
        try:
            for idx, delta in enumerate(self.deltas):
                if self.fail_after is not None and idx == self.fail_after:
                    raise ConnectionError("upstream reset")
                if self.gate_after is not None and idx == self.gate_after:
                    self.reached_gate.set()
                    self.gate.wait(timeout=5)
                yield delta
            if self.fail_after is not None and self.fail_after >= len(self.deltas):
                raise ConnectionError("upstream reset")
        finally:
            self.closed = True


def sse_events(body: str):
    from src.voicechat.services.streaming import decode_sse_line

    return [e for e in (decode_sse_line(line) for line in body.splitlines()) if e is not None]
