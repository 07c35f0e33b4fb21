import asyncio
import json

import pytest

from src.voicechat.services.streaming import (
    CONTENT,
    DONE,
    RESET,
    StreamChannel,
    StreamEvent,
    content_event,
    decode_sse_line,
    encode_sse,
)


def test_content_event_is_framed_as_sse():
    frame = encode_sse(content_event("Hel"))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "content", "content": "Hel"}


def test_done_payload_carries_ids():
    event = StreamEvent(type=DONE, message_id="m2", user_message_id="m1", cancelled=True)
    assert event.to_payload() == {"type": "done", "message_id": "m2", "user_message_id": "m1", "cancelled": True}
    assert decode_sse_line(encode_sse(event).strip()) == event


@pytest.mark.parametrize("line", ["", "   ", ": ping", "event: message", "data:", "data: [DONE]"])
def test_non_event_lines_decode_to_none(line):
    assert decode_sse_line(line) is None


def test_unknown_event_type_is_rejected():
    with pytest.raises(ValueError):
        decode_sse_line('data: {"type": "mystery"}')


def test_channel_preserves_order_and_ends_at_terminal_event():
    async def scenario():
        channel = StreamChannel()
        for piece in ("a", "b", "c"):
            channel.emit(content_event(piece))
        channel.emit(StreamEvent(type=RESET))
        channel.emit(StreamEvent(type=DONE, cancelled=True))
        with pytest.raises(RuntimeError):
            channel.emit(content_event("late"))
        return [e async for e in channel.events()]

    events = asyncio.run(scenario())
    assert [e.type for e in events] == [CONTENT, CONTENT, CONTENT, RESET, DONE]
    assert "".join(e.content for e in events) == "abc"
