from src.voicechat.client.consumer import StreamConsumer, TypingBuffer
from src.voicechat.client.reconciler import ConversationReconciler, TurnState
from src.voicechat.services.streaming import DONE, ERROR, RESET, StreamEvent, content_event, encode_sse


def _body(*events):
    return "".join(encode_sse(e) for e in events)


def _persisted(cid, user_corr, assistant_text=None):
    messages = [
        {
            "message_id": "m-user",
            "conversation_id": cid,
            "role": "user",
            "content": "Summarize this in one sentence.",
            "correlation_id": user_corr,
            "created_at": "2024-01-01T00:00:00Z",
        }
    ]
    if assistant_text:
        messages.append(
            {
                "message_id": "m-assistant",
                "conversation_id": cid,
                "role": "assistant",
                "content": assistant_text,
                "created_at": "2024-01-01T00:00:01Z",
            }
        )
    return messages


def test_consumer_handles_lines_split_across_chunks():
    body = _body(content_event("Hel"), content_event("lo"), StreamEvent(type=DONE, message_id="m2"))
    consumer = StreamConsumer("c1")
    seen = []
    for i in range(0, len(body), 7):
        seen.extend(consumer.feed(body[i:i + 7]))
    assert [e.type for e in seen] == ["content", "content", "done"]
    assert consumer.final_event.message_id == "m2"


def test_consumer_handles_multibyte_characters_split_in_bytes():
    raw = _body(content_event("café \U0001F600"), StreamEvent(type=DONE)).encode("utf-8")
    typed = []
    consumer = StreamConsumer("c1", on_event=lambda e: typed.append(consumer.typing.text))
    for i in range(len(raw)):
        consumer.feed(raw[i:i + 1])
    assert typed[0] == "café \U0001F600"
    assert consumer.finished


def test_done_clears_typing_and_requests_refresh():
    refreshed = []
    consumer = StreamConsumer("c1", on_refresh=refreshed.append)
    consumer.feed(_body(content_event("partial ")))
    assert consumer.typing.text == "partial "
    consumer.feed(_body(StreamEvent(type=DONE)))
    assert consumer.typing.text == ""
    assert refreshed == ["c1"]
    consumer.feed(_body(content_event("stray")))
    assert consumer.typing.text == ""


def test_reset_clears_typing_without_refresh():
    consumer = StreamConsumer("c1")
    consumer.feed(_body(content_event("abc"), StreamEvent(type=RESET)))
    assert consumer.typing.text == ""
    assert consumer.refresh_requested is False


def test_typing_buffer_ignores_other_conversations():
    buffer = TypingBuffer("c1")
    buffer.append("c2", "not mine")
    buffer.append("c1", "mine")
    assert buffer.text == "mine"
    buffer.switch("c2")
    assert buffer.text == ""


def test_optimistic_bubble_is_visible_before_send():
    rec = ConversationReconciler("c1")
    turn = rec.submit("Summarize this in one sentence.", correlation_id="t1")
    view = rec.view()
    assert turn.state == TurnState.OPTIMISTIC
    assert [(v.kind, v.content) for v in view] == [("optimistic", "Summarize this in one sentence.")]


def test_full_turn_ordering_and_single_clear():
    rec = ConversationReconciler("c1")
    rec.apply_persisted([])
    turn = rec.submit("Summarize this in one sentence.", correlation_id="t1")
    consumer = StreamConsumer(
        "c1",
        typing=rec.typing,
        on_refresh=lambda cid: rec.apply_persisted(_persisted(cid, "t1", "One sentence.")),
        on_event=rec.listener("t1"),
    )
    rec.mark_sent("t1")
    assert turn.state == TurnState.SENT

    consumer.feed(_body(content_event("One "), content_event("sent")))
    assert turn.state == TurnState.STREAMING
    assert [v.kind for v in rec.view()] == ["optimistic", "typing"]
    assert rec.view()[-1].content == "One sent"

    consumer.feed(_body(StreamEvent(type=DONE, message_id="m-assistant", user_message_id="m-user")))
    assert turn.state == TurnState.RESOLVED
    assert turn.typing_clears == 1
    view = rec.view()
    assert [(v.kind, v.role) for v in view] == [("message", "user"), ("message", "assistant")]
    assert turn.user_message_id == "m-user"

    rec.on_event("t1", content_event("late"))
    rec.on_event("t1", StreamEvent(type=DONE))
    assert turn.typing_clears == 1
    assert all(v.kind != "typing" for v in rec.view())


def test_stop_ends_in_cancelled_state():
    rec = ConversationReconciler("c1")
    rec.submit("Tell me a story", correlation_id="t1")
    consumer = StreamConsumer("c1", typing=rec.typing, on_event=rec.listener("t1"))
    rec.mark_sent("t1")
    consumer.feed(_body(content_event("Once"), StreamEvent(type=RESET), StreamEvent(type=DONE, cancelled=True)))
    assert rec.turn("t1").state == TurnState.CANCELLED
    assert rec.typing.text == ""


def test_error_marks_turn_failed():
    rec = ConversationReconciler("c1")
    rec.submit("Hi", correlation_id="t1")
    rec.mark_sent("t1")
    rec.on_event("t1", content_event("par"))
    rec.on_event("t1", StreamEvent(type=ERROR, error="try again"))
    assert rec.turn("t1").state == TurnState.FAILED
    assert [v.kind for v in rec.view()] == ["optimistic"]


def test_rejected_request_fails_without_stream():
    rec = ConversationReconciler("c1")
    rec.submit("Hi", correlation_id="t1")
    assert rec.mark_failed("t1").state == TurnState.FAILED


def test_local_stop_cancels_turn_and_hides_typing():
    rec = ConversationReconciler("c1")
    rec.submit("Tell me a story", correlation_id="t1")
    rec.mark_sent("t1")
    rec.typing.append("c1", "Once upon")
    rec.on_event("t1", content_event("Once upon"))
    assert rec.mark_cancelled("t1").state == TurnState.CANCELLED
    assert rec.turn("t1").typing_clears == 1
    assert [v.kind for v in rec.view()] == ["optimistic"]
    rec.on_event("t1", StreamEvent(type=DONE, cancelled=True))
    assert rec.turn("t1").typing_clears == 1
