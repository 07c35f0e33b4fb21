import threading

import pytest

from src.voicechat.services.sessions import ConversationBusyError, SessionRegistry, SessionState, StreamSession


def _session(cid="c1"):
    return StreamSession(conversation_id=cid, owner="u1", model="gemini-2.5-flash", provider="gemini")


def test_registry_allows_one_stream_per_conversation():
    registry = SessionRegistry()
    first = _session()
    registry.claim(first)
    with pytest.raises(ConversationBusyError):
        registry.claim(_session())
    registry.claim(_session("c2"))
    assert registry.active_count() == 2
    registry.release(_session())  # not the owner of the flag
    assert registry.is_streaming("c1")
    registry.release(first)
    assert not registry.is_streaming("c1")


def test_concurrent_claims_admit_exactly_one():
    registry = SessionRegistry()
    winners = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        try:
            registry.claim(_session())
            winners.append(1)
        except ConversationBusyError:
            pass

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(winners) == 1


def test_cancel_is_noop_without_session_and_once_per_session():
    registry = SessionRegistry()
    assert registry.cancel("c1") is False
    session = _session()
    registry.claim(session)
    assert registry.cancel("c1") is True
    assert session.cancel_requested
    assert registry.cancel("c1") is False


def test_finished_session_ignores_cancel():
    session = _session()
    session.state = SessionState.COMPLETED
    assert session.request_cancel() is False


def test_finalize_claimed_once():
    session = _session()
    assert session.claim_finalize() is True
    assert session.claim_finalize() is False
