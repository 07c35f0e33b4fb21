import json
import types

import pytest

from src.voicechat.config import GenerationSettings
from src.voicechat.domain.chat_models import ComposedRequest
from src.voicechat.services import providers
from src.voicechat.services.model_router import ModelRouter
from src.voicechat.services.providers import (
    EmptyResponseError,
    GeminiAdapter,
    OpenAIChatAdapter,
    ProviderError,
    ProviderUnavailableError,
    build_adapter,
)

from tests.utils import ScriptedAdapter

REQUEST = ComposedRequest(
    system_instruction="Be brief.",
    messages=[
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "Summarize this in one sentence."},
    ],
)


def _sse(payload):
    return f"data: {json.dumps(payload)}".encode("utf-8")


def _candidate(text):
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


class FakeStreamResponse:
    def __init__(self, lines, status_error=None):
        self._lines = lines
        self._status_error = status_error
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def raise_for_status(self):
        if self._status_error:
            raise self._status_error

    def iter_lines(self):
        yield from self._lines


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response


def _gemini(lines, **kw):
    session = FakeSession(FakeStreamResponse(lines, **kw))
    adapter = GeminiAdapter("gemini-2.5-flash", api_key="g-key", base_url="https://example.test/v1beta/", session=session)
    return adapter, session


def test_gemini_parses_json_per_data_line():
    adapter, session = _gemini(
        [_sse(_candidate("Hello")), b"", b": keep-alive", _sse({"candidates": []}), b"data: not-json", _sse(_candidate(" world"))]
    )
    assert list(adapter.stream(REQUEST)) == ["Hello", " world"]
    url, kwargs = session.calls[0]
    assert url == "https://example.test/v1beta/models/gemini-2.5-flash:streamGenerateContent"
    assert kwargs["params"] == {"alt": "sse"}
    assert kwargs["stream"] is True
    assert session.response.closed


def test_gemini_payload_maps_roles_and_system_instruction():
    adapter, _ = _gemini([])
    payload = adapter.build_payload(REQUEST)
    assert payload["systemInstruction"]["parts"][0]["text"] == "Be brief."
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["generationConfig"]["maxOutputTokens"] == 1500


def test_gemini_empty_stream_is_soft_failure():
    adapter, _ = _gemini([_sse({"candidates": [{"content": {"parts": []}}]})])
    with pytest.raises(EmptyResponseError):
        list(adapter.stream(REQUEST))


def test_gemini_error_event_fails_the_stream():
    adapter, _ = _gemini([_sse(_candidate("Hel")), _sse({"error": {"code": 503, "message": "The model is overloaded."}})])
    stream = adapter.stream(REQUEST)
    assert next(stream) == "Hel"
    with pytest.raises(ProviderError) as info:
        next(stream)
    assert not isinstance(info.value, EmptyResponseError)
    assert "overloaded" in str(info.value)


def test_whitespace_only_stream_is_soft_failure():
    adapter = ScriptedAdapter(["  ", "\n", ""])
    stream = adapter.stream(REQUEST)
    assert [next(stream), next(stream)] == ["  ", "\n"]
    with pytest.raises(EmptyResponseError):
        next(stream)


def test_gemini_http_error_becomes_provider_error():
    adapter, _ = _gemini([], status_error=RuntimeError("429 Too Many Requests"))
    with pytest.raises(ProviderError) as info:
        list(adapter.stream(REQUEST))
    assert not isinstance(info.value, EmptyResponseError)


def test_openai_adapter_yields_raw_text_chunks(monkeypatch):
    seen = {}

    class FakeChatOpenAI:
        def __init__(self, **kwargs):
            seen["init"] = kwargs

        def stream(self, messages):
            seen["messages"] = messages
            for text in ["Quar", "", "terly ", "update"]:
                yield types.SimpleNamespace(content=text)

    monkeypatch.setattr(providers, "ChatOpenAI", FakeChatOpenAI)
    adapter = OpenAIChatAdapter("gpt-4o-mini", api_key="sk", base_url="https://api.openai.com/v1")
    assert list(adapter.stream(REQUEST)) == ["Quar", "terly ", "update"]
    assert seen["messages"][0] == {"role": "system", "content": "Be brief."}
    assert seen["messages"][-1]["content"] == "Summarize this in one sentence."
    assert seen["init"]["model"] == "gpt-4o-mini"


def test_openai_adapter_empty_stream(monkeypatch):
    class SilentChatOpenAI:
        def __init__(self, **kwargs):
            pass

        def stream(self, messages):
            return iter([types.SimpleNamespace(content="")])

    monkeypatch.setattr(providers, "ChatOpenAI", SilentChatOpenAI)
    adapter = OpenAIChatAdapter("gpt-4o", api_key="sk", base_url="https://api.openai.com/v1")
    with pytest.raises(EmptyResponseError):
        list(adapter.stream(REQUEST))


def test_openai_adapter_without_client_library(monkeypatch):
    monkeypatch.setattr(providers, "ChatOpenAI", None)
    with pytest.raises(ProviderUnavailableError):
        OpenAIChatAdapter("gpt-4o", api_key="sk", base_url="https://api.openai.com/v1")


def test_breaker_opens_after_repeated_failures(monkeypatch):
    monkeypatch.setattr(providers, "_BREAKER_THRESHOLD", 2)
    for _ in range(2):
        with pytest.raises(ProviderError):
            list(ScriptedAdapter(["a"], fail_after=0).stream(REQUEST))
    healthy = ScriptedAdapter(["fine"])
    with pytest.raises(ProviderError, match="llm_circuit_open"):
        list(healthy.stream(REQUEST))
    assert healthy.requests == []


def test_breaker_resets_after_success(monkeypatch):
    monkeypatch.setattr(providers, "_BREAKER_THRESHOLD", 2)
    with pytest.raises(ProviderError):
        list(ScriptedAdapter(["a"], fail_after=0).stream(REQUEST))
    assert list(ScriptedAdapter(["ok"]).stream(REQUEST)) == ["ok"]
    assert "gemini" not in providers._BREAKER_STATE


def test_build_adapter_requires_credentials():
    router = ModelRouter(env={})
    with pytest.raises(ProviderUnavailableError):
        build_adapter(router.resolve_model("gemini-2.5-flash"), GenerationSettings(), router)


def test_build_adapter_picks_provider_class(monkeypatch):
    monkeypatch.setattr(providers, "ChatOpenAI", lambda **kwargs: object())
    router = ModelRouter(env={"OPENAI_API_KEY": "sk", "GEMINI_API_KEY": "g"})
    assert isinstance(build_adapter(router.resolve_model("gpt-4o"), GenerationSettings(), router), OpenAIChatAdapter)
    assert isinstance(build_adapter(router.resolve_model("gemini-2.5-pro"), GenerationSettings(), router), GeminiAdapter)
