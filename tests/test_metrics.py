import pytest

from src.voicechat.config import GenerationSettings
from src.voicechat.observability.metrics import sanitize_path


@pytest.mark.parametrize(
    "path, expected",
    [
        ("", "/"),
        ("/", "/"),
        ("/chat/conversations/abc123/messages", "/chat"),
        ("/api/voice-profiles/p1/samples", "/api/voice-profiles"),
        ("/health?verbose=1", "/health"),
    ],
)
def test_sanitize_path_limits_cardinality(path, expected):
    assert sanitize_path(path) == expected


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("VOICECHAT_DEFAULT_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("VOICECHAT_STREAM_IDLE_TIMEOUT", "12.5")
    monkeypatch.setenv("VOICECHAT_TOP_K", "5")
    monkeypatch.setenv("VOICECHAT_EMBEDDING_PROVIDER", " Gemini ")
    monkeypatch.setenv("VOICECHAT_AUTO_TITLE", "no")
    settings = GenerationSettings.from_env()
    assert settings.default_model == "gpt-4o-mini"
    assert settings.idle_timeout == 12.5
    assert settings.top_k == 5
    assert settings.embedding_provider == "gemini"
    assert settings.auto_title is False
    assert settings.chunk_size == 1000
