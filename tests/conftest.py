import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


def _reset_state():
    from src.voicechat.infrastructure.chat_store import reset_chat_store
    from src.voicechat.infrastructure.style_index import reset_style_index
    from src.voicechat.infrastructure.voice_store import reset_voice_store
    from src.voicechat.services import embeddings, providers
    from src.voicechat.services.orchestrator import set_orchestrator

    reset_chat_store()
    reset_voice_store()
    reset_style_index()
    set_orchestrator(None)
    embeddings._EMBEDDERS.clear()
    providers._BREAKER_STATE.clear()


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    """Fresh in-memory stores, no cached clients and no real credentials per test."""
    for key in ("OPENAI_API_KEY", "GEMINI_API_KEY", "VOICECHAT_EXTRA_MODELS", "VOICECHAT_DEFAULT_MODEL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("VOICECHAT_PUBLIC_MODE", "1")
    monkeypatch.setenv("VOICECHAT_AUTO_TITLE", "0")
    _reset_state()
    yield
    _reset_state()
