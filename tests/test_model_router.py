"""Unit tests for `ModelRouter` catalog resolution."""

from __future__ import annotations

import pytest

from src.voicechat.services.model_router import ModelRouter, ProviderSelection


def test_known_models_resolve_to_their_provider():
    router = ModelRouter(env={})
    selection = router.resolve_model("gemini-2.5-flash")
    assert isinstance(selection, ProviderSelection)
    assert selection.name == "gemini"
    assert selection.api_key_env == "GEMINI_API_KEY"
    assert router.resolve_model("gpt-4o-mini").name == "openai"


def test_unknown_model_is_rejected_not_guessed():
    router = ModelRouter(env={})
    with pytest.raises(KeyError):
        router.resolve_model("gpt-5-turbo-preview")
    assert router.known_model("gemini-9") is False


def test_extra_models_extend_the_catalog():
    router = ModelRouter(env={"VOICECHAT_EXTRA_MODELS": "openai:gpt-4.1, gemini:gemini-2.0-flash, bogus:thing"})
    assert router.resolve_model("gpt-4.1").name == "openai"
    assert router.resolve_model("gemini-2.0-flash").name == "gemini"
    assert not router.known_model("thing")


def test_credentials_and_base_url_override():
    router = ModelRouter(env={"OPENAI_API_KEY": "sk-test", "OPENAI_BASE_URL": "http://proxy.local/v1/"})
    assert router.credentials("openai") == ("sk-test", "http://proxy.local/v1")
    key, base = router.credentials("gemini")
    assert key is None
    assert base == "https://generativelanguage.googleapis.com/v1beta"


def test_catalog_reports_availability():
    router = ModelRouter(env={"GEMINI_API_KEY": "g"})
    catalog = {opt.model: opt for opt in router.catalog()}
    assert catalog["gemini-2.5-pro"].available is True
    assert catalog["gpt-4o"].available is False
    assert catalog["gpt-4o"].label == "OpenAI - gpt-4o"
