"""Routing helpers for selecting the provider that serves a model id.

The router does not couple directly to concrete SDK clients; it resolves a
model identifier through an explicit catalog into a provider configuration
that the adapter factory uses to build a client. Unknown model ids are
rejected instead of being guessed from their spelling.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..domain.chat_models import ChatModelOption


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a model."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None


class ModelRouter:
    """Catalog-based router from model id to provider adapter configuration."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str]]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "default_base_url": "https://api.openai.com/v1",
            "label": "OpenAI",
        },
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta",
            "label": "Gemini",
        },
    }

    MODEL_CATALOG: Dict[str, str] = {
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        "gpt-4o": "openai",
        "gpt-4o-mini": "openai",
        "gpt-3.5-turbo": "openai",
    }

    def __init__(self, env: Optional[Dict[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ
        self._catalog: Dict[str, str] = dict(self.MODEL_CATALOG)
        # VOICECHAT_EXTRA_MODELS="openai:gpt-4.1,gemini:gemini-2.0-flash"
        for entry in (self._env.get("VOICECHAT_EXTRA_MODELS") or "").split(","):
            provider, _, model = entry.strip().partition(":")
            if provider in self.PROVIDER_CONFIG and model:
                self._catalog[model.strip()] = provider

    # ------------------------------------------------------------------
    # Provider resolution helpers
    # ------------------------------------------------------------------
    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        api_key_env = cfg.get("api_key_env")
        return bool(api_key_env and self._env.get(api_key_env))

    def credentials(self, provider: str) -> Tuple[Optional[str], str]:
        """Return ``(api_key, base_url)`` for a provider."""

        cfg = self.PROVIDER_CONFIG[provider]
        api_key_env = cfg.get("api_key_env") or ""
        base_url_env = cfg.get("base_url_env") or ""
        base_url = self._env.get(base_url_env) or cfg.get("default_base_url") or ""
        return self._env.get(api_key_env), base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve_model(self, model_id: str) -> ProviderSelection:
        """Return the provider configured for ``model_id``.

        Raises
        ------
        KeyError
            If the model id is not in the catalog.
        """

        provider = self._catalog.get((model_id or "").strip())
        if provider is None:
            raise KeyError(f"Unknown model: {model_id}")
        cfg = self.PROVIDER_CONFIG[provider]
        return ProviderSelection(
            name=provider,
            model=model_id.strip(),
            api_key_env=cfg.get("api_key_env"),
            base_url_env=cfg.get("base_url_env"),
            default_base_url=cfg.get("default_base_url"),
        )

    def known_model(self, model_id: str) -> bool:
        return (model_id or "").strip() in self._catalog

    def catalog(self) -> List[ChatModelOption]:
        out: List[ChatModelOption] = []
        for model, provider in self._catalog.items():
            label = self.PROVIDER_CONFIG[provider].get("label") or provider.capitalize()
            out.append(
                ChatModelOption(
                    provider=provider,
                    model=model,
                    label=f"{label} - {model}",
                    available=self.provider_available(provider),
                )
            )
        return out
