from __future__ import annotations

"""Runtime settings for the generation pipeline.

Env vars:
- VOICECHAT_DEFAULT_MODEL (default gemini-2.5-flash)
- VOICECHAT_STREAM_IDLE_TIMEOUT seconds without a delta before a stream fails (default 60)
- VOICECHAT_CHUNK_SIZE / VOICECHAT_CHUNK_OVERLAP (default 1000 / 200)
- VOICECHAT_TOP_K fragments retrieved per turn (default 3)
- VOICECHAT_EMBEDDING_PROVIDER openai|gemini (default openai)
- VOICECHAT_TEMPERATURE / VOICECHAT_MAX_OUTPUT_TOKENS
- VOICECHAT_AUTO_TITLE 1|0 (default 1)
"""

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class GenerationSettings:
    default_model: str = "gemini-2.5-flash"
    idle_timeout: float = 60.0
    chunk_size: int = 1000
    chunk_overlap: int = 200
    top_k: int = 3
    embedding_provider: str = "openai"
    temperature: float = 0.7
    max_output_tokens: int = 1500
    auto_title: bool = True

    @staticmethod
    def from_env() -> "GenerationSettings":
        return GenerationSettings(
            default_model=os.getenv("VOICECHAT_DEFAULT_MODEL", "gemini-2.5-flash"),
            idle_timeout=float(os.getenv("VOICECHAT_STREAM_IDLE_TIMEOUT", "60")),
            chunk_size=int(os.getenv("VOICECHAT_CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("VOICECHAT_CHUNK_OVERLAP", "200")),
            top_k=int(os.getenv("VOICECHAT_TOP_K", "3")),
            embedding_provider=(os.getenv("VOICECHAT_EMBEDDING_PROVIDER") or "openai").strip().lower(),
            temperature=float(os.getenv("VOICECHAT_TEMPERATURE", "0.7")),
            max_output_tokens=int(os.getenv("VOICECHAT_MAX_OUTPUT_TOKENS", "1500")),
            auto_title=_env_flag("VOICECHAT_AUTO_TITLE", "1"),
        )
