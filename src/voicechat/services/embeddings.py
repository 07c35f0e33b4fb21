from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ..observability.metrics import EMBEDDING_FAILURES
from .http_session import build_http_session
from .model_router import ModelRouter

# Optional import: langchain-openai
try:
    from langchain_openai import OpenAIEmbeddings  # type: ignore
except Exception:  # pragma: no cover - optional import
    OpenAIEmbeddings = None  # type: ignore


logger = logging.getLogger(__name__)

OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
GEMINI_EMBEDDING_MODEL = "text-embedding-004"


class Embedder(Protocol):
    name: str

    def embed(self, text: str) -> List[float]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either has zero norm."""
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class OpenAIEmbedder:
    name = "openai"

    def __init__(self, router: Optional[ModelRouter] = None, model: str = OPENAI_EMBEDDING_MODEL) -> None:
        if OpenAIEmbeddings is None:
            raise RuntimeError("langchain-openai is not installed")
        api_key, base_url = (router or ModelRouter()).credentials("openai")
        if not api_key:
            raise RuntimeError("OpenAI embeddings not configured")
        self.model = model
        self._client = OpenAIEmbeddings(api_key=api_key, base_url=base_url, model=model)

    def embed(self, text: str) -> List[float]:
        return list(self._client.embed_query(text))


class GeminiEmbedder:
    name = "gemini"

    def __init__(self, router: Optional[ModelRouter] = None, model: str = GEMINI_EMBEDDING_MODEL, timeout: float = 20.0) -> None:
        api_key, base_url = (router or ModelRouter()).credentials("gemini")
        if not api_key:
            raise RuntimeError("Gemini embeddings not configured")
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = (3, timeout)
        self._session = build_http_session()

    def embed(self, text: str) -> List[float]:
        resp = self._session.post(
            f"{self._base_url}/models/{self.model}:embedContent",
            headers={"x-goog-api-key": self._api_key},
            json={"model": f"models/{self.model}", "content": {"parts": [{"text": text}]}},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        values = ((resp.json() or {}).get("embedding") or {}).get("values") or []
        if not values:
            raise RuntimeError("Gemini returned an empty embedding")
        return [float(v) for v in values]


_EMBEDDERS: Dict[str, Embedder] = {}


def get_embedder(name: str) -> Embedder:
    """Return a cached embedder for ``openai`` or ``gemini``."""
    key = (name or "").strip().lower()
    cached = _EMBEDDERS.get(key)
    if cached is not None:
        return cached
    if key == "openai":
        embedder: Embedder = OpenAIEmbedder()
    elif key == "gemini":
        embedder = GeminiEmbedder()
    else:
        raise KeyError(f"Unknown embedding provider: {name}")
    _EMBEDDERS[key] = embedder
    return embedder


def embed_batch(embedder: Embedder, texts: Sequence[str]) -> List[Tuple[str, List[float]]]:
    """Embed every text, skipping the ones that fail.

    Returns ``(text, vector)`` pairs for the successes only, in input order.
    """
    out: List[Tuple[str, List[float]]] = []
    for text in texts:
        try:
            vector = embedder.embed(text)
        except Exception as exc:
            EMBEDDING_FAILURES.labels(provider=embedder.name).inc()
            logger.warning(
                "embedding_failed_skipping_fragment",
                extra={"provider": embedder.name, "preview": text[:50], "err": str(exc)},
            )
            continue
        out.append((text, vector))
    return out
