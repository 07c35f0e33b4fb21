from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..domain.voice_models import ScoredFragment
from ..infrastructure.style_index import EmbeddingMismatchError, StyleIndex, get_style_index
from .embeddings import Embedder, get_embedder

logger = logging.getLogger(__name__)

EmbedderFactory = Callable[[str], Embedder]


def retrieve_style_context(
    profile_id: str,
    query_text: str,
    k: int = 3,
    index: Optional[StyleIndex] = None,
    embedder_factory: EmbedderFactory = get_embedder,
) -> List[ScoredFragment]:
    """Return the ``k`` fragments of a profile closest to ``query_text``.

    The query is embedded with the provider the profile was indexed with.
    A profile without fragments, or a query that cannot be embedded or whose
    vector does not fit the stored index, yields no context.
    """
    index = index or get_style_index()
    provider = index.provider_for(profile_id)
    if provider is None or not (query_text or "").strip():
        return []
    try:
        embedder = embedder_factory(provider)
        query_vector = embedder.embed(query_text)
    except Exception as exc:
        logger.warning(
            "style_query_embedding_failed",
            extra={"profile_id": profile_id, "provider": provider, "err": str(exc)},
        )
        return []
    try:
        return index.top_k(profile_id, query_vector, k=k)
    except EmbeddingMismatchError as exc:
        logger.warning(
            "style_query_embedding_failed",
            extra={"profile_id": profile_id, "provider": provider, "err": str(exc)},
        )
        return []


def build_voice_context(fragments: List[ScoredFragment]) -> str:
    ordered = sorted(fragments, key=lambda s: s.similarity, reverse=True)
    return "\n\n---\n\n".join(f"[Similarity: {s.similarity:.3f}]\n{s.fragment.text}" for s in ordered)
