from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from ..config import GenerationSettings
from ..domain.voice_models import SampleUploadResult, StyleFragment
from ..infrastructure.style_index import StyleIndex, get_style_index
from ..infrastructure.voice_store import VoiceStore, get_voice_store
from .chunker import chunk_text
from .embeddings import Embedder, embed_batch, get_embedder

logger = logging.getLogger(__name__)


def upload_sample(
    profile_id: str,
    file_name: str,
    content: str,
    settings: Optional[GenerationSettings] = None,
    store: Optional[VoiceStore] = None,
    index: Optional[StyleIndex] = None,
    embedder_factory: Callable[[str], Embedder] = get_embedder,
) -> SampleUploadResult:
    """Persist a writing sample, then chunk, embed and index it.

    The sample is saved first; fragments that fail to embed are skipped and
    reported in ``fragments_failed``. A profile that already has fragments
    keeps its embedding provider so every vector in its index stays
    comparable.
    """
    settings = settings or GenerationSettings.from_env()
    store = store or get_voice_store()
    index = index or get_style_index()

    sample = store.add_sample(profile_id, file_name, content)
    chunks = chunk_text(content, settings.chunk_size, settings.chunk_overlap)
    if not chunks:
        return SampleUploadResult(sample=sample, fragments_indexed=0)

    provider = index.provider_for(profile_id) or settings.embedding_provider
    try:
        embedder = embedder_factory(provider)
    except Exception as exc:
        logger.error(
            "sample_indexing_skipped_no_embedder",
            extra={"profile_id": profile_id, "provider": provider, "err": str(exc)},
        )
        return SampleUploadResult(sample=sample, fragments_indexed=0, fragments_failed=len(chunks))

    embedded = embed_batch(embedder, chunks)
    offset = index.count(profile_id)
    fragments = [
        StyleFragment(
            fragment_id=uuid.uuid4().hex,
            profile_id=profile_id,
            sample_id=sample.sample_id,
            text=text,
            vector=vector,
            provider=embedder.name,
            position=offset + pos,
        )
        for pos, (text, vector) in enumerate(embedded)
    ]
    index.extend(fragments)
    logger.info(
        "sample_indexed",
        extra={
            "profile_id": profile_id,
            "sample_id": sample.sample_id,
            "chunks": len(chunks),
            "indexed": len(fragments),
        },
    )
    return SampleUploadResult(
        sample=sample,
        fragments_indexed=len(fragments),
        fragments_failed=len(chunks) - len(fragments),
    )


def delete_sample(sample_id: str, store: Optional[VoiceStore] = None, index: Optional[StyleIndex] = None) -> int:
    """Delete a sample and its fragments; returns the number of fragments removed."""
    store = store or get_voice_store()
    index = index or get_style_index()
    store.delete_sample(sample_id)
    return index.delete_sample(sample_id)


def delete_profile(profile_id: str, store: Optional[VoiceStore] = None, index: Optional[StyleIndex] = None) -> None:
    store = store or get_voice_store()
    index = index or get_style_index()
    store.delete_profile(profile_id)
    index.delete_profile(profile_id)
