from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional, Tuple

from ..domain.voice_models import ScoredFragment, StyleFragment
from ..services.embeddings import cosine_similarity


class EmbeddingMismatchError(ValueError):
    """Raised when a fragment's vector cannot be compared with its profile's index."""


class StyleIndex:
    """Append-mostly store of style fragments, queried by cosine similarity.

    Each profile's fragments live in an immutable tuple. Writers build a new
    tuple under the lock and swap it in; readers grab the current tuple
    without locking, so an upload never blocks retrieval.

    All fragments of a profile share one embedding provider and one vector
    length; ``append`` enforces this.
    """

    def __init__(self) -> None:
        self._fragments: Dict[str, Tuple[StyleFragment, ...]] = {}
        self._write_lock = Lock()

    def provider_for(self, profile_id: str) -> Optional[str]:
        current = self._fragments.get(profile_id, ())
        return current[0].provider if current else None

    def dimension_for(self, profile_id: str) -> Optional[int]:
        current = self._fragments.get(profile_id, ())
        return len(current[0].vector) if current else None

    def append(self, fragment: StyleFragment) -> None:
        self.extend([fragment])

    def extend(self, fragments: List[StyleFragment]) -> None:
        if not fragments:
            return
        with self._write_lock:
            staged: Dict[str, List[StyleFragment]] = {}
            for frag in fragments:
                existing = staged.get(frag.profile_id)
                if existing is None:
                    existing = list(self._fragments.get(frag.profile_id, ()))
                    staged[frag.profile_id] = existing
                if existing:
                    head = existing[0]
                    if head.provider != frag.provider:
                        raise EmbeddingMismatchError(
                            f"Profile {frag.profile_id} is indexed with {head.provider}, not {frag.provider}"
                        )
                    if len(head.vector) != len(frag.vector):
                        raise EmbeddingMismatchError(
                            f"Profile {frag.profile_id} expects {len(head.vector)}-d vectors, got {len(frag.vector)}"
                        )
                existing.append(frag)
            for profile_id, items in staged.items():
                self._fragments[profile_id] = tuple(items)

    def fragments(self, profile_id: str) -> List[StyleFragment]:
        return list(self._fragments.get(profile_id, ()))

    def count(self, profile_id: str) -> int:
        return len(self._fragments.get(profile_id, ()))

    def top_k(self, profile_id: str, query_vector: List[float], k: int = 3) -> List[ScoredFragment]:
        """Return at most ``k`` fragments by descending similarity.

        Equal scores keep insertion order (``sorted`` is stable).
        """
        if k <= 0:
            return []
        snapshot = self._fragments.get(profile_id, ())
        if not snapshot:
            return []
        if len(query_vector) != len(snapshot[0].vector):
            raise EmbeddingMismatchError(
                f"Query has {len(query_vector)} dimensions, index has {len(snapshot[0].vector)}"
            )
        scored = [ScoredFragment(fragment=f, similarity=cosine_similarity(query_vector, f.vector)) for f in snapshot]
        scored.sort(key=lambda s: s.similarity, reverse=True)
        return scored[:k]

    def delete_profile(self, profile_id: str) -> int:
        with self._write_lock:
            removed = self._fragments.pop(profile_id, ())
            return len(removed)

    def delete_sample(self, sample_id: str) -> int:
        with self._write_lock:
            removed = 0
            for profile_id, items in list(self._fragments.items()):
                kept = tuple(f for f in items if f.sample_id != sample_id)
                if len(kept) == len(items):
                    continue
                removed += len(items) - len(kept)
                if kept:
                    self._fragments[profile_id] = kept
                else:
                    del self._fragments[profile_id]
            return removed


_index: StyleIndex | None = None


def get_style_index() -> StyleIndex:
    global _index
    if _index is None:
        _index = StyleIndex()
    return _index


def reset_style_index() -> None:
    global _index
    _index = None
