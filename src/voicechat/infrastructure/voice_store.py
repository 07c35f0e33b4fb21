from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import uuid

from ..domain.voice_models import VoiceProfile, VoiceProfileCreate, WritingSample


class VoiceStore(Protocol):
    def create_profile(self, owner: str, data: VoiceProfileCreate) -> VoiceProfile: ...

    def get_profile(self, profile_id: str) -> Optional[VoiceProfile]: ...

    def list_profiles(self, owner: str) -> List[VoiceProfile]: ...

    def get_active_profile(self, owner: str) -> Optional[VoiceProfile]: ...

    def set_active(self, owner: str, profile_id: str) -> VoiceProfile: ...

    def delete_profile(self, profile_id: str) -> None: ...

    def add_sample(self, profile_id: str, file_name: str, content: str) -> WritingSample: ...

    def get_sample(self, sample_id: str) -> Optional[WritingSample]: ...

    def list_samples(self, profile_id: str) -> List[WritingSample]: ...

    def delete_sample(self, sample_id: str) -> None: ...


class InMemoryVoiceStore:
    """Voice profiles and their writing samples.

    Activation is a single transaction under the store lock: every profile of
    the owner is deactivated and the chosen one activated, so readers never
    observe zero or two active profiles in between.
    """

    def __init__(self) -> None:
        self._profiles: Dict[str, Dict[str, Any]] = {}
        self._samples: Dict[str, WritingSample] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _model(self, record: Dict[str, Any]) -> VoiceProfile:
        return VoiceProfile(**record)

    def create_profile(self, owner: str, data: VoiceProfileCreate) -> VoiceProfile:
        payload = data.model_dump(exclude={"activate"})
        with self._lock:
            now = self._now_iso()
            pid = uuid.uuid4().hex
            self._profiles[pid] = {
                **payload,
                "profile_id": pid,
                "owner": owner,
                "is_active": False,
                "samples_count": 0,
                "created_at": now,
                "updated_at": now,
            }
            if data.activate:
                return self.set_active(owner, pid)
            return self._model(self._profiles[pid])

    def get_profile(self, profile_id: str) -> Optional[VoiceProfile]:
        with self._lock:
            record = self._profiles.get(profile_id)
            return self._model(record) if record else None

    def list_profiles(self, owner: str) -> List[VoiceProfile]:
        with self._lock:
            return [self._model(r) for r in self._profiles.values() if r["owner"] == owner]

    def get_active_profile(self, owner: str) -> Optional[VoiceProfile]:
        with self._lock:
            for record in self._profiles.values():
                if record["owner"] == owner and record["is_active"]:
                    return self._model(record)
            return None

    def set_active(self, owner: str, profile_id: str) -> VoiceProfile:
        with self._lock:
            target = self._profiles.get(profile_id)
            if not target or target["owner"] != owner:
                raise KeyError("Voice profile not found")
            now = self._now_iso()
            for record in self._profiles.values():
                if record["owner"] != owner:
                    continue
                active = record["profile_id"] == profile_id
                if record["is_active"] != active:
                    record["is_active"] = active
                    record["updated_at"] = now
            return self._model(target)

    def delete_profile(self, profile_id: str) -> None:
        with self._lock:
            if self._profiles.pop(profile_id, None) is None:
                raise KeyError("Voice profile not found")
            for sid in [s.sample_id for s in self._samples.values() if s.profile_id == profile_id]:
                del self._samples[sid]

    def add_sample(self, profile_id: str, file_name: str, content: str) -> WritingSample:
        with self._lock:
            record = self._profiles.get(profile_id)
            if not record:
                raise KeyError("Voice profile not found")
            sample = WritingSample(
                sample_id=uuid.uuid4().hex,
                profile_id=profile_id,
                file_name=file_name,
                content=content,
                created_at=self._now_iso(),
            )
            self._samples[sample.sample_id] = sample
            record["samples_count"] += 1
            record["updated_at"] = sample.created_at
            return sample

    def get_sample(self, sample_id: str) -> Optional[WritingSample]:
        with self._lock:
            return self._samples.get(sample_id)

    def list_samples(self, profile_id: str) -> List[WritingSample]:
        with self._lock:
            return [s for s in self._samples.values() if s.profile_id == profile_id]

    def delete_sample(self, sample_id: str) -> None:
        with self._lock:
            sample = self._samples.pop(sample_id, None)
            if sample is None:
                raise KeyError("Writing sample not found")
            record = self._profiles.get(sample.profile_id)
            if record:
                record["samples_count"] = max(0, record["samples_count"] - 1)
                record["updated_at"] = self._now_iso()


_store: VoiceStore | None = None


def get_voice_store() -> VoiceStore:
    global _store
    if _store is None:
        _store = InMemoryVoiceStore()
    return _store


def reset_voice_store() -> None:
    global _store
    _store = None
