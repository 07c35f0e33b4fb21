from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ...domain.voice_models import (
    SampleUploadResult,
    VoiceProfile,
    VoiceProfileCreate,
    WritingSample,
    WritingSampleCreate,
)
from ...infrastructure.voice_store import get_voice_store
from ...security.auth import User, get_current_user
from ...services import ingest

router = APIRouter(prefix="/voice-profiles", tags=["voice-profiles"])


def _owned_profile(profile_id: str, user: User) -> VoiceProfile:
    profile = get_voice_store().get_profile(profile_id)
    if not profile or profile.owner != user.id:
        raise HTTPException(status_code=404, detail="Voice profile not found")
    return profile


@router.post("", response_model=VoiceProfile, status_code=status.HTTP_201_CREATED)
def create_profile(req: VoiceProfileCreate, user: User = Depends(get_current_user)) -> VoiceProfile:
    return get_voice_store().create_profile(user.id, req)


@router.get("", response_model=List[VoiceProfile])
def list_profiles(user: User = Depends(get_current_user)) -> List[VoiceProfile]:
    return get_voice_store().list_profiles(user.id)


@router.get("/{profile_id}", response_model=VoiceProfile)
def get_profile(profile_id: str, user: User = Depends(get_current_user)) -> VoiceProfile:
    return _owned_profile(profile_id, user)


@router.delete("/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile(profile_id: str, user: User = Depends(get_current_user)) -> None:
    _owned_profile(profile_id, user)
    try:
        ingest.delete_profile(profile_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Voice profile not found")


@router.post("/{profile_id}/activate", response_model=VoiceProfile)
def activate_profile(profile_id: str, user: User = Depends(get_current_user)) -> VoiceProfile:
    try:
        return get_voice_store().set_active(user.id, profile_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Voice profile not found")


@router.get("/{profile_id}/samples", response_model=List[WritingSample])
def list_samples(profile_id: str, user: User = Depends(get_current_user)) -> List[WritingSample]:
    _owned_profile(profile_id, user)
    return get_voice_store().list_samples(profile_id)


@router.post("/{profile_id}/samples", response_model=SampleUploadResult, status_code=status.HTTP_201_CREATED)
def upload_sample(
    profile_id: str,
    req: WritingSampleCreate,
    user: User = Depends(get_current_user),
) -> SampleUploadResult:
    _owned_profile(profile_id, user)
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="Sample content is empty")
    return ingest.upload_sample(profile_id, req.file_name, req.content)


@router.delete("/{profile_id}/samples/{sample_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_sample(profile_id: str, sample_id: str, user: User = Depends(get_current_user)) -> None:
    _owned_profile(profile_id, user)
    sample = get_voice_store().get_sample(sample_id)
    if not sample or sample.profile_id != profile_id:
        raise HTTPException(status_code=404, detail="Writing sample not found")
    ingest.delete_sample(sample_id)
