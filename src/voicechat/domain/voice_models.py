from __future__ import annotations

from typing import List, Optional, Union
from pydantic import BaseModel, Field


# Ordinal levels may arrive as the slider index or as the label shown in the UI.
LevelValue = Union[int, str]


class VoicePreferences(BaseModel):
    tone_options: List[str] = Field(default_factory=list)
    custom_tones: List[str] = Field(default_factory=list)
    bold_usage: Optional[LevelValue] = None
    line_spacing: Optional[LevelValue] = None
    emoji_usage: Optional[LevelValue] = None
    list_vs_paragraphs: Optional[LevelValue] = None
    markup_style: Optional[LevelValue] = Field(default=None, description="0=plain text .. 5=rich markup")
    moral_tone: Optional[str] = None
    ethical_boundaries: List[str] = Field(default_factory=list)
    preferred_stance: Optional[str] = Field(default=None, description="Challenger/Coach/Collaborator/Curator")
    humor_level: Optional[str] = Field(default=None, description="None/Dry/Occasional/Bold")


class VoiceProfileCreate(VoicePreferences):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    purpose: Optional[str] = None
    structure_preferences: Optional[str] = None
    activate: bool = True


class VoiceProfile(VoicePreferences):
    profile_id: str
    owner: str
    name: str
    description: Optional[str] = None
    purpose: Optional[str] = None
    structure_preferences: Optional[str] = None
    is_active: bool = False
    samples_count: int = 0
    created_at: str
    updated_at: str


class WritingSampleCreate(BaseModel):
    file_name: str = Field(min_length=1)
    content: str = Field(min_length=1)


class WritingSample(BaseModel):
    sample_id: str
    profile_id: str
    file_name: str
    content: str
    created_at: str


class SampleUploadResult(BaseModel):
    sample: WritingSample
    fragments_indexed: int
    fragments_failed: int = 0


class StyleFragment(BaseModel):
    fragment_id: str
    profile_id: str
    sample_id: Optional[str] = None
    text: str
    vector: List[float]
    provider: str
    position: int = 0


class ScoredFragment(BaseModel):
    fragment: StyleFragment
    similarity: float

    @property
    def text(self) -> str:
        return self.fragment.text
