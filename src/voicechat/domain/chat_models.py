from __future__ import annotations

from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field


class ConversationCreate(BaseModel):
    title: Optional[str] = None


class Conversation(BaseModel):
    conversation_id: str
    owner: str
    title: Optional[str] = None
    created_at: str
    updated_at: str


Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    message_id: str
    conversation_id: str
    role: Role
    content: str
    model: Optional[str] = None
    voice_profile_id: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: str


class ConversationWithMessages(BaseModel):
    conversation: Conversation
    messages: List[Message]


class GenerationRequest(BaseModel):
    conversation_id: str
    content: str = Field(min_length=1)
    model: Optional[str] = None
    voice_profile_id: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, description="Client correlation id echoed on the user message")


Outcome = Literal["completed", "cancelled", "failed"]


class GenerationResult(BaseModel):
    text: str
    message_id: Optional[str] = None
    user_message_id: str
    outcome: Outcome
    model: str


class ComposedRequest(BaseModel):
    system_instruction: str
    messages: List[Dict[str, str]]


class ChatModelOption(BaseModel):
    provider: str
    model: str
    label: str
    available: bool


class StopResult(BaseModel):
    stopped: bool
