from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import uuid

from ..domain.chat_models import Conversation, Message


class ChatStore(Protocol):
    def create_conversation(self, owner: str, title: Optional[str] = None) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def list_conversations(self, owner: str) -> List[Conversation]: ...

    def update_title(self, conversation_id: str, title: str) -> Conversation: ...

    def delete_conversation(self, conversation_id: str) -> None: ...

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        voice_profile_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Message: ...

    def list_messages(self, conversation_id: str) -> List[Message]: ...


@dataclass
class _Conversation:
    conversation_id: str
    owner: str
    title: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class _Message:
    message_id: str
    conversation_id: str
    role: str
    content: str
    created_at: str
    model: Optional[str] = None
    voice_profile_id: Optional[str] = None
    correlation_id: Optional[str] = None


class InMemoryChatStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, _Conversation] = {}
        self._by_owner: Dict[str, List[str]] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _conversation_model(self, conv: _Conversation) -> Conversation:
        return Conversation(**conv.__dict__)

    def _message_model(self, message: _Message) -> Message:
        return Message(**message.__dict__)

    def create_conversation(self, owner: str, title: Optional[str] = None) -> Conversation:
        with self._lock:
            cid = uuid.uuid4().hex
            now = self._now_iso()
            conv = _Conversation(
                conversation_id=cid,
                owner=owner,
                title=(title or "").strip() or None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[cid] = conv
            self._by_owner.setdefault(owner, []).append(cid)
            self._messages[cid] = []
            return self._conversation_model(conv)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if not conv:
                return None
            return self._conversation_model(conv)

    def list_conversations(self, owner: str) -> List[Conversation]:
        with self._lock:
            out: List[Conversation] = []
            for cid in self._by_owner.get(owner, []):
                conv = self._conversations.get(cid)
                if not conv:
                    continue
                out.append(self._conversation_model(conv))
            # Newest first
            return sorted(out, key=lambda c: c.updated_at, reverse=True)

    def update_title(self, conversation_id: str, title: str) -> Conversation:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if not conv:
                raise KeyError("Conversation not found")
            conv.title = title
            conv.updated_at = self._now_iso()
            return self._conversation_model(conv)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            conv = self._conversations.pop(conversation_id, None)
            if not conv:
                raise KeyError("Conversation not found")
            owned = self._by_owner.get(conv.owner, [])
            if conversation_id in owned:
                owned.remove(conversation_id)
            self._messages.pop(conversation_id, None)

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        voice_profile_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Message:
        if not content or not content.strip():
            raise ValueError("Message content must not be empty")
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError("Conversation not found")
            now = self._now_iso()
            msg = _Message(
                message_id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=now,
                model=model,
                voice_profile_id=voice_profile_id,
                correlation_id=correlation_id,
            )
            # Append order is the conversation's total order.
            self._messages.setdefault(conversation_id, []).append(msg)
            self._conversations[conversation_id].updated_at = now
            return self._message_model(msg)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return [self._message_model(m) for m in self._messages.get(conversation_id, [])]


_store: ChatStore | None = None


def get_chat_store() -> ChatStore:
    global _store
    if _store is None:
        _store = InMemoryChatStore()
    return _store


def reset_chat_store() -> None:
    global _store
    _store = None
