from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..domain.chat_models import Message
from .streaming import StreamChannel


class SessionState(str, Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


class ConversationBusyError(RuntimeError):
    """Another generation is already writing into this conversation."""


@dataclass
class StreamSession:
    """Ephemeral state of one in-flight generation."""

    conversation_id: str
    owner: str
    model: str
    provider: str
    voice_profile_id: Optional[str] = None
    user_message: Optional[Message] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    buffer: List[str] = field(default_factory=list)
    channel: StreamChannel = field(default_factory=StreamChannel)
    assistant_message: Optional[Message] = None
    used_fallback: bool = False
    task: Optional[asyncio.Task] = None
    _cancel_flag: threading.Event = field(default_factory=threading.Event)
    _wake: Optional[asyncio.Event] = None
    _loop: Optional[asyncio.AbstractEventLoop] = None
    _finalized: bool = False

    def bind_loop(self) -> None:
        """Attach the session to the running loop that drives it."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        if self._cancel_flag.is_set():
            self._wake.set()

    @property
    def text(self) -> str:
        return "".join(self.buffer)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_flag.is_set()

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def request_cancel(self) -> bool:
        """Ask the driving task to stop; safe to call from any thread."""
        if self.finished or self._cancel_flag.is_set():
            return False
        self._cancel_flag.set()
        loop, wake = self._loop, self._wake
        if loop is not None and wake is not None and not loop.is_closed():
            loop.call_soon_threadsafe(wake.set)
        return True

    async def wait_cancelled(self) -> None:
        if self._wake is None:
            raise RuntimeError("Session is not bound to an event loop")
        await self._wake.wait()

    def claim_finalize(self) -> bool:
        """True exactly once: the caller owns the finalize step."""
        if self._finalized:
            return False
        self._finalized = True
        return True


class SessionRegistry:
    """Tracks which conversations are currently streaming.

    The per-conversation flag is claimed and released under one lock so two
    generations can never interleave messages in the same conversation.
    """

    def __init__(self) -> None:
        self._by_conversation: Dict[str, StreamSession] = {}
        self._lock = threading.Lock()

    def claim(self, session: StreamSession) -> None:
        with self._lock:
            if session.conversation_id in self._by_conversation:
                raise ConversationBusyError("A response is already streaming in this conversation")
            self._by_conversation[session.conversation_id] = session

    def release(self, session: StreamSession) -> None:
        with self._lock:
            if self._by_conversation.get(session.conversation_id) is session:
                del self._by_conversation[session.conversation_id]

    def get(self, conversation_id: str) -> Optional[StreamSession]:
        with self._lock:
            return self._by_conversation.get(conversation_id)

    def is_streaming(self, conversation_id: str) -> bool:
        return self.get(conversation_id) is not None

    def cancel(self, conversation_id: str) -> bool:
        session = self.get(conversation_id)
        if session is None:
            return False
        return session.request_cancel()

    def active_count(self) -> int:
        with self._lock:
            return len(self._by_conversation)
