from __future__ import annotations

"""Order what a chat view shows while a reply streams in.

Each turn is keyed by the client correlation id sent with the user message:

    optimistic -> sent -> streaming -> resolved | cancelled | failed

The view is always: persisted messages, then optimistic user bubbles not yet
persisted, then the typing text of the turn in flight. Once a turn reaches a
terminal state its typing text is cleared and never shown again.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..domain.chat_models import Message
from ..services.streaming import CONTENT, DONE, ERROR, RESET, StreamEvent
from .consumer import TypingBuffer


class TurnState(str, Enum):
    OPTIMISTIC = "optimistic"
    SENT = "sent"
    STREAMING = "streaming"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    FAILED = "failed"


_IN_FLIGHT = (TurnState.SENT, TurnState.STREAMING)
_TERMINAL = (TurnState.RESOLVED, TurnState.CANCELLED, TurnState.FAILED)


@dataclass
class Turn:
    correlation_id: str
    content: str
    state: TurnState = TurnState.OPTIMISTIC
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    typing_clears: int = 0


@dataclass(frozen=True)
class ViewItem:
    kind: str  # "message" | "optimistic" | "typing"
    role: str
    content: str
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None


class ConversationReconciler:
    def __init__(self, conversation_id: str, typing: Optional[TypingBuffer] = None) -> None:
        self.conversation_id = conversation_id
        self.typing = typing or TypingBuffer(conversation_id)
        self._turns: Dict[str, Turn] = {}
        self._order: List[str] = []
        self._persisted: List[Message] = []

    def turn(self, correlation_id: str) -> Turn:
        return self._turns[correlation_id]

    def submit(self, content: str, correlation_id: Optional[str] = None) -> Turn:
        """Show the user's bubble immediately, before any request goes out."""
        cid = correlation_id or uuid.uuid4().hex
        if cid in self._turns:
            raise ValueError(f"Turn {cid} already submitted")
        turn = Turn(correlation_id=cid, content=content)
        self._turns[cid] = turn
        self._order.append(cid)
        return turn

    def mark_sent(self, correlation_id: str) -> Turn:
        turn = self._turns[correlation_id]
        if turn.state == TurnState.OPTIMISTIC:
            turn.state = TurnState.SENT
        return turn

    def mark_failed(self, correlation_id: str) -> Turn:
        """The request itself was rejected; no stream will arrive."""
        turn = self._turns[correlation_id]
        if turn.state not in _TERMINAL:
            self._terminate(turn, TurnState.FAILED)
        return turn

    def mark_cancelled(self, correlation_id: str) -> Turn:
        """The user stopped the turn locally and stopped reading its stream."""
        turn = self._turns[correlation_id]
        if turn.state not in _TERMINAL:
            self._terminate(turn, TurnState.CANCELLED)
        return turn

    def listener(self, correlation_id: str) -> Callable[[StreamEvent], None]:
        return lambda event: self.on_event(correlation_id, event)

    def on_event(self, correlation_id: str, event: StreamEvent) -> None:
        turn = self._turns[correlation_id]
        if turn.state in _TERMINAL:
            return
        if event.type == CONTENT:
            turn.state = TurnState.STREAMING
        elif event.type == RESET:
            self.typing.clear()
        elif event.type == DONE:
            turn.user_message_id = event.user_message_id or turn.user_message_id
            turn.assistant_message_id = event.message_id
            self._terminate(turn, TurnState.CANCELLED if event.cancelled else TurnState.RESOLVED)
        elif event.type == ERROR:
            turn.assistant_message_id = event.message_id
            self._terminate(turn, TurnState.FAILED)

    def _terminate(self, turn: Turn, state: TurnState) -> None:
        turn.state = state
        self.typing.clear()
        turn.typing_clears += 1

    def apply_persisted(self, messages: Sequence[Union[Message, Mapping[str, Any]]]) -> None:
        """Replace the persisted list with a fresh fetch of the conversation."""
        self._persisted = [m if isinstance(m, Message) else Message(**dict(m)) for m in messages]
        for m in self._persisted:
            if m.role == "user" and m.correlation_id in self._turns:
                self._turns[m.correlation_id].user_message_id = m.message_id

    def _persisted_correlations(self) -> set:
        return {m.correlation_id for m in self._persisted if m.role == "user" and m.correlation_id}

    def view(self) -> List[ViewItem]:
        items = [
            ViewItem(kind="message", role=m.role, content=m.content, message_id=m.message_id, correlation_id=m.correlation_id)
            for m in self._persisted
        ]
        persisted = self._persisted_correlations()
        for cid in self._order:
            turn = self._turns[cid]
            if cid in persisted:
                continue
            items.append(ViewItem(kind="optimistic", role="user", content=turn.content, correlation_id=cid))
        active = self._active_turn()
        if active is not None and self.typing.visible:
            items.append(ViewItem(kind="typing", role="assistant", content=self.typing.text, correlation_id=active.correlation_id))
        return items

    def _active_turn(self) -> Optional[Turn]:
        for cid in reversed(self._order):
            turn = self._turns[cid]
            if turn.state in _IN_FLIGHT:
                return turn
        return None
