"""Generation orchestrator: one streaming turn from user text to persisted reply.

A turn moves through ``idle -> composing -> streaming -> finalizing`` and ends
``completed``, ``cancelled`` or ``failed``. The user message is saved before
any network call. Every exit path funnels into ``_finalize``, which runs once
per session and saves at most one assistant message, so a stop, a disconnect,
a vendor error and a normal end all leave the conversation in the same shape.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..config import GenerationSettings
from ..domain.chat_models import ComposedRequest, GenerationRequest, GenerationResult, Message
from ..domain.voice_models import ScoredFragment, VoiceProfile, WritingSample
from ..infrastructure.chat_store import ChatStore, get_chat_store
from ..infrastructure.style_index import StyleIndex, get_style_index
from ..infrastructure.voice_store import VoiceStore, get_voice_store
from ..observability.metrics import (
    ACTIVE_STREAMS,
    ASSISTANT_MESSAGES_LOST,
    GENERATION_OUTCOMES,
    STREAMED_DELTAS,
)
from .embeddings import Embedder, get_embedder
from .model_router import ModelRouter, ProviderSelection
from .prompt_composer import compose_request
from .providers import EmptyResponseError, ProviderAdapter, StreamIdleTimeout, build_adapter
from .retrieval import retrieve_style_context
from .sessions import SessionRegistry, SessionState, StreamSession
from .streaming import CONTENT, DONE, ERROR, RESET, StreamEvent, content_event

logger = logging.getLogger(__name__)
LOG = logging.getLogger("voicechat.llm")

GENERIC_ERROR_MESSAGE = "I'm having trouble generating a response right now. Please try again."
EMPTY_RESPONSE_FALLBACK = (
    "I wasn't able to generate a response this time. Please try rephrasing your message or try again."
)
TITLE_PROMPT = (
    "Generate a concise, descriptive title (2-6 words) for this conversation based on the user's question "
    "and AI response:\n\nUser: {user}\nAI: {assistant}...\n\nRespond with only the title, no quotes or additional text."
)

AdapterFactory = Callable[[ProviderSelection], ProviderAdapter]

_END = object()
_CANCELLED = object()

# Strong references for turns whose task outlives the request that started them.
_BACKGROUND_TASKS: Set[asyncio.Task] = set()


class GenerationOrchestrator:
    def __init__(
        self,
        chat_store: Optional[ChatStore] = None,
        voice_store: Optional[VoiceStore] = None,
        style_index: Optional[StyleIndex] = None,
        registry: Optional[SessionRegistry] = None,
        router: Optional[ModelRouter] = None,
        settings: Optional[GenerationSettings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        embedder_factory: Callable[[str], Embedder] = get_embedder,
    ) -> None:
        self._chat_store = chat_store or get_chat_store()
        self._voice_store = voice_store or get_voice_store()
        self._style_index = style_index or get_style_index()
        self._registry = registry or SessionRegistry()
        self._router = router or ModelRouter()
        self._settings = settings or GenerationSettings.from_env()
        self._adapter_factory = adapter_factory or (
            lambda selection: build_adapter(selection, self._settings, self._router)
        )
        self._embedder_factory = embedder_factory

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(self, owner: str, req: GenerationRequest) -> StreamSession:
        """Validate, persist the user turn and launch the streaming task.

        Raises ``KeyError`` (missing conversation/profile), ``ValueError``
        (unknown model), ``ConversationBusyError`` or ``ProviderUnavailableError``
        before anything is saved; a failure to save the user message is
        re-raised and nothing is streamed.
        """
        session, adapter, profile = self._open(owner, req)
        session.bind_loop()
        ACTIVE_STREAMS.inc()
        task = asyncio.create_task(self._drive(session, adapter, profile, req.content))
        session.task = task
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(_BACKGROUND_TASKS.discard)
        return session

    async def generate(self, owner: str, req: GenerationRequest) -> GenerationResult:
        """Run a turn to its end and return the final text instead of a stream."""
        session = await self.start(owner, req)
        parts: List[str] = []
        async for event in session.channel.events():
            if event.type == CONTENT:
                parts.append(event.content)
        message = session.assistant_message
        if message is not None:
            text = message.content
        elif session.state == SessionState.FAILED:
            text = GENERIC_ERROR_MESSAGE
        else:
            text = "".join(parts)
        return GenerationResult(
            text=text,
            message_id=message.message_id if message else None,
            user_message_id=session.user_message.message_id if session.user_message else "",
            outcome=session.state.value,
            model=session.model,
        )

    def cancel(self, conversation_id: str) -> bool:
        """Signal the conversation's active stream to stop; no-op if none."""
        stopped = self._registry.cancel(conversation_id)
        if stopped:
            LOG.info("stream_cancel_requested", extra={"conversation_id": conversation_id})
        return stopped

    # ------------------------------------------------------------------
    # Composing
    # ------------------------------------------------------------------
    def _open(self, owner: str, req: GenerationRequest) -> Tuple[StreamSession, ProviderAdapter, Optional[VoiceProfile]]:
        conv = self._chat_store.get_conversation(req.conversation_id)
        if not conv or conv.owner != owner:
            raise KeyError("Conversation not found")
        if not req.content.strip():
            raise ValueError("Message content must not be empty")
        model_id = (req.model or self._settings.default_model).strip()
        try:
            selection = self._router.resolve_model(model_id)
        except KeyError as exc:
            raise ValueError(f"Unknown model: {model_id}") from exc
        profile: Optional[VoiceProfile] = None
        if req.voice_profile_id:
            profile = self._voice_store.get_profile(req.voice_profile_id)
            if not profile or profile.owner != owner:
                raise KeyError("Voice profile not found")
        else:
            profile = self._voice_store.get_active_profile(owner)
        adapter = self._adapter_factory(selection)

        session = StreamSession(
            conversation_id=conv.conversation_id,
            owner=owner,
            model=selection.model,
            provider=selection.name,
            voice_profile_id=profile.profile_id if profile else None,
        )
        self._registry.claim(session)
        try:
            session.user_message = self._chat_store.add_message(
                conv.conversation_id,
                role="user",
                content=req.content,
                correlation_id=req.client_message_id,
            )
        except Exception:
            self._registry.release(session)
            logger.exception("user_message_persist_failed", extra={"conversation_id": conv.conversation_id})
            raise
        session.state = SessionState.COMPOSING
        return session, adapter, profile

    def _history(self, session: StreamSession) -> List[Dict[str, str]]:
        user_id = session.user_message.message_id if session.user_message else None
        return [
            {"role": m.role, "content": m.content}
            for m in self._chat_store.list_messages(session.conversation_id)
            if m.message_id != user_id
        ]

    async def _compose(self, session: StreamSession, profile: Optional[VoiceProfile], user_text: str) -> ComposedRequest:
        fragments: List[ScoredFragment] = []
        samples: List[WritingSample] = []
        if profile is not None:
            fragments = await asyncio.to_thread(
                retrieve_style_context,
                profile.profile_id,
                user_text,
                self._settings.top_k,
                self._style_index,
                self._embedder_factory,
            )
            samples = self._voice_store.list_samples(profile.profile_id)
        return compose_request(profile, fragments, self._history(session), user_text, samples=samples)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def _drive(
        self,
        session: StreamSession,
        adapter: ProviderAdapter,
        profile: Optional[VoiceProfile],
        user_text: str,
    ) -> None:
        outcome = SessionState.FAILED
        use_fallback = False
        try:
            request = await self._compose(session, profile, user_text)
            session.state = SessionState.STREAMING
            outcome = await self._pump(session, adapter, request)
        except EmptyResponseError:
            LOG.info("llm_empty_response", extra={"provider": session.provider, "model": session.model})
            outcome = SessionState.COMPLETED
            use_fallback = True
        except asyncio.CancelledError:
            outcome = SessionState.CANCELLED
            self._finalize(session, outcome)
            raise
        except Exception as exc:
            outcome = SessionState.FAILED
            LOG.warning(
                "llm_stream_aborted",
                extra={
                    "conversation_id": session.conversation_id,
                    "provider": session.provider,
                    "buffered_chars": len(session.text),
                    "err": str(exc),
                },
            )
        finally:
            self._finalize(session, outcome, use_fallback=use_fallback)

        if outcome == SessionState.COMPLETED and not session.used_fallback and self._settings.auto_title:
            await self._maybe_generate_title(session, adapter)

    async def _pump(self, session: StreamSession, adapter: ProviderAdapter, request: ComposedRequest) -> SessionState:
        iterator = adapter.stream(request)
        while True:
            delta = await self._next_delta(session, iterator)
            if delta is _END:
                return SessionState.COMPLETED
            if delta is _CANCELLED:
                return SessionState.CANCELLED
            session.buffer.append(delta)
            session.channel.emit(content_event(delta))
            STREAMED_DELTAS.labels(provider=session.provider).inc()

    async def _next_delta(self, session: StreamSession, iterator: Iterator[str]):
        if session.cancel_requested:
            _close_iterator(iterator)
            return _CANCELLED
        read = asyncio.ensure_future(asyncio.to_thread(next, iterator, _END))
        cancel_wait = asyncio.ensure_future(session.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {read, cancel_wait},
                timeout=self._settings.idle_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
        if read in done:
            return read.result()
        # The read is still blocked in its worker thread; close the vendor
        # stream as soon as that thread hands the generator back.
        read.add_done_callback(lambda _fut: _close_abandoned(_fut, iterator))
        if session.cancel_requested:
            return _CANCELLED
        raise StreamIdleTimeout(f"No data from {session.provider} for {self._settings.idle_timeout}s")

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------
    def _finalize(self, session: StreamSession, outcome: SessionState, use_fallback: bool = False) -> None:
        if not session.claim_finalize():
            return
        session.state = SessionState.FINALIZING
        text = session.text
        if outcome == SessionState.COMPLETED and not text.strip():
            use_fallback = True
        if use_fallback:
            # Blank deltas may already be on screen.
            if text:
                session.channel.emit(StreamEvent(type=RESET))
            text = EMPTY_RESPONSE_FALLBACK
            session.used_fallback = True
            session.buffer = [text]
            session.channel.emit(content_event(text))
        if text.strip():
            session.assistant_message = self._persist_assistant(session, text)
        session.state = outcome
        self._registry.release(session)
        ACTIVE_STREAMS.dec()
        GENERATION_OUTCOMES.labels(provider=session.provider, outcome=outcome.value).inc()

        message_id = session.assistant_message.message_id if session.assistant_message else None
        user_message_id = session.user_message.message_id if session.user_message else None
        if outcome == SessionState.FAILED:
            session.channel.emit(StreamEvent(type=ERROR, error=GENERIC_ERROR_MESSAGE, message_id=message_id))
        else:
            cancelled = outcome == SessionState.CANCELLED
            if cancelled:
                session.channel.emit(StreamEvent(type=RESET))
            session.channel.emit(
                StreamEvent(type=DONE, message_id=message_id, user_message_id=user_message_id, cancelled=cancelled)
            )
        LOG.info(
            "stream_finalized",
            extra={
                "conversation_id": session.conversation_id,
                "session_id": session.session_id,
                "outcome": outcome.value,
                "chars": len(text),
                "message_id": message_id,
            },
        )

    def _persist_assistant(self, session: StreamSession, text: str) -> Optional[Message]:
        for attempt in (1, 2):
            try:
                return self._chat_store.add_message(
                    session.conversation_id,
                    role="assistant",
                    content=text,
                    model=session.model,
                    voice_profile_id=session.voice_profile_id,
                )
            except Exception as exc:
                logger.warning(
                    "assistant_message_persist_failed",
                    extra={"conversation_id": session.conversation_id, "attempt": attempt, "err": str(exc)},
                )
        ASSISTANT_MESSAGES_LOST.inc()
        logger.error(
            "assistant_message_lost",
            extra={"conversation_id": session.conversation_id, "session_id": session.session_id, "chars": len(text)},
        )
        return None

    async def _maybe_generate_title(self, session: StreamSession, adapter: ProviderAdapter) -> None:
        conv = self._chat_store.get_conversation(session.conversation_id)
        if conv is None or conv.title:
            return
        messages = self._chat_store.list_messages(session.conversation_id)
        if len(messages) < 2:
            return
        first_user = next((m for m in messages if m.role == "user"), None)
        if first_user is None:
            return
        prompt = TITLE_PROMPT.format(user=first_user.content, assistant=session.text[:200])
        request = ComposedRequest(
            system_instruction="You write short, descriptive conversation titles.",
            messages=[{"role": "user", "content": prompt}],
        )
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(lambda: "".join(adapter.stream(request))),
                timeout=self._settings.idle_timeout,
            )
        except Exception as exc:
            logger.warning("title_generation_failed", extra={"conversation_id": session.conversation_id, "err": str(exc)})
            return
        title = raw.replace('"', "").replace("'", "").strip()[:60]
        if title:
            self._chat_store.update_title(session.conversation_id, title)
            logger.info("conversation_titled", extra={"conversation_id": session.conversation_id, "title": title})


def _close_iterator(iterator: Iterator[str]) -> None:
    close = getattr(iterator, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as exc:
        LOG.debug("llm_stream_close_failed", extra={"err": str(exc)})


def _close_abandoned(fut: "asyncio.Future", iterator: Iterator[str]) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        LOG.debug("abandoned_read_failed", extra={"err": str(fut.exception())})
    _close_iterator(iterator)


_orchestrator: GenerationOrchestrator | None = None


def get_orchestrator() -> GenerationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GenerationOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[GenerationOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator
