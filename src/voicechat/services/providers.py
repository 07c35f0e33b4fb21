from __future__ import annotations

import json
import logging
import os
import time
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..config import GenerationSettings
from ..domain.chat_models import ComposedRequest
from .http_session import build_http_session
from .model_router import ModelRouter, ProviderSelection

# Optional import: langchain-openai
try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)
LOG = logging.getLogger("voicechat.llm")


class ProviderError(RuntimeError):
    """A provider failed while opening or reading a stream."""


class ProviderUnavailableError(ProviderError):
    """The provider for a model cannot be used (missing client or credentials)."""


class EmptyResponseError(ProviderError):
    """The provider finished without producing any text."""


class StreamIdleTimeout(ProviderError):
    """No delta arrived within the idle window."""


_BREAKER_THRESHOLD = int(os.getenv("VOICECHAT_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("VOICECHAT_LLM_BREAKER_COOLDOWN", "60.0"))
_BREAKER_STATE: Dict[str, Dict[str, float]] = {}
_BREAKER_LOCK = Lock()
_STREAM_TIMEOUT = (
    int(os.getenv("VOICECHAT_LLM_CONNECT_TIMEOUT", "5")),
    int(os.getenv("VOICECHAT_LLM_READ_TIMEOUT", "60")),
)


def _breaker_open(provider: str) -> bool:
    with _BREAKER_LOCK:
        state = _BREAKER_STATE.get(provider)
        if not state or state["opened_at"] == 0.0:
            return False
        if time.time() - state["opened_at"] < _BREAKER_COOLDOWN:
            return True
        state["fails"] = 0
        state["opened_at"] = 0.0
        return False


def _record_fail(provider: str) -> None:
    with _BREAKER_LOCK:
        state = _BREAKER_STATE.setdefault(provider, {"fails": 0, "opened_at": 0.0})
        state["fails"] += 1
        if state["fails"] >= _BREAKER_THRESHOLD and state["opened_at"] == 0.0:
            state["opened_at"] = time.time()
            LOG.warning(
                "llm_breaker_opened",
                extra={"provider": provider, "fails": state["fails"], "cooldown_s": _BREAKER_COOLDOWN},
            )


def _record_success(provider: str) -> None:
    with _BREAKER_LOCK:
        state = _BREAKER_STATE.get(provider)
        if state and (state["fails"] or state["opened_at"]):
            LOG.info("llm_breaker_closed", extra={"provider": provider})
        _BREAKER_STATE.pop(provider, None)


class ProviderAdapter(Protocol):
    name: str
    model: str

    def stream(self, request: ComposedRequest) -> Iterator[str]: ...


class StreamingAdapter:
    """Shared contract for vendor adapters.

    ``stream`` yields non-empty text deltas and raises ``EmptyResponseError``
    when the vendor ends the stream without any non-blank text. Vendor failures are
    re-raised as ``ProviderError`` and counted by the per-provider breaker.
    """

    name = "base"

    def __init__(self, model: str) -> None:
        self.model = model

    def _iter_deltas(self, request: ComposedRequest) -> Iterator[str]:
        raise NotImplementedError

    def stream(self, request: ComposedRequest) -> Iterator[str]:
        if _breaker_open(self.name):
            LOG.info("llm_skipped_due_to_breaker", extra={"provider": self.name})
            raise ProviderError("llm_circuit_open")
        produced = False
        deltas = self._iter_deltas(request)
        try:
            for delta in deltas:
                if not delta:
                    continue
                if delta.strip():
                    produced = True
                yield delta
        except ProviderError:
            _record_fail(self.name)
            raise
        except Exception as exc:
            _record_fail(self.name)
            LOG.warning("llm_stream_failed", extra={"provider": self.name, "model": self.model, "err": str(exc)})
            raise ProviderError(f"{self.name} stream failed") from exc
        finally:
            # Releases the vendor connection when the consumer stops early.
            close = getattr(deltas, "close", None)
            if close is not None:
                close()
        _record_success(self.name)
        if not produced:
            raise EmptyResponseError(f"{self.name} returned an empty response")


class OpenAIChatAdapter(StreamingAdapter):
    """Chat completions through ``ChatOpenAI``; chunks arrive as raw text."""

    name = "openai"

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str,
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> None:
        super().__init__(model)
        if not ChatOpenAI:
            raise ProviderUnavailableError("LLM client not available")
        self._client = ChatOpenAI(
            api_key=api_key,
            base_url=base_url,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=_STREAM_TIMEOUT[1],
        )

    @staticmethod
    def to_messages(request: ComposedRequest) -> List[Dict[str, str]]:
        msgs = [{"role": "system", "content": request.system_instruction}]
        msgs.extend({"role": m["role"], "content": m["content"]} for m in request.messages)
        return msgs

    def _iter_deltas(self, request: ComposedRequest) -> Iterator[str]:
        LOG.debug("openai_stream", extra={"model": self.model})
        for chunk in self._client.stream(self.to_messages(request)):
            content = getattr(chunk, "content", "")
            if isinstance(content, str) and content:
                yield content


class GeminiAdapter(StreamingAdapter):
    """``streamGenerateContent`` over SSE; each ``data:`` line carries one JSON event."""

    name = "gemini"

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str,
        temperature: float = 0.7,
        max_output_tokens: int = 1500,
        session: Any = None,
    ) -> None:
        super().__init__(model)
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._timeout = _STREAM_TIMEOUT
        self._session = session or build_http_session()

    def build_payload(self, request: ComposedRequest) -> Dict[str, Any]:
        system_parts = [request.system_instruction]
        contents: List[Dict[str, Any]] = []
        for m in request.messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
                continue
            role = "model" if m["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": m["content"]}]})
        return {
            "systemInstruction": {"parts": [{"text": "\n\n".join(system_parts)}]},
            "contents": contents,
            "generationConfig": {
                "temperature": self._temperature,
                "maxOutputTokens": self._max_output_tokens,
            },
        }

    @staticmethod
    def parse_event(data: str) -> str:
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            return ""
        if not isinstance(parsed, dict):
            raise ProviderError("Unexpected gemini stream event")
        if parsed.get("error"):
            err = parsed["error"]
            detail = err.get("message") if isinstance(err, dict) else str(err)
            raise ProviderError(f"gemini stream error: {detail}")
        candidates = parsed.get("candidates") or []
        if not candidates:
            return ""
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(p.get("text") or "" for p in parts if isinstance(p, dict))

    def _iter_deltas(self, request: ComposedRequest) -> Iterator[str]:
        LOG.debug("gemini_stream", extra={"model": self.model, "base_url": self.base_url})
        with self._session.post(
            f"{self.base_url}/models/{self.model}:streamGenerateContent",
            params={"alt": "sse"},
            headers={"x-goog-api-key": self._api_key},
            json=self.build_payload(request),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data:"):
                    continue
                token = self.parse_event(line[5:].strip())
                if token:
                    yield token


def build_adapter(
    selection: ProviderSelection,
    settings: Optional[GenerationSettings] = None,
    router: Optional[ModelRouter] = None,
) -> ProviderAdapter:
    settings = settings or GenerationSettings.from_env()
    api_key, base_url = (router or ModelRouter()).credentials(selection.name)
    if not api_key:
        raise ProviderUnavailableError(f"{selection.name} is not configured")
    logger.info("Using LLM provider name=%s model=%s base_url=%s", selection.name, selection.model, base_url)
    if selection.name == "openai":
        return OpenAIChatAdapter(
            selection.model,
            api_key=api_key,
            base_url=base_url,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        )
    if selection.name == "gemini":
        return GeminiAdapter(
            selection.model,
            api_key=api_key,
            base_url=base_url,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
        )
    raise ProviderUnavailableError(f"No adapter for provider {selection.name}")
