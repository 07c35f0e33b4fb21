from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from ...domain.chat_models import (
    ChatModelOption,
    Conversation,
    ConversationCreate,
    ConversationWithMessages,
    GenerationRequest,
    GenerationResult,
    Message,
    StopResult,
)
from ...infrastructure.chat_store import get_chat_store
from ...security.auth import User, get_current_user
from ...services.model_router import ModelRouter
from ...services.orchestrator import get_orchestrator
from ...services.providers import ProviderUnavailableError
from ...services.sessions import ConversationBusyError, StreamSession
from ...services.streaming import SSE_HEADERS, encode_sse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _owned_conversation(conversation_id: str, user: User) -> Conversation:
    conv = get_chat_store().get_conversation(conversation_id)
    if not conv or conv.owner != user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


async def _run(action, req: GenerationRequest, user: User):
    """Await an orchestrator entry point, mapping input errors to HTTP codes."""
    try:
        return await action(user.id, req)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e).strip("'"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception:
        raise HTTPException(status_code=500, detail="Failed to save your message. Please try again.")


@router.get("/models", response_model=List[ChatModelOption])
def list_models(user: User = Depends(get_current_user)) -> List[ChatModelOption]:
    return ModelRouter().catalog()


@router.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
def create_conversation(req: ConversationCreate, user: User = Depends(get_current_user)) -> Conversation:
    return get_chat_store().create_conversation(user.id, title=req.title)


@router.get("/conversations", response_model=List[Conversation])
def list_conversations(user: User = Depends(get_current_user)) -> List[Conversation]:
    return get_chat_store().list_conversations(user.id)


@router.get("/conversations/{conversation_id}", response_model=ConversationWithMessages)
def get_conversation(conversation_id: str, user: User = Depends(get_current_user)) -> ConversationWithMessages:
    conv = _owned_conversation(conversation_id, user)
    return ConversationWithMessages(conversation=conv, messages=get_chat_store().list_messages(conversation_id))


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(conversation_id: str, user: User = Depends(get_current_user)) -> None:
    _owned_conversation(conversation_id, user)
    get_orchestrator().cancel(conversation_id)
    try:
        get_chat_store().delete_conversation(conversation_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
def list_messages(conversation_id: str, user: User = Depends(get_current_user)) -> List[Message]:
    _owned_conversation(conversation_id, user)
    return get_chat_store().list_messages(conversation_id)


@router.post("/conversations/{conversation_id}/stop", response_model=StopResult)
def stop_generation(conversation_id: str, user: User = Depends(get_current_user)) -> StopResult:
    _owned_conversation(conversation_id, user)
    return StopResult(stopped=get_orchestrator().cancel(conversation_id))


@router.post("/stream", response_class=StreamingResponse)
async def stream_reply(req: GenerationRequest, user: User = Depends(get_current_user)):
    session: StreamSession = await _run(get_orchestrator().start, req, user)

    async def event_stream():
        try:
            async for event in session.channel.events():
                yield encode_sse(event)
        finally:
            # Client went away mid-stream: finalize as a stop.
            if not session.finished and session.request_cancel():
                logger.info("stream_client_disconnected", extra={"conversation_id": session.conversation_id})

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/generate", response_model=GenerationResult)
async def generate_reply(req: GenerationRequest, user: User = Depends(get_current_user)) -> GenerationResult:
    return await _run(get_orchestrator().generate, req, user)
