"""Chat endpoints — one conversation per (X-User-Id, character)."""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError

from haven.chat import (
    GREETING_MESSAGE_ID,
    greeting_message,
    send_message,
    session_model,
    stream_message,
)
from haven.llm import ConfigurationError, LLMError
from haven.media import SPEECH_MEDIA_TYPE, text_to_speech
from haven.models import ChatSession, User
from haven.state import ResetChat, TruncateHistory, UpdateChatSettings

from .deps import app_state, backends, current_user, deadline, save
from .models import ChatBody, RewindBody, SpeechBody

router = APIRouter()


def _require_character(request: Request, character_id: str) -> None:
    if character_id not in app_state(request).characters:
        raise HTTPException(404, "Character not found")


def _view(request: Request, user: User, character_id: str) -> ChatSession:
    """The session as shown to the user: an untouched chat shows the greeting."""
    state = app_state(request)
    session = state.session(user.id, character_id)
    if session.messages:
        return session
    greeting = greeting_message(state.character(character_id), user)
    if greeting is None:
        return session
    return session.model_copy(update={"messages": [greeting]})


async def _deltas(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Turn cumulative text into the new suffix of each chunk."""
    sent = ""
    async for text in chunks:
        if text.startswith(sent):
            delta = text[len(sent):]
        else:
            delta = f"\n{text}"
        sent = text
        if delta:
            yield delta


@router.get("/chats/{character_id}")
async def get_chat(request: Request, character_id: str, user: User = Depends(current_user)):
    """Messages, stats, narrative state and settings for this chat."""
    _require_character(request, character_id)
    return _view(request, user, character_id)


@router.post("/chats/{character_id}/messages")
async def post_message(
    request: Request, character_id: str, body: ChatBody, user: User = Depends(current_user)
):
    """Send a message and wait for the full reply."""
    _require_character(request, character_id)
    reply = await send_message(
        app_state(request),
        user_id=user.id,
        character_id=character_id,
        text=body.message,
        backends=backends(request),
        deadline=deadline(request),
    )
    save(request)
    return {"reply": reply, "session": app_state(request).session(user.id, character_id)}


@router.post("/chats/{character_id}/stream")
async def stream_chat(
    request: Request, character_id: str, body: ChatBody, user: User = Depends(current_user)
):
    """Send a message and stream the reply as plain text."""
    _require_character(request, character_id)
    chunks = stream_message(
        app_state(request),
        user_id=user.id,
        character_id=character_id,
        text=body.message,
        backends=backends(request),
        deadline=deadline(request),
    )

    async def body_iter() -> AsyncIterator[str]:
        try:
            async for delta in _deltas(chunks):
                yield delta
        finally:
            await chunks.aclose()
            save(request)

    return StreamingResponse(body_iter(), media_type="text/plain; charset=utf-8")


@router.patch("/chats/{character_id}/settings")
async def update_chat_settings(
    request: Request, character_id: str, body: dict, user: User = Depends(current_user)
):
    """Change the model, streaming, kid mode or speech voice for this chat."""
    _require_character(request, character_id)
    state = app_state(request)
    try:
        state.dispatch(UpdateChatSettings(user_id=user.id, character_id=character_id, fields=body))
    except ValidationError as e:
        raise HTTPException(422, str(e)) from None
    save(request)
    return state.session(user.id, character_id).settings


@router.post("/chats/{character_id}/rewind")
async def rewind_chat(
    request: Request, character_id: str, body: RewindBody, user: User = Depends(current_user)
):
    """Drop every message after the given one (or from it, when inclusive)."""
    _require_character(request, character_id)
    if body.message_id == GREETING_MESSAGE_ID and body.inclusive:
        raise HTTPException(400, "The greeting cannot be removed")
    state = app_state(request)
    try:
        state.dispatch(
            TruncateHistory(
                user_id=user.id,
                character_id=character_id,
                message_id=body.message_id,
                inclusive=body.inclusive,
            )
        )
    except KeyError:
        raise HTTPException(404, "Message not found") from None
    save(request)
    return _view(request, user, character_id)


@router.delete("/chats/{character_id}")
async def reset_chat(request: Request, character_id: str, user: User = Depends(current_user)):
    """Start over: messages, stats and narrative state are discarded."""
    _require_character(request, character_id)
    app_state(request).dispatch(ResetChat(user_id=user.id, character_id=character_id))
    save(request)
    return _view(request, user, character_id)


@router.post("/chats/{character_id}/speech")
async def speak(
    request: Request, character_id: str, body: SpeechBody, user: User = Depends(current_user)
):
    """Read a message aloud. Returns raw 24 kHz 16-bit mono PCM."""
    _require_character(request, character_id)
    state = app_state(request)
    character = state.character(character_id)
    session = state.session(user.id, character_id)
    try:
        connection = state.registry().require_model(session_model(character, session))
        audio = await text_to_speech(
            body.text,
            backends(request)(connection),
            voice=body.voice or session.settings.tts_voice,
            deadline=deadline(request),
        )
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from None
    except LLMError as e:
        raise HTTPException(502, str(e)) from None
    if not audio:
        raise HTTPException(502, "No audio data returned")
    return Response(content=audio, media_type=SPEECH_MEDIA_TYPE)
