"""Chat service — the caller side of the turn pipeline.

send_message():
  1. Append the user message (and the greeting, on the first turn).
  2. Resolve the connection for the session model (character model by default).
  3. Run a single-shot turn; apply stat changes (clamped) and the narrative
     state; append the bot reply with its stats snapshot.

stream_message() does the same but yields cumulative reply text. A character
with stats on a tool-capable backend still takes the single-shot path,
because a stream carries no structured updates.

Failure handling at this boundary:
  ConfigurationError → its message becomes the reply text.
  LLMError           → "Error responding: ..." / "Error streaming response: ...".

simulate_turn() runs one turn for the admin simulator without touching
stored sessions.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from haven.connections import BackendFactory, backend_for
from haven.llm import ChatBackend, ConfigurationError, LLMError
from haven.models import (
    Character,
    ChatMessage,
    ChatSession,
    Connection,
    NarrativeState,
    PromptOverrides,
    TurnResult,
    User,
)
from haven.pipeline import TurnInput, accumulate, build_request, run_turn, stream_turn
from haven.prompts import substitute_names
from haven.state import AppendMessages, ApplyTurnResult, AppState, stats_snapshot_text

logger = logging.getLogger(__name__)

GREETING_MESSAGE_ID = "greeting-0"


def greeting_message(character: Character, user: User) -> ChatMessage | None:
    if not character.greeting.strip():
        return None
    return ChatMessage(
        id=GREETING_MESSAGE_ID,
        sender="bot",
        text=substitute_names(character.greeting, character.name, user.name),
    )


def history_for_backend(messages: list[ChatMessage]) -> list[ChatMessage]:
    """The greeting is shown to the user but never sent to the model."""
    return [m for m in messages if m.id != GREETING_MESSAGE_ID]


def session_model(character: Character, session: ChatSession) -> str:
    return session.settings.model or character.model


def _resolve_backend(
    state: AppState, model: str, backends: BackendFactory
) -> tuple[Connection, ChatBackend]:
    connection = state.registry().require_model(model)
    return connection, backends(connection)


def _turn_input(
    state: AppState,
    user: User,
    character: Character,
    session: ChatSession,
    deadline: float | None,
) -> TurnInput:
    return TurnInput(
        character=character,
        user=user,
        history=history_for_backend(session.messages),
        model=session_model(character, session),
        settings=state.settings,
        context=state.context,
        kid_mode=session.settings.kid_mode,
        stats=session.stats,
        narrative_state=session.narrative_state,
        deadline=deadline,
    )


def _open_turn(state: AppState, user_id: str, character_id: str, text: str) -> tuple[User, Character]:
    user = state.user(user_id)
    character = state.character(character_id)
    new_messages: list[ChatMessage] = []
    if not state.session(user_id, character_id).messages:
        greeting = greeting_message(character, user)
        if greeting is not None:
            new_messages.append(greeting)
    new_messages.append(ChatMessage(sender="user", text=text))
    state.dispatch(AppendMessages(user_id=user_id, character_id=character_id, messages=new_messages))
    return user, character


def _append_reply(
    state: AppState, user_id: str, character: Character, text: str, *, with_stats: bool = False
) -> ChatMessage:
    snapshot = None
    if with_stats:
        stats = state.session(user_id, character.id).stats
        snapshot = stats_snapshot_text(character, stats) or None
    reply = ChatMessage(sender="bot", text=text, stats_snapshot=snapshot)
    state.dispatch(AppendMessages(user_id=user_id, character_id=character.id, messages=[reply]))
    return reply


async def _single_shot(
    state: AppState,
    user: User,
    character: Character,
    backend: ChatBackend,
    deadline: float | None,
) -> ChatMessage:
    turn = _turn_input(state, user, character, state.session(user.id, character.id), deadline)
    try:
        result = await run_turn(turn, backend)
    except LLMError as e:
        logger.warning("turn failed for %s/%s: %s", user.id, character.id, e)
        return _append_reply(state, user.id, character, f"Error responding: {e}")
    state.dispatch(ApplyTurnResult(user_id=user.id, character_id=character.id, result=result))
    return _append_reply(state, user.id, character, result.response_text, with_stats=True)


async def send_message(
    state: AppState,
    *,
    user_id: str,
    character_id: str,
    text: str,
    backends: BackendFactory = backend_for,
    deadline: float | None = None,
) -> ChatMessage:
    """Run one non-streaming turn and return the bot reply that was appended."""
    user, character = _open_turn(state, user_id, character_id, text)
    session = state.session(user_id, character_id)
    try:
        _, backend = _resolve_backend(state, session_model(character, session), backends)
    except ConfigurationError as e:
        return _append_reply(state, user_id, character, str(e))
    return await _single_shot(state, user, character, backend, deadline)


async def stream_message(
    state: AppState,
    *,
    user_id: str,
    character_id: str,
    text: str,
    backends: BackendFactory = backend_for,
    deadline: float | None = None,
) -> AsyncIterator[str]:
    """Yield the reply's cumulative text; the final text is appended when the stream ends.

    If the consumer stops early, the partial text received so far is kept.
    """
    user, character = _open_turn(state, user_id, character_id, text)
    session = state.session(user_id, character_id)
    try:
        _, backend = _resolve_backend(state, session_model(character, session), backends)
    except ConfigurationError as e:
        _append_reply(state, user_id, character, str(e))
        yield str(e)
        return

    if character.stats and backend.supports_tools:
        reply = await _single_shot(state, user, character, backend, deadline)
        yield reply.text
        return

    turn = _turn_input(state, user, character, session, deadline)
    reply_text = ""
    try:
        async for reply_text in accumulate(stream_turn(turn, backend)):
            yield reply_text
    except LLMError as e:
        logger.warning("stream failed for %s/%s: %s", user_id, character_id, e)
        reply_text = f"Error streaming response: {e}"
        yield reply_text
    finally:
        _append_reply(state, user_id, character, reply_text)


# ---------------------------------------------------------------------------
# Admin simulator
# ---------------------------------------------------------------------------

class SimulationRequest(BaseModel):
    character_id: str
    user_id: str
    user_input: str = "Hello!"
    model: str = ""  # empty → the character's model
    force_full_data: bool = False  # ignore stored summaries
    history: list[ChatMessage] | None = None
    stats: dict[str, float] | None = None
    narrative_state: NarrativeState | None = None
    kid_mode: bool = False
    overrides: PromptOverrides = Field(default_factory=PromptOverrides)


class SimulationResult(BaseModel):
    system_instruction: str
    connection: dict[str, Any]
    result: TurnResult


async def simulate_turn(
    state: AppState,
    request: SimulationRequest,
    *,
    backends: BackendFactory = backend_for,
    deadline: float | None = None,
) -> SimulationResult:
    """One turn with overrides. Raises ConfigurationError / LLMError to the caller."""
    user = state.user(request.user_id)
    character = state.character(request.character_id)
    if request.force_full_data:
        character = character.model_copy(update={"summary": None})

    session = state.session(user.id, character.id)
    model = request.model or character.model
    connection, backend = _resolve_backend(state, model, backends)

    history = request.history
    if history is None:
        history = [ChatMessage(sender="user", text=request.user_input)]

    turn = TurnInput(
        character=character,
        user=user,
        history=history,
        model=model,
        settings=state.settings,
        context=state.context,
        kid_mode=request.kid_mode,
        stats=request.stats if request.stats is not None else character.initial_stats(),
        narrative_state=(
            request.narrative_state if request.narrative_state is not None else session.narrative_state
        ),
        overrides=request.overrides,
        deadline=deadline,
    )
    system_instruction = build_request(turn, tools=backend.supports_tools).system_instruction
    result = await run_turn(turn, backend)
    return SimulationResult(
        system_instruction=system_instruction,
        connection={"name": connection.name, "provider": connection.provider},
        result=result,
    )
