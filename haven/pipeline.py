"""Chat turn pipeline — prompt, dispatch, resolve.

Turn flow:
  1. Assemble the system instruction (haven.prompts).
  2. Trim the history to the last `history_length` messages.
  3. Dispatch to the backend:
       run_turn    → single-shot complete(); tool-capable backends receive
                     the update_stats / update_narrative_state functions.
       stream_turn → text fragments, no structured output.
  4. Resolve into TurnResult {response_text, stat_changes, new_narrative_state}.

Applying a result to stored stats and narrative state is the caller's job
(haven.state.ApplyTurnResult).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from haven.llm import ChatBackend, ChatRequest, SafetyProfile, trim_history
from haven.models import (
    AIContextSettings,
    Character,
    ChatMessage,
    GlobalSettings,
    PromptOverrides,
    TurnResult,
    User,
)
from haven.prompts import build_system_instruction

logger = logging.getLogger(__name__)


class TurnInput(BaseModel):
    """Everything that determines one turn's request."""

    character: Character
    user: User
    history: list[ChatMessage]
    model: str
    settings: GlobalSettings = Field(default_factory=GlobalSettings)
    context: AIContextSettings = Field(default_factory=AIContextSettings)
    kid_mode: bool = False
    stats: dict[str, float] | None = None
    narrative_state: Any = None
    included_fields: list[str] | None = None
    overrides: PromptOverrides | None = None
    deadline: float | None = None


def safety_for(character: Character) -> SafetyProfile:
    return "permissive" if character.mode == "unrestricted" else "conservative"


def build_request(turn: TurnInput, *, tools: bool) -> ChatRequest:
    system_instruction = build_system_instruction(
        turn.character,
        turn.user,
        turn.settings,
        turn.context,
        kid_mode=turn.kid_mode,
        stats=turn.stats,
        narrative_state=turn.narrative_state,
        included_fields=turn.included_fields,
        overrides=turn.overrides,
    )
    return ChatRequest(
        model=turn.model,
        system_instruction=system_instruction,
        messages=trim_history(turn.history, turn.context.history_length),
        max_output_tokens=turn.context.max_output_tokens,
        temperature=turn.context.temperature,
        safety=safety_for(turn.character),
        tools=tools,
        deadline=turn.deadline,
    )


async def run_turn(turn: TurnInput, backend: ChatBackend) -> TurnResult:
    """Single-shot turn. Only tool-capable backends can report stat or narrative changes."""
    request = build_request(turn, tools=backend.supports_tools)
    logger.debug(
        "turn character=%s model=%s history=%d prompt_len=%d",
        turn.character.id, turn.model, len(request.messages), len(request.system_instruction),
    )
    result = await backend.complete(request)
    if not backend.supports_tools:
        return TurnResult(response_text=result.response_text)
    logger.debug(
        "turn resolved stat_changes=%d narrative=%s",
        len(result.stat_changes), result.new_narrative_state is not None,
    )
    return result


async def stream_turn(turn: TurnInput, backend: ChatBackend) -> AsyncIterator[str]:
    """Streamed turn: raw text fragments in arrival order."""
    request = build_request(turn, tools=False)
    logger.debug(
        "stream character=%s model=%s history=%d", turn.character.id, turn.model, len(request.messages)
    )
    async for fragment in backend.stream(request):
        yield fragment


async def accumulate(fragments: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the cumulative text after every fragment: "Hel", "Hello", ..."""
    text = ""
    async for fragment in fragments:
        text += fragment
        yield text


async def resolve_stream(fragments: AsyncIterable[str]) -> TurnResult:
    """Drain a stream into a TurnResult. Streams never carry structured updates."""
    parts = [fragment async for fragment in fragments]
    return TurnResult(response_text="".join(parts))
