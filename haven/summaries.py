"""Character summarization — shorter persona fields for smaller prompts.

Run once per character through the connection assigned to the
`character_summarization` tool. The result is stored as Character.summary and
preferred over the full fields at prompt assembly time.

Rate limits are the one failure singled out here: providers report them
only in the error text, so LLMErrors mentioning one are re-raised as
RateLimitedError for the caller to back off and retry later.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from haven.llm import ChatBackend, ChatRequest, LLMError, RateLimitedError
from haven.models import Character, CharacterSummary, ChatMessage
from haven.moderation import strip_code_fences

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = ("description", "personality", "story", "situation", "feeling", "appearance", "greeting")

RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit", "too many requests")

SUMMARIZE_PROMPT = (
    "You condense character definitions for a role-play system. For every field you are "
    "given, write a compact version (at most three sentences) that keeps names, facts, "
    "relationships and speaking style. Do not invent details. Respond ONLY with a JSON "
    "object using the same field names; omit fields that were not provided."
)

SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {field: {"type": "string"} for field in SUMMARY_FIELDS},
}


class SummaryError(Exception):
    """The model's output could not be read as a summary."""


def is_rate_limited(error: Exception) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def _source_text(character: Character) -> str:
    lines = [f"name: {character.name}"]
    for field in SUMMARY_FIELDS:
        value = getattr(character, field).strip()
        if value:
            lines.append(f"{field}: {value}")
    return "\n".join(lines)


async def summarize_character(
    character: Character,
    backend: ChatBackend,
    *,
    model: str,
    deadline: float | None = None,
) -> CharacterSummary:
    source = _source_text(character)
    request = ChatRequest(
        model=model,
        system_instruction=SUMMARIZE_PROMPT,
        messages=[ChatMessage(sender="user", text=source)],
        temperature=0.2,
        response_schema=SUMMARY_SCHEMA,
        deadline=deadline,
    )
    logger.debug("summarizing %s source_len=%d", character.id, len(source))
    try:
        reply = await backend.complete(request)
    except LLMError as e:
        if is_rate_limited(e):
            raise RateLimitedError(str(e)) from e
        raise

    try:
        data = json.loads(strip_code_fences(reply.response_text))
        summary = CharacterSummary.model_validate(
            {k: v for k, v in data.items() if k in SUMMARY_FIELDS}
        )
    except (json.JSONDecodeError, AttributeError, ValidationError) as e:
        raise SummaryError(f"Summarizer returned invalid JSON: {e}") from e
    return summary
