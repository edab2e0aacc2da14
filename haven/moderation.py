"""AI moderation scans for user text and images.

Same prompt → dispatch → parse shape as a chat turn, with a fixed detection
schema instead of a roleplay reply. Scans fail open: blank input, a backend
without structured output, a transport error or unparseable output all
return None, so no alert is raised.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from haven.llm import ChatBackend, ChatRequest, InlineImage, LLMError
from haven.models import Character, ChatMessage, ModerationResult

logger = logging.getLogger(__name__)

TEXT_CATEGORIES = ["underage-themes", "racism", "bullying", "non-consensual-sexual-acts"]
IMAGE_CATEGORIES = ["explicit-nudity", "suggestive-content", "violence", "hate-symbols"]

DEFAULT_MODERATION_MODEL = "gemini-2.5-flash"

TEXT_MODERATION_PROMPT = (
    "You are an AI content moderator. Analyze the following text content from a user. "
    f"Check for violations in these categories: {', '.join(TEXT_CATEGORIES)}. "
    "Respond ONLY with a JSON object with 'isViolation' (boolean), 'category' (string from "
    "the list or null), 'confidence' (number 0-1), 'flaggedText' (the problematic snippet, "
    "or null) and 'explanation' (one sentence on why it was flagged, or null)."
)

IMAGE_MODERATION_PROMPT = (
    "You are an AI content moderator. Analyze the following image. "
    f"Check for violations in these categories: {', '.join(IMAGE_CATEGORIES)}. "
    "Respond ONLY with a JSON object with 'isViolation' (boolean), 'category' (string from "
    "the list or null), 'confidence' (number 0-1) and 'explanation' (one sentence on why "
    "the image was flagged, or null)."
)

MODERATION_SCHEMA = {
    "type": "object",
    "properties": {
        "isViolation": {"type": "boolean"},
        "category": {"type": "string"},
        "confidence": {"type": "number"},
        "flaggedText": {"type": "string"},
        "explanation": {"type": "string"},
    },
    "required": ["isViolation"],
}


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [line for line in lines[1:] if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned.strip()


def parse_moderation_output(text: str) -> ModerationResult | None:
    try:
        data = json.loads(strip_code_fences(text))
        return ModerationResult.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Moderation output is not a valid verdict: %s", e)
        return None


async def _scan(
    backend: ChatBackend,
    *,
    system_instruction: str,
    message: ChatMessage,
    image: InlineImage | None,
    model: str,
    deadline: float | None,
) -> ModerationResult | None:
    if not backend.supports_tools:
        logger.info("Moderation skipped: backend has no structured output")
        return None
    request = ChatRequest(
        model=model,
        system_instruction=system_instruction,
        messages=[message],
        safety="moderation",
        response_schema=MODERATION_SCHEMA,
        image=image,
        deadline=deadline,
    )
    try:
        reply = await backend.complete(request)
    except LLMError as e:
        logger.warning("Moderation scan failed: %s", e)
        return None
    verdict = parse_moderation_output(reply.response_text)
    if verdict is None or not verdict.is_violation:
        return None
    return verdict


async def scan_text(
    text: str,
    backend: ChatBackend,
    *,
    model: str = DEFAULT_MODERATION_MODEL,
    deadline: float | None = None,
) -> ModerationResult | None:
    """The verdict when the text violates policy, else None."""
    if not text.strip():
        return None
    return await _scan(
        backend,
        system_instruction=TEXT_MODERATION_PROMPT,
        message=ChatMessage(sender="user", text=text),
        image=None,
        model=model,
        deadline=deadline,
    )


async def scan_image(
    data: bytes,
    mime_type: str,
    backend: ChatBackend,
    *,
    model: str = DEFAULT_MODERATION_MODEL,
    deadline: float | None = None,
) -> ModerationResult | None:
    """The verdict when the image violates policy, else None."""
    if not data:
        return None
    return await _scan(
        backend,
        system_instruction=IMAGE_MODERATION_PROMPT,
        message=ChatMessage(sender="user", text="Analyze this image."),
        image=InlineImage(data=data, mime_type=mime_type),
        model=model,
        deadline=deadline,
    )


CHARACTER_SCAN_FIELDS = ("name", "description", "personality", "greeting", "story", "situation")


def character_text(character: Character) -> str:
    """The persona text scanned when a character is saved."""
    return " ".join(getattr(character, field) for field in CHARACTER_SCAN_FIELDS).strip()
