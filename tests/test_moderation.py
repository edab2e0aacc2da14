"""Tests for AI moderation scans. Scans fail open: anything short of a clear
violation verdict returns None."""

import json

from haven.llm import ChatRequest, LLMError
from haven.models import Character, TurnResult
from haven.moderation import (
    MODERATION_SCHEMA,
    character_text,
    parse_moderation_output,
    scan_image,
    scan_text,
    strip_code_fences,
)


class FakeBackend:
    def __init__(self, text="", supports_tools=True, error=None):
        self.supports_tools = supports_tools
        self.text = text
        self.error = error
        self.requests: list[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> TurnResult:
        self.requests.append(request)
        if self.error:
            raise self.error
        return TurnResult(response_text=self.text)

    async def stream(self, request):
        raise AssertionError("moderation never streams")
        yield


VIOLATION = json.dumps({
    "isViolation": True,
    "category": "bullying",
    "confidence": 0.92,
    "flaggedText": "you are worthless",
    "explanation": "Targeted insult.",
})


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


def test_parse_invalid_output():
    assert parse_moderation_output("not json") is None
    assert parse_moderation_output('{"category": "x"}') is None


async def test_violation_returned():
    backend = FakeBackend(text=f"```json\n{VIOLATION}\n```")
    result = await scan_text("you are worthless", backend, model="mod-model")
    assert result.is_violation is True
    assert result.category == "bullying"
    assert result.confidence == 0.92
    assert result.flagged_text == "you are worthless"

    request = backend.requests[0]
    assert request.model == "mod-model"
    assert request.safety == "moderation"
    assert request.response_schema == MODERATION_SCHEMA
    assert request.messages[0].text == "you are worthless"
    assert "bullying" in request.system_instruction


async def test_clean_text_returns_none():
    backend = FakeBackend(text=json.dumps({"isViolation": False}))
    assert await scan_text("hello there", backend) is None


async def test_blank_text_makes_no_call():
    backend = FakeBackend(text=VIOLATION)
    assert await scan_text("   ", backend) is None
    assert backend.requests == []


async def test_plain_backend_skipped():
    backend = FakeBackend(text=VIOLATION, supports_tools=False)
    assert await scan_text("you are worthless", backend) is None
    assert backend.requests == []


async def test_malformed_output_fails_open():
    backend = FakeBackend(text="I think this is fine!")
    assert await scan_text("hello", backend) is None


async def test_transport_error_fails_open():
    backend = FakeBackend(error=LLMError("Cannot connect to Gemini"))
    assert await scan_text("hello", backend) is None


async def test_image_scan_attaches_image():
    backend = FakeBackend(text=json.dumps({"isViolation": True, "category": "violence", "confidence": 0.7}))
    result = await scan_image(b"\x89PNG", "image/png", backend)
    assert result.category == "violence"
    request = backend.requests[0]
    assert request.image.mime_type == "image/png"
    assert "hate-symbols" in request.system_instruction


async def test_empty_image_makes_no_call():
    backend = FakeBackend(text=VIOLATION)
    assert await scan_image(b"", "image/png", backend) is None
    assert backend.requests == []


def test_character_text_joins_persona_fields():
    character = Character(
        name="Mira", description="Keeper.", personality="Wry.", greeting="Hello.",
        story="Old tales.", situation="Storm night.", appearance="Tall.",
    )
    text = character_text(character)
    assert text == "Mira Keeper. Wry. Hello. Old tales. Storm night."
    assert "Tall." not in text
