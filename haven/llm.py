"""Model backends — provider dispatch for one chat turn.

Every backend matches the ChatBackend protocol:

    supports_tools: bool
    supports_speech: bool
    supports_images: bool
    def stream(self, request: ChatRequest) -> AsyncIterator[str]: ...
    async def complete(self, request: ChatRequest) -> TurnResult: ...

`supports_tools` is the main capability tag. Structured-tool-capable backends
honour `request.tools` and report stat / narrative updates through function
calls; plain-stream-only backends ignore it and always resolve to an empty
change list and no narrative update.

`supports_speech` and `supports_images` mark backends that also offer
`synthesize_speech()` and `generate_image()`.

Three implementations are provided:

    GeminiBackend              google-genai client. Function calling, safety
                               settings, text streaming, speech and Imagen.
                               Tool capable.
    OpenAICompatibleBackend    POST {base_url}/chat/completions over httpx,
                               SSE streaming, images. Plain stream only.
    EchoBackend                echoes the last user message. No network calls.

Production code picks one from a Connection with
haven.connections.backend_for(). Tests inject fakes or an httpx MockTransport.

Deadlines: `request.deadline` (seconds) bounds a single-shot call as a whole
and every pull of a stream against the time left. Abandoning a stream
(aclose() or task cancellation) closes the underlying HTTP response.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Iterator
from contextlib import aclosing, contextmanager
from typing import Any, Literal, Protocol, TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, Field, ValidationError

from haven.models import ChatMessage, StatChange, TurnResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

SafetyProfile = Literal["permissive", "conservative", "moderation"]

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class InlineImage(BaseModel):
    data: bytes
    mime_type: str


class ChatRequest(BaseModel):
    """Everything a backend needs for one call. Built by the pipeline."""

    model: str
    system_instruction: str
    messages: list[ChatMessage] = Field(default_factory=list)  # already trimmed
    max_output_tokens: int = 2048
    temperature: float = 0.8
    safety: SafetyProfile = "conservative"
    tools: bool = False
    response_schema: dict[str, Any] | None = None  # JSON mode when set
    image: InlineImage | None = None  # attached to the last user turn
    deadline: float | None = None  # seconds


def trim_history(messages: list[ChatMessage], history_length: int) -> list[ChatMessage]:
    """The last `history_length` messages, oldest first."""
    if history_length <= 0:
        return []
    return list(messages[-history_length:])


# ---------------------------------------------------------------------------
# Protocol: every backend must match this shape
# ---------------------------------------------------------------------------

class ChatBackend(Protocol):
    supports_tools: bool
    supports_speech: bool
    supports_images: bool

    def stream(self, request: ChatRequest) -> AsyncIterator[str]: ...

    async def complete(self, request: ChatRequest) -> TurnResult: ...


# ---------------------------------------------------------------------------
# Deadline helpers
# ---------------------------------------------------------------------------

def _deadline_at(seconds: float | None) -> float | None:
    if seconds is None:
        return None
    return asyncio.get_running_loop().time() + seconds


async def _bounded(aw: Awaitable[T], deadline_at: float | None) -> T:
    if deadline_at is None:
        return await aw
    remaining = deadline_at - asyncio.get_running_loop().time()
    return await asyncio.wait_for(aw, timeout=max(remaining, 0.0))


async def _pull(iterable: AsyncIterable[T], deadline_at: float | None) -> AsyncIterator[T]:
    """Re-yield `iterable`, bounding every pull by the time left."""
    iterator = aiter(iterable)
    while True:
        try:
            item = await _bounded(anext(iterator), deadline_at)
        except StopAsyncIteration:
            return
        yield item


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"


async def iter_sse_fragments(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield `choices[0].delta.content` from chat-completion SSE lines.

    Stops at `data: [DONE]`. Lines without the data prefix, empty deltas and
    malformed payloads are skipped; one bad line never aborts the stream.
    """
    async for line in lines:
        if not line.startswith(SSE_PREFIX):
            continue
        payload = line[len(SSE_PREFIX):].strip()
        if payload == SSE_DONE:
            return
        try:
            content = json.loads(payload)["choices"][0]["delta"].get("content")
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("skipping malformed stream payload: %r", payload)
            continue
        if content:
            yield content


# ---------------------------------------------------------------------------
# OpenAICompatibleBackend: generic chat completions over HTTP
# ---------------------------------------------------------------------------

class OpenAICompatibleBackend:
    """Async HTTP client for OpenAI-compatible chat-completion backends.

    POST {base_url}/chat/completions
      {"model", "messages", "stream", "max_tokens", "temperature"}
    Streaming responses are SSE lines; single-shot responses carry
    choices[0].message.content.

    POST {base_url}/images/generations
      {"model", "prompt", "n": 1, "size", "response_format": "b64_json"}

    Args:
        base_url:  Base URL, e.g. "https://api.openai.com/v1".
        api_key:   Bearer token, or empty string if not required.
        timeout:   httpx timeout in seconds. Defaults to 120.
        transport: Optional httpx transport (tests use MockTransport).
    """

    supports_tools = False
    supports_speech = False
    supports_images = True

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    @property
    def images_url(self) -> str:
        return f"{self._base_url}/images/generations"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @contextmanager
    def _transport_errors(self) -> Iterator[None]:
        """Map every httpx failure to LLMError. Timeouts are TransportErrors too, so they go first."""
        try:
            yield
        except (httpx.TimeoutException, TimeoutError) as e:
            raise LLMError(f"LLM backend timed out at {self._base_url}") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.TransportError as e:
            raise LLMError(f"Network error talking to LLM backend at {self._base_url}: {e}") from e

    def build_body(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        messages = [{"role": "system", "content": request.system_instruction}]
        for msg in request.messages:
            role = "user" if msg.sender == "user" else "assistant"
            messages.append({"role": role, "content": msg.text})
        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": stream,
            "max_tokens": request.max_output_tokens,
            "temperature": request.temperature,
        }
        if request.response_schema is not None:
            body["response_format"] = {"type": "json_object"}
        if request.tools:
            logger.debug("tools requested on a plain-stream backend; ignored")
        return body

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        body = self.build_body(request, stream=True)
        logger.debug(
            "chat stream url=%s model=%s messages=%d", self.url, request.model, len(body["messages"])
        )
        deadline_at = _deadline_at(request.deadline)
        with self._transport_errors():
            async with self._client() as client:
                async with client.stream("POST", self.url, json=body, headers=self._headers()) as resp:
                    if not resp.is_success:
                        await resp.aread()
                        raise LLMError(f"API error: {resp.status_code} {resp.text}")
                    fragments = iter_sse_fragments(_pull(resp.aiter_lines(), deadline_at))
                    async with aclosing(fragments):
                        async for fragment in fragments:
                            yield fragment

    async def complete(self, request: ChatRequest) -> TurnResult:
        body = self.build_body(request, stream=False)
        logger.debug("chat complete url=%s model=%s", self.url, request.model)
        with self._transport_errors():
            async with self._client() as client:
                resp = await _bounded(
                    client.post(self.url, json=body, headers=self._headers()),
                    _deadline_at(request.deadline),
                )

        if not resp.is_success:
            raise LLMError(f"API error: {resp.status_code} {resp.text}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected response format from chat-completion backend") from e
        return TurnResult(response_text=content or "")

    async def generate_image(
        self, prompt: str, *, model: str, deadline: float | None = None
    ) -> bytes | None:
        body = {
            "model": model,
            "prompt": prompt,
            "n": 1,
            "size": "1024x1792",
            "response_format": "b64_json",
        }
        logger.debug("image generation url=%s model=%s", self.images_url, model)
        with self._transport_errors():
            async with self._client() as client:
                resp = await _bounded(
                    client.post(self.images_url, json=body, headers=self._headers()),
                    _deadline_at(deadline),
                )

        if not resp.is_success:
            raise LLMError(f"Image generation API error: {resp.status_code} {resp.text}")
        try:
            encoded = (resp.json().get("data") or [{}])[0].get("b64_json")
        except (ValueError, AttributeError) as e:
            raise LLMError("Unexpected response format from image generation backend") from e
        return base64.b64decode(encoded) if encoded else None


# ---------------------------------------------------------------------------
# GeminiBackend: native function calling
# ---------------------------------------------------------------------------

UPDATE_STATS = "update_stats"
UPDATE_NARRATIVE_STATE = "update_narrative_state"

_UPDATE_STATS_DECL = types.FunctionDeclaration(
    name=UPDATE_STATS,
    description=(
        "Report changes to the character's hidden stats caused by the user's last message. "
        "Only include stats that actually change."
    ),
    parameters_json_schema={
        "type": "object",
        "properties": {
            "updates": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "statId": {"type": "string", "description": "The stat id."},
                        "valueChange": {"type": "number", "description": "Signed change."},
                        "reason": {"type": "string", "description": "Short justification."},
                    },
                    "required": ["statId", "valueChange"],
                },
            },
        },
        "required": ["updates"],
    },
)

_UPDATE_NARRATIVE_DECL = types.FunctionDeclaration(
    name=UPDATE_NARRATIVE_STATE,
    description=(
        "Replace the narrative state with a new JSON object. The object you send replaces "
        "the previous one entirely, so include everything worth remembering."
    ),
    parameters_json_schema={
        "type": "object",
        "properties": {
            "newState": {"type": "object", "additionalProperties": True},
        },
        "required": ["newState"],
    },
)

TURN_TOOLS = [types.Tool(function_declarations=[_UPDATE_STATS_DECL, _UPDATE_NARRATIVE_DECL])]

_HARM_CATEGORIES = [
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
]

_SAFETY_THRESHOLDS: dict[str, types.HarmBlockThreshold] = {
    "permissive": types.HarmBlockThreshold.BLOCK_NONE,
    "conservative": types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    "moderation": types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
}


def safety_settings(profile: SafetyProfile) -> list[types.SafetySetting]:
    threshold = _SAFETY_THRESHOLDS[profile]
    return [types.SafetySetting(category=c, threshold=threshold) for c in _HARM_CATEGORIES]


def build_contents(request: ChatRequest) -> list[types.Content]:
    contents = [
        types.Content(
            role="user" if msg.sender == "user" else "model",
            parts=[types.Part(text=msg.text)],
        )
        for msg in request.messages
    ]
    if request.image is not None:
        image_part = types.Part.from_bytes(data=request.image.data, mime_type=request.image.mime_type)
        if contents and contents[-1].role == "user":
            contents[-1].parts.append(image_part)
        else:
            contents.append(types.Content(role="user", parts=[image_part]))
    return contents


def build_config(request: ChatRequest, *, with_tools: bool) -> types.GenerateContentConfig:
    kwargs: dict[str, Any] = {
        "system_instruction": request.system_instruction,
        "safety_settings": safety_settings(request.safety),
        "temperature": request.temperature,
        "max_output_tokens": request.max_output_tokens,
    }
    if with_tools and request.tools:
        kwargs["tools"] = TURN_TOOLS
    if request.response_schema is not None:
        kwargs["response_mime_type"] = "application/json"
        kwargs["response_json_schema"] = request.response_schema
    return types.GenerateContentConfig(**kwargs)


def _block_reason(response: Any) -> str | None:
    feedback = getattr(response, "prompt_feedback", None)
    reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if reason is None:
        return None
    return getattr(reason, "name", None) or str(reason)


def resolve_gemini_response(response: Any) -> TurnResult:
    """Collect text and function calls from a generate_content response.

    Every update_stats call contributes its updates, in call order. Only the
    last update_narrative_state call counts.
    """
    text_parts: list[str] = []
    changes: list[StatChange] = []
    new_state: dict[str, Any] | None = None
    saw_call = False

    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    for part in (getattr(content, "parts", None) or []):
        call = getattr(part, "function_call", None)
        if call is not None:
            saw_call = True
            args = dict(call.args or {})
            if call.name == UPDATE_STATS:
                for update in args.get("updates") or []:
                    try:
                        changes.append(StatChange.model_validate(update))
                    except ValidationError:
                        logger.warning("Ignoring malformed stat update: %r", update)
            elif call.name == UPDATE_NARRATIVE_STATE:
                state = args.get("newState")
                if isinstance(state, dict):
                    new_state = state
                else:
                    logger.warning("Ignoring non-object narrative state: %r", state)
            else:
                logger.warning("Model called unknown function %r", call.name)
        elif getattr(part, "text", None) and not getattr(part, "thought", False):
            text_parts.append(part.text)

    text = "".join(text_parts).strip()
    if not text and not saw_call:
        reason = _block_reason(response)
        if reason:
            text = (
                f"[My response was blocked due to safety settings. Reason: {reason}. "
                "Please try rephrasing your message.]"
            )
        else:
            text = "[My response was empty. Please try rephrasing your message or try again.]"
    return TurnResult(response_text=text, stat_changes=changes, new_narrative_state=new_state)


TTS_MODEL = "gemini-2.5-flash-preview-tts"


@contextmanager
def _gemini_errors(deadline: float | None) -> Iterator[None]:
    try:
        yield
    except genai_errors.APIError as e:
        raise LLMError(f"Gemini API error: {e.code} {e.message}") from e
    except (httpx.TimeoutException, TimeoutError) as e:
        raise LLMError(f"Gemini timed out after {deadline}s") from e
    except httpx.TransportError as e:
        raise LLMError("Cannot connect to Gemini") from e


def _inline_audio(response: Any) -> bytes | None:
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    for part in (getattr(content, "parts", None) or []):
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            return inline.data
    return None


class GeminiBackend:
    """google-genai backend with native function calling, speech and Imagen.

    Args:
        api_key: Gemini API key.
        client:  Optional pre-built client (tests pass a fake exposing
                 `aio.models.generate_content` / `generate_content_stream`
                 / `generate_images`).
    """

    supports_tools = True
    supports_speech = True
    supports_images = True

    def __init__(self, api_key: str = "", client: Any = None) -> None:
        self._client = client if client is not None else genai.Client(api_key=api_key or None)

    async def complete(self, request: ChatRequest) -> TurnResult:
        logger.debug(
            "gemini complete model=%s turns=%d tools=%s", request.model, len(request.messages), request.tools
        )
        with _gemini_errors(request.deadline):
            response = await _bounded(
                self._client.aio.models.generate_content(
                    model=request.model,
                    contents=build_contents(request),
                    config=build_config(request, with_tools=True),
                ),
                _deadline_at(request.deadline),
            )
        return resolve_gemini_response(response)

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        logger.debug("gemini stream model=%s turns=%d", request.model, len(request.messages))
        deadline_at = _deadline_at(request.deadline)
        with _gemini_errors(request.deadline):
            chunks = await _bounded(
                self._client.aio.models.generate_content_stream(
                    model=request.model,
                    contents=build_contents(request),
                    config=build_config(request, with_tools=False),
                ),
                deadline_at,
            )
            async for chunk in _pull(chunks, deadline_at):
                text = getattr(chunk, "text", None)
                if text:
                    yield text

    async def synthesize_speech(
        self, text: str, *, voice: str, model: str = TTS_MODEL, deadline: float | None = None
    ) -> bytes | None:
        """Raw 24 kHz 16-bit mono PCM for `text`, or None when no audio came back."""
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice)
                )
            ),
        )
        logger.debug("gemini speech model=%s voice=%s chars=%d", model, voice, len(text))
        with _gemini_errors(deadline):
            response = await _bounded(
                self._client.aio.models.generate_content(model=model, contents=text, config=config),
                _deadline_at(deadline),
            )
        return _inline_audio(response)

    async def generate_image(
        self, prompt: str, *, model: str, deadline: float | None = None
    ) -> bytes | None:
        config = types.GenerateImagesConfig(
            number_of_images=1, output_mime_type="image/png", aspect_ratio="9:16"
        )
        logger.debug("gemini image model=%s prompt_len=%d", model, len(prompt))
        with _gemini_errors(deadline):
            response = await _bounded(
                self._client.aio.models.generate_images(model=model, prompt=prompt, config=config),
                _deadline_at(deadline),
            )
        images = getattr(response, "generated_images", None) or []
        image = getattr(images[0], "image", None) if images else None
        return getattr(image, "image_bytes", None) or None


# ---------------------------------------------------------------------------
# EchoBackend: no network; useful for wiring smoke tests and the demo
# ---------------------------------------------------------------------------

class EchoBackend:
    """Replies with the last user message. Plain stream only."""

    supports_tools = False
    supports_speech = False
    supports_images = False

    def _reply(self, request: ChatRequest) -> str:
        for msg in reversed(request.messages):
            if msg.sender == "user":
                return msg.text
        return ""

    async def complete(self, request: ChatRequest) -> TurnResult:
        logger.debug("EchoBackend complete turns=%d", len(request.messages))
        return TurnResult(response_text=self._reply(request))

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        logger.debug("EchoBackend stream turns=%d", len(request.messages))
        reply = self._reply(request)
        if not reply:
            return
        words = reply.split(" ")
        for i, word in enumerate(words):
            yield word if i == 0 else f" {word}"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when a backend cannot be reached or returns an error."""


class RateLimitedError(LLMError):
    """An LLMError whose message identifies a provider rate limit."""


class ConfigurationError(Exception):
    """No usable connection or endpoint. Shown to the user as the reply text."""
