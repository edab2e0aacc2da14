"""Speech and character portraits.

Both go through the same connection registry as chat turns but use the
backend's media operations instead of complete()/stream():

  text_to_speech            Gemini only. Returns raw PCM (24 kHz, 16-bit, mono).
  generate_character_image  Gemini (Imagen) or an OpenAI-compatible images
                            endpoint. Returns PNG bytes.

A backend without the capability, or a connection without a suitable image
model, is a ConfigurationError. An empty result is None for the caller to
report.
"""

from __future__ import annotations

import logging

from haven.llm import ChatBackend, ConfigurationError
from haven.models import Character, Connection

logger = logging.getLogger(__name__)

TTS_MODEL = "gemini-2.5-flash-preview-tts"

TTS_VOICES = ("Kore", "Zephyr", "Puck", "Charon", "Fenrir")
DEFAULT_TTS_VOICE = "Kore"

SPEECH_MEDIA_TYPE = "audio/L16;rate=24000"


def image_model_for(connection: Connection) -> str:
    """Pick the image model from a connection's allowlist."""
    if connection.provider == "gemini":
        for model in connection.models:
            if "imagen" in model:
                return model
        raise ConfigurationError(
            f"Connection '{connection.name}' has no Imagen model in its allowlist."
        )
    if connection.provider == "echo":
        raise ConfigurationError("Image generation is not supported for the echo provider.")
    for model in connection.models:
        if "dall-e" in model:
            return model
    for model in connection.models:
        if "image" in model:
            return model
    raise ConfigurationError(
        f"Image generation is not supported by connection '{connection.name}': "
        "add a dall-e or image model to its allowlist."
    )


def character_image_prompt(character: Character, prompt: str = "") -> str:
    if prompt.strip():
        return prompt.strip()
    looks = (character.appearance or character.description).strip().rstrip(".")
    parts = [f"Portrait of {character.name}"]
    if looks:
        parts.append(looks)
    parts.append("Full body, vertical composition, detailed illustration")
    return ". ".join(parts) + "."


async def text_to_speech(
    text: str,
    backend: ChatBackend,
    *,
    voice: str = DEFAULT_TTS_VOICE,
    deadline: float | None = None,
) -> bytes | None:
    if not getattr(backend, "supports_speech", False):
        raise ConfigurationError("Text to speech is only supported for Gemini connections.")
    if voice not in TTS_VOICES:
        raise ConfigurationError(f"Unknown voice: {voice}")
    if not text.strip():
        return None
    logger.debug("speech voice=%s chars=%d", voice, len(text))
    return await backend.synthesize_speech(text, voice=voice, model=TTS_MODEL, deadline=deadline)


async def generate_character_image(
    prompt: str,
    connection: Connection,
    backend: ChatBackend,
    *,
    deadline: float | None = None,
) -> bytes | None:
    if not getattr(backend, "supports_images", False):
        raise ConfigurationError(
            f"Image generation is not supported for the {connection.provider} provider."
        )
    model = image_model_for(connection)
    logger.debug("image connection=%s model=%s", connection.id, model)
    return await backend.generate_image(prompt, model=model, deadline=deadline)
