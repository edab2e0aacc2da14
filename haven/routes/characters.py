"""Character CRUD endpoints, summary and portrait generation.

When AI moderation is on, every save scans the persona text and stores the
verdict on the character (`moderation`, null when clean).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from haven.llm import ConfigurationError, LLMError, RateLimitedError
from haven.media import character_image_prompt, generate_character_image
from haven.moderation import character_text
from haven.models import Character, User, new_id
from haven.state import DeleteCharacter, SetCharacterSummary, UpsertCharacter
from haven.summaries import SUMMARY_FIELDS, SummaryError, summarize_character

from .deps import app_state, backends, current_user, deadline, save
from .models import CharacterImageBody, CreateCharacter, UpdateCharacter, updates
from .moderation import scan_text_with_tool

logger = logging.getLogger(__name__)

router = APIRouter()

# Fields a stored summary was generated from.
PERSONA_FIELDS = ("name", *SUMMARY_FIELDS)


def _get_character(request: Request, character_id: str) -> Character:
    try:
        return app_state(request).character(character_id)
    except KeyError:
        raise HTTPException(404, "Character not found") from None


async def _moderated(request: Request, character: Character) -> Character:
    verdict = await scan_text_with_tool(request, character_text(character))
    if verdict is not None:
        logger.info("character %s flagged: %s", character.id, verdict.category)
    return character.model_copy(update={"moderation": verdict})


@router.get("/characters")
async def list_characters(request: Request):
    return list(app_state(request).characters.values())


@router.post("/characters", status_code=201)
async def create_character(request: Request, body: CreateCharacter, user: User = Depends(current_user)):
    """Create a character owned by the calling user."""
    state = app_state(request)
    char_id = body.id or new_id()
    if char_id in state.characters:
        raise HTTPException(409, f"Character '{char_id}' already exists")
    character = Character.model_validate({**body.model_dump(), "id": char_id, "creator_id": user.id})
    character = await _moderated(request, character)
    state.dispatch(UpsertCharacter(character=character))
    save(request)
    return character


@router.get("/characters/{character_id}")
async def get_character(request: Request, character_id: str):
    return _get_character(request, character_id)


@router.patch("/characters/{character_id}")
async def update_character(request: Request, character_id: str, body: UpdateCharacter):
    """Update persona fields, mode, model or stats.

    Changing a persona field drops the stored summary; it no longer matches.
    """
    character = _get_character(request, character_id)
    fields = updates(body)
    if any(k in PERSONA_FIELDS and v != getattr(character, k) for k, v in fields.items()):
        fields["summary"] = None
    updated = Character.model_validate({**character.model_dump(), **fields})
    updated = await _moderated(request, updated)
    app_state(request).dispatch(UpsertCharacter(character=updated))
    save(request)
    return updated


@router.delete("/characters/{character_id}")
async def delete_character(request: Request, character_id: str):
    """Remove a character and every chat session with it."""
    try:
        app_state(request).dispatch(DeleteCharacter(character_id=character_id))
    except KeyError:
        raise HTTPException(404, "Character not found") from None
    save(request)
    return {"ok": True}


@router.post("/characters/{character_id}/summarize")
async def summarize(request: Request, character_id: str):
    """Generate and store shorter persona fields via the summarization tool."""
    character = _get_character(request, character_id)
    state = app_state(request)
    try:
        connection = state.registry().require_tool("character_summarization")
        backend = backends(request)(connection)
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from None

    model = connection.models[0] if connection.models else character.model
    try:
        summary = await summarize_character(character, backend, model=model, deadline=deadline(request))
    except RateLimitedError as e:
        raise HTTPException(429, str(e)) from None
    except (LLMError, SummaryError) as e:
        logger.warning("summary failed for %s: %s", character_id, e)
        raise HTTPException(502, str(e)) from None

    state.dispatch(SetCharacterSummary(character_id=character_id, summary=summary))
    save(request)
    return summary


@router.post("/characters/{character_id}/image", dependencies=[Depends(current_user)])
async def generate_image(request: Request, character_id: str, body: CharacterImageBody):
    """Generate a portrait via the image_generation tool. Returns PNG bytes.

    An empty prompt is built from the character's appearance.
    """
    character = _get_character(request, character_id)
    state = app_state(request)
    try:
        connection = state.registry().require_tool("image_generation")
        image = await generate_character_image(
            character_image_prompt(character, body.prompt),
            connection,
            backends(request)(connection),
            deadline=deadline(request),
        )
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from None
    except LLMError as e:
        logger.warning("image generation failed for %s: %s", character_id, e)
        raise HTTPException(502, str(e)) from None
    if not image:
        raise HTTPException(502, "No image data returned")
    return Response(content=image, media_type="image/png")
