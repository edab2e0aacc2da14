"""AI moderation endpoints.

Both scans go through the connection assigned to their tool role and stay
silent when moderation is off or no connection is assigned.
"""

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, Request

from haven.llm import ConfigurationError
from haven.moderation import DEFAULT_MODERATION_MODEL, scan_image, scan_text
from haven.models import ModerationResult

from .deps import app_state, backends, current_user, deadline
from .models import ModerateImageBody, ModerateTextBody

router = APIRouter(dependencies=[Depends(current_user)])


async def scan_text_with_tool(request: Request, text: str) -> ModerationResult | None:
    """Text verdict from the text_moderation tool, or None when off or clean."""
    state = app_state(request)
    if not state.settings.enable_ai_moderation:
        return None
    try:
        connection = state.registry().require_tool("text_moderation")
        backend = backends(request)(connection)
    except ConfigurationError:
        return None
    model = connection.models[0] if connection.models else DEFAULT_MODERATION_MODEL
    return await scan_text(text, backend, model=model, deadline=deadline(request))


def _result(verdict: ModerationResult | None) -> dict:
    if verdict is None:
        return {"flagged": False, "result": None}
    return {"flagged": True, "result": verdict.model_dump(by_alias=True)}


@router.post("/moderation/text")
async def moderate_text(request: Request, body: ModerateTextBody):
    """Scan text with the text-moderation tool.

    Returns {"flagged": false, "result": null} when moderation is off, no
    connection is assigned, or nothing was found.
    """
    return _result(await scan_text_with_tool(request, body.text))


@router.post("/moderation/image")
async def moderate_image(request: Request, body: ModerateImageBody):
    """Scan a base64-encoded image with the image-moderation tool."""
    try:
        data = base64.b64decode(body.data_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(422, "data_base64 is not valid base64") from None

    state = app_state(request)
    if not state.settings.enable_ai_moderation:
        return _result(None)
    try:
        connection = state.registry().require_tool("image_moderation")
        backend = backends(request)(connection)
    except ConfigurationError:
        return _result(None)
    model = connection.models[0] if connection.models else DEFAULT_MODERATION_MODEL
    verdict = await scan_image(data, body.mime_type, backend, model=model, deadline=deadline(request))
    return _result(verdict)
