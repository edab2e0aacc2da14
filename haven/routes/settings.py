"""Health check, global settings and AI context settings endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from haven.state import UpdateContextSettings, UpdateSettings

from .deps import app_state, require_admin, save

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get the global rule sets and moderation switch."""
    return app_state(request).settings


@router.patch("/settings", dependencies=[Depends(require_admin)])
async def update_settings(request: Request, body: dict):
    """Update global settings (partial merge). Admin only."""
    state = app_state(request)
    try:
        state.dispatch(UpdateSettings(fields=body))
    except ValidationError as e:
        raise HTTPException(422, str(e)) from None
    save(request)
    return state.settings


@router.get("/settings/context")
async def get_context_settings(request: Request):
    """Get the AI context settings (included fields, history length, sampling)."""
    return app_state(request).context


@router.patch("/settings/context", dependencies=[Depends(require_admin)])
async def update_context_settings(request: Request, body: dict):
    """Update AI context settings (partial merge). Admin only."""
    state = app_state(request)
    try:
        state.dispatch(UpdateContextSettings(fields=body))
    except ValidationError as e:
        raise HTTPException(422, str(e)) from None
    save(request)
    return state.context
