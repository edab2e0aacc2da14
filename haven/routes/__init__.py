"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, users, connections + tool roles,
characters (with summary generation), chats (keyed by the X-User-Id header
and a character id), moderation, admin simulation.

Handlers read the AppState from app.state and persist it after every
mutation.
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .characters import router as characters_router
from .chat import router as chat_router
from .connections import router as connections_router
from .moderation import router as moderation_router
from .settings import router as settings_router
from .users import router as users_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(users_router)
router.include_router(connections_router)
router.include_router(characters_router)
router.include_router(chat_router)
router.include_router(moderation_router)
router.include_router(admin_router)
