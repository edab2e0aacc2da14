"""Per-request access to the application objects stored on app.state."""

from fastapi import Depends, Header, HTTPException, Request

from haven.connections import BackendFactory
from haven.models import User
from haven.state import AppState


def app_state(request: Request) -> AppState:
    return request.app.state.app_state


def save(request: Request) -> None:
    request.app.state.storage.save(request.app.state.app_state)


def backends(request: Request) -> BackendFactory:
    return request.app.state.backends


def deadline(request: Request) -> float | None:
    return request.app.state.deadline


def current_user(request: Request, x_user_id: str = Header()) -> User:
    """The caller, identified by the X-User-Id header."""
    try:
        return app_state(request).user(x_user_id)
    except KeyError:
        raise HTTPException(404, "User not found") from None


ADMIN_ROLES = ("Admin", "Assistant Admin")


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role not in ADMIN_ROLES:
        raise HTTPException(403, "Admin only")
    return user
