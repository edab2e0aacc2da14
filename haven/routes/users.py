"""User endpoints."""

from fastapi import APIRouter, Header, HTTPException, Request

from haven.models import User, new_id
from haven.state import UpsertUser

from .deps import ADMIN_ROLES, app_state, save
from .models import CreateUser

router = APIRouter()


@router.get("/users")
async def list_users(request: Request):
    return list(app_state(request).users.values())


@router.post("/users", status_code=201)
async def create_user(request: Request, body: CreateUser, x_user_id: str | None = Header(default=None)):
    """Register a user.

    Anyone may register a plain User. Elevated roles need an admin caller,
    except for the very first user, who bootstraps the installation.
    """
    state = app_state(request)
    if body.role != "User" and state.users:
        caller = state.users.get(x_user_id or "")
        if caller is None or caller.role not in ADMIN_ROLES:
            raise HTTPException(403, "Only admins can assign elevated roles")
    user_id = body.id or new_id()
    if user_id in state.users:
        raise HTTPException(409, f"User '{user_id}' already exists")
    user = User.model_validate({**body.model_dump(), "id": user_id})
    state.dispatch(UpsertUser(user=user))
    save(request)
    return user
