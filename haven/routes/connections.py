"""AI connection endpoints and tool-role assignment. Admin only.

API keys are write-only: responses carry `has_api_key` instead.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from haven.models import TOOL_ROLES, Connection, new_id
from haven.state import AssignTool, DeleteConnection, UpsertConnection

from .deps import app_state, require_admin, save
from .models import AssignToolBody, ConnectionView, CreateConnection, UpdateConnection

router = APIRouter(dependencies=[Depends(require_admin)])

# Fields that may be cleared by sending an explicit null.
NULLABLE_CONNECTION_FIELDS = {"base_url"}


@router.get("/connections")
async def list_connections(request: Request):
    """List connections and the current tool-role assignments."""
    state = app_state(request)
    return {
        "connections": [ConnectionView.of(c) for c in state.connections],
        "tools": state.tool_connections,
    }


@router.post("/connections", status_code=201)
async def create_connection(request: Request, body: CreateConnection):
    state = app_state(request)
    conn_id = body.id or new_id()
    if state.registry().get(conn_id) is not None:
        raise HTTPException(409, f"Connection '{conn_id}' already exists")
    connection = Connection.model_validate({**body.model_dump(), "id": conn_id})
    state.dispatch(UpsertConnection(connection=connection))
    save(request)
    return ConnectionView.of(connection)


@router.patch("/connections/{connection_id}")
async def update_connection(request: Request, connection_id: str, body: UpdateConnection):
    """Update name, key, endpoint, model allowlist or the active flag.

    `base_url: null` clears the endpoint; other nulls are ignored.
    """
    state = app_state(request)
    try:
        current = state.connection(connection_id)
    except KeyError:
        raise HTTPException(404, "Connection not found") from None
    fields = {
        k: v
        for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in NULLABLE_CONNECTION_FIELDS
    }
    try:
        connection = Connection.model_validate({**current.model_dump(), **fields})
    except ValidationError as e:
        raise HTTPException(422, str(e)) from None
    state.dispatch(UpsertConnection(connection=connection))
    save(request)
    return ConnectionView.of(connection)


@router.delete("/connections/{connection_id}")
async def delete_connection(request: Request, connection_id: str):
    """Remove a connection; tool roles assigned to it are cleared."""
    state = app_state(request)
    try:
        state.dispatch(DeleteConnection(connection_id=connection_id))
    except KeyError:
        raise HTTPException(404, "Connection not found") from None
    save(request)
    return {"ok": True}


@router.put("/tools/{role}")
async def assign_tool(request: Request, role: str, body: AssignToolBody):
    """Assign a connection to a tool role, or clear it with a null id."""
    if role not in TOOL_ROLES:
        raise HTTPException(404, f"Unknown tool role: {role}")
    state = app_state(request)
    try:
        state.dispatch(AssignTool(role=role, connection_id=body.connection_id))
    except KeyError:
        raise HTTPException(404, "Connection not found") from None
    save(request)
    return state.tool_connections
