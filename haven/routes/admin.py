"""Admin tooling: live simulation of a chat turn."""

from fastapi import APIRouter, Depends, HTTPException, Request

from haven.chat import SimulationRequest, simulate_turn
from haven.llm import ConfigurationError, LLMError

from .deps import app_state, backends, deadline, require_admin

router = APIRouter()


@router.post("/admin/simulate", dependencies=[Depends(require_admin)])
async def simulate(request: Request, body: SimulationRequest):
    """Run one turn with overrides; stored sessions are left untouched."""
    try:
        return await simulate_turn(
            app_state(request), body, backends=backends(request), deadline=deadline(request)
        )
    except KeyError as e:
        raise HTTPException(404, str(e)) from None
    except ConfigurationError as e:
        raise HTTPException(400, str(e)) from None
    except LLMError as e:
        raise HTTPException(502, str(e)) from None
