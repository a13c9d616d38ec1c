"""API routes for controlling automations.

Each target has at most one ``AutomationSession``; it is opened on the
first ``POST /automations`` for that target and kept until
``DELETE /automations/{target_id}``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from pqa.api.ws_routes import register_bus, unregister_bus
from pqa.exceptions import (
    AlreadyRunningError,
    EmptyQueueError,
    InvalidTargetError,
    NavigationError,
    NotPausedError,
    NotRunningError,
)
from pqa.models.run import PromptItem

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class StartRequest(BaseModel):
    """Parameters for a ``POST /automations`` request."""

    target_id: str = Field("default", description="Target the prompts run against.")
    url: str | None = Field(None, description="Chat page URL; defaults to target.url from settings.")
    prompts: list[PromptItem] = Field(..., description="Prompts in submission order.")


class StartResponse(BaseModel):
    automation_id: int
    target_id: str
    total: int
    status: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sessions(request: Request) -> dict[str, Any]:
    return request.app.state.sessions


def _get_session(request: Request, target_id: str) -> Any:
    session = _sessions(request).get(target_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No automation session for target {target_id!r}.")
    return session


async def _open_session(request: Request, target_id: str, url: str | None) -> Any:
    sessions = _sessions(request)
    session = sessions.get(target_id)
    if session is not None:
        return session
    session = request.app.state.session_factory(target_id)
    try:
        await session.open(url)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    except NavigationError as e:
        logger.warning("Opening target %s failed: %s", target_id, e)
        raise HTTPException(status_code=502, detail=str(e)) from None
    sessions[target_id] = session
    register_bus(target_id, session.bus)
    return session


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/automations", response_model=StartResponse)
async def start_automation(req: StartRequest, request: Request) -> StartResponse:
    """Start a prompt queue on a target (``start-automation``)."""
    session = await _open_session(request, req.target_id, req.url)
    try:
        run = await session.controller.start(req.prompts)
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    except (EmptyQueueError, InvalidTargetError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    return StartResponse(automation_id=run.id, target_id=req.target_id, total=run.total, status="running")


@router.get("/automations/{target_id}")
def automation_status(target_id: str, request: Request) -> dict[str, Any]:
    """Current status of the target's run (``get-automation-status``)."""
    return _get_session(request, target_id).controller.status()


@router.post("/automations/{target_id}/stop")
async def stop_automation(target_id: str, request: Request) -> dict[str, Any]:
    """Stop the run, keeping the results gathered so far."""
    controller = _get_session(request, target_id).controller
    was_active = controller.is_active
    results = await controller.stop()
    return {"target_id": target_id, "stopped": was_active, "completed": len(results)}


@router.post("/automations/{target_id}/pause")
async def pause_automation(target_id: str, request: Request) -> dict[str, Any]:
    controller = _get_session(request, target_id).controller
    try:
        await controller.pause()
    except NotRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return controller.status()


@router.post("/automations/{target_id}/resume")
async def resume_automation(target_id: str, request: Request) -> dict[str, Any]:
    controller = _get_session(request, target_id).controller
    try:
        await controller.resume()
    except NotPausedError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return controller.status()


@router.get("/automations/{target_id}/results")
def automation_results(target_id: str, request: Request) -> dict[str, Any]:
    """Results of the target's most recent finished run."""
    session = _get_session(request, target_id)
    record = session.store.latest_final_results(target_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No finished automation for this target.")
    return record


@router.delete("/automations/{target_id}")
async def close_session(target_id: str, request: Request) -> dict[str, Any]:
    """Stop any run and close the target's browser session."""
    session = _get_session(request, target_id)
    await session.close()
    _sessions(request).pop(target_id, None)
    unregister_bus(target_id)
    return {"target_id": target_id, "closed": True}
