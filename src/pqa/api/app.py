"""FastAPI app for PQA — automation control and live event stream."""

from __future__ import annotations

from typing import Any, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pqa.api.routes import router
from pqa.api.ws_routes import ws_router
from pqa.settings import get_settings

try:
    from importlib.metadata import version

    VERSION = version("pqa")
except Exception:
    VERSION = "0.0.0"


def _default_session_factory(target_id: str) -> Any:
    from pqa.runner import AutomationSession

    return AutomationSession(target_id)


def create_app(session_factory: Callable[[str], Any] | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        session_factory: Builds an ``AutomationSession`` for a target id.
    """
    settings = get_settings()

    application = FastAPI(
        title="Prompt Queue Automator",
        description="Sequential prompt submission to chat web apps.",
        version=VERSION,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.state.sessions = {}
    application.state.session_factory = session_factory or _default_session_factory

    application.include_router(router)
    application.include_router(ws_router)
    return application


app = create_app()
