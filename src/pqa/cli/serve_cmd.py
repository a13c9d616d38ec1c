"""CLI command that serves the HTTP/WebSocket control API."""

from __future__ import annotations

from typing import Optional

import typer


def serve_command(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to api.host)."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (defaults to api.port)."),
) -> None:
    """Serve the automation control API."""
    import uvicorn

    from pqa.api.app import create_app
    from pqa.logging_config import configure_logging
    from pqa.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        create_app(),
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )
