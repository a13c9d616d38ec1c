"""Unified CLI entry point for the Prompt Queue Automator.

Config precedence: settings.default.toml -> settings.local.toml -> env vars (PQA_* with double underscores) -> CLI flags.
"""

from __future__ import annotations

import typer

from pqa.cli.results_cmd import results_app
from pqa.cli.run_cmd import resume_command, run_command
from pqa.cli.serve_cmd import serve_command
from pqa.cli.settings_cmd import settings_app

try:
    from importlib.metadata import version

    VERSION = version("pqa")
except Exception:
    VERSION = "unknown"

APP_HELP = (
    "pqa — Prompt Queue Automator CLI. "
    "Submits a queue of prompts to a chat web app one at a time and collects the responses. "
    "Config precedence: settings.default.toml -> settings.local.toml -> env vars (PQA_* with __) -> CLI flags."
)

app = typer.Typer(add_completion=True, help=APP_HELP)

app.command("run")(run_command)
app.command("resume")(resume_command)
app.command("serve")(serve_command)
app.add_typer(results_app, name="results")
app.add_typer(settings_app, name="settings")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context, version: bool = typer.Option(False, "--version", help="Show version and exit.")) -> None:
    """Show help when no subcommand is provided."""
    if version:
        typer.echo(f"pqa {VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
