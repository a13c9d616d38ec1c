"""CLI commands that run prompt queues against a chat page."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from pqa.monitoring.event_bus import Event, EventType

console = Console()


class RichProgressSink:
    """Event sink that drives a rich progress bar and reports pauses."""

    def __init__(self, progress: Progress, task_id: Any, paused: asyncio.Event) -> None:
        self._progress = progress
        self._task_id = task_id
        self._paused = paused

    async def handle_event(self, event: Event) -> None:
        data = event.data
        if event.event_type == EventType.STARTED:
            self._progress.update(self._task_id, total=data.get("total"), completed=data.get("current_index", 0))
        elif event.event_type == EventType.PROGRESS:
            current, total = data.get("current", 0), data.get("total", 0)
            status = data.get("status", "")
            prompt = str(data.get("prompt", ""))[:60]
            if status == "processing":
                self._progress.update(self._task_id, description=f"Prompt {current}/{total}: {prompt}")
            elif status == "retrying":
                self._progress.update(
                    self._task_id,
                    description=f"Retry {data.get('retry_count')}/{data.get('max_retries')} for prompt {current}",
                )
            elif status in ("completed", "failed"):
                self._progress.update(self._task_id, completed=current)
                if status == "failed":
                    self._progress.console.print(f"[red]✗[/red] Prompt {current} failed: {data.get('error', '')}")
        elif event.event_type == EventType.PAUSED:
            self._progress.update(self._task_id, description="Paused")
            self._paused.set()
        elif event.event_type == EventType.ERROR:
            self._progress.console.print(f"[yellow]⚠[/yellow] {data.get('error', '')}")


def run_command(
    prompts_file: Path = typer.Argument(..., help="Prompt file: JSON array of {text, pauseAfter} or one prompt per line."),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Chat page URL (defaults to target.url)."),
    target_id: str = typer.Option("default", "--target", "-t", help="Target id for checkpoints and results."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the final report JSON here."),
    events: bool = typer.Option(False, "--events", help="Emit JSONL events to stderr."),
    pause_on_error: Optional[bool] = typer.Option(
        None, "--pause-on-error/--skip-on-error", help="Pause instead of skipping a prompt that keeps failing."
    ),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", min=0, help="Retries per prompt."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless."),
    interactive: bool = typer.Option(
        True, "--interactive/--no-interactive", help="Wait for Enter on pause; otherwise exit and keep the checkpoint."
    ),
) -> None:
    """Submit every prompt in PROMPTS_FILE to the chat page, one at a time."""
    from pqa.prompts import load_prompts

    if not prompts_file.exists():
        console.print(f"[red]File not found:[/red] {prompts_file}")
        raise typer.Exit(code=1)

    try:
        prompts = load_prompts(prompts_file)
    except (ValueError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read prompts:[/red] {e}")
        raise typer.Exit(code=1) from None
    if not prompts:
        console.print("[yellow]No prompts to process.[/yellow]")
        raise typer.Exit(code=0)

    settings = _effective_settings(pause_on_error=pause_on_error, max_retries=max_retries, headless=headless)
    console.print(f"Loaded {len(prompts)} prompt(s) from {prompts_file}")

    report = asyncio.run(
        _drive(settings, target_id, url, prompts=prompts, events=events, interactive=interactive)
    )
    _finish(report, output)


def resume_command(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Chat page URL (defaults to target.url)."),
    target_id: str = typer.Option("default", "--target", "-t", help="Target id whose checkpoint to resume."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the final report JSON here."),
    events: bool = typer.Option(False, "--events", help="Emit JSONL events to stderr."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="Run the browser headless."),
    interactive: bool = typer.Option(
        True, "--interactive/--no-interactive", help="Wait for Enter on pause; otherwise exit and keep the checkpoint."
    ),
) -> None:
    """Continue the checkpointed automation for a target."""
    settings = _effective_settings(headless=headless)
    report = asyncio.run(_drive(settings, target_id, url, prompts=None, events=events, interactive=interactive))
    if report is None:
        console.print(f"[yellow]No checkpointed automation for target {target_id!r}.[/yellow]")
        raise typer.Exit(code=0)
    _finish(report, output)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _effective_settings(
    *,
    pause_on_error: bool | None = None,
    max_retries: int | None = None,
    headless: bool | None = None,
):
    """Apply CLI flag overrides on top of the resolved settings."""
    from pqa.settings import get_settings

    settings = get_settings()
    automation: dict[str, Any] = {}
    if pause_on_error is not None:
        automation["pause_on_error"] = pause_on_error
    if max_retries is not None:
        automation["max_retries"] = max_retries
    update: dict[str, Any] = {}
    if automation:
        update["automation"] = settings.automation.model_copy(update=automation)
    if headless is not None:
        update["browser"] = settings.browser.model_copy(update={"headless": headless})
    return settings.model_copy(update=update) if update else settings


async def _drive(
    settings: Any,
    target_id: str,
    url: str | None,
    *,
    prompts: list[Any] | None,
    events: bool,
    interactive: bool,
) -> dict[str, Any] | None:
    """Open a session, start or restore the run and follow it to the end."""
    from pqa.logging_config import configure_logging
    from pqa.monitoring.event_bus import EventBus, JsonlSink, LoggingSink
    from pqa.runner import AutomationSession

    configure_logging(settings.log_level, settings.log_format)
    bus = EventBus(target_id=target_id)
    bus.add_sink(LoggingSink())
    if events:
        bus.add_sink(JsonlSink(sys.stderr))

    paused = asyncio.Event()
    session = AutomationSession(target_id, settings=settings, bus=bus)
    keep_checkpoint = False
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Opening chat page...", total=len(prompts) if prompts else None)
        bus.add_sink(RichProgressSink(progress, task_id, paused))
        try:
            await session.open(url)
            controller = session.controller
            if prompts is not None:
                await controller.start(prompts)
            else:
                run = await controller.restore()
                if run is None:
                    return None
                if run.is_paused:
                    await controller.resume()

            while True:
                finished = asyncio.create_task(controller.wait_finished())
                pause_wait = asyncio.create_task(paused.wait())
                done, _pending = await asyncio.wait({finished, pause_wait}, return_when=asyncio.FIRST_COMPLETED)
                pause_wait.cancel()
                if finished in done:
                    return finished.result()
                finished.cancel()
                paused.clear()
                if not interactive:
                    keep_checkpoint = True
                    progress.console.print("[yellow]Paused.[/yellow] Run `pqa resume` to continue.")
                    return {"paused": True, "target_id": target_id, **controller.status()}
                progress.stop()
                await asyncio.to_thread(console.input, "[yellow]Paused.[/yellow] Press Enter to resume ")
                progress.start()
                await controller.resume()
        finally:
            await session.close(stop_run=not keep_checkpoint)


def _finish(report: dict[str, Any], output: Path | None) -> None:
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        console.print(f"  Report saved to: {output}")

    if report.get("paused"):
        return

    summary = report.get("summary", {})
    status = "stopped" if "reason" in report else "complete"
    color = "green" if status == "complete" and not summary.get("failed") else "yellow"
    console.print(
        f"\n[bold {color}]Automation {status}:[/bold {color}] "
        f"{summary.get('successful', 0)} succeeded, {summary.get('failed', 0)} failed, "
        f"{summary.get('total_retries', 0)} retries ({summary.get('success_rate', 0)}% success)"
    )
    if status == "stopped":
        console.print(f"  Reason: {report.get('reason')}")
    if summary.get("failed") or status == "stopped":
        raise typer.Exit(code=1)
