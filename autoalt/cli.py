"""Command-line interface: every autoalt command lives here."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from autoalt import __version__
from autoalt.config import AutoAltConfig, StepConfig
from autoalt.errors import AutoAltError, ConfigurationError

app = typer.Typer(
    name="autoalt",
    help="Generate image alt text in resumable, rate-limited batches.",
    no_args_is_help=True,
)
console = Console()

_state: dict[str, object] = {"config_path": None, "library": None}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"autoalt {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[Path] = typer.Option(  # noqa: UP007
        None, "--config", "-c", help="Path to autoalt.yaml.",
    ),
    library: Optional[Path] = typer.Option(  # noqa: UP007
        None, "--library", "-l", help="Image directory (overrides config).",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging."),
    version: Optional[bool] = typer.Option(  # noqa: UP007
        None, "--version", "-v", callback=version_callback, is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """autoalt — batch alt text generation."""
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    _state["config_path"] = config
    _state["library"] = library


def _config() -> AutoAltConfig:
    try:
        cfg = AutoAltConfig.load(_state["config_path"])  # type: ignore[arg-type]
    except (ConfigurationError, OSError) as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1)
    if _state["library"] is not None:
        cfg.library.path = _state["library"]  # type: ignore[assignment]
    return cfg


def _engine(cfg: AutoAltConfig):  # type: ignore[no-untyped-def]
    from autoalt.step import ProcessingStep

    if not cfg.library.path.is_dir():
        console.print(f"[red]Not a directory:[/red] {cfg.library.path}")
        raise typer.Exit(code=1)

    engine = ProcessingStep.from_config(cfg)
    if cfg.session.debug_log:
        from autoalt import logs

        logs.install(engine.store, cfg.session.namespace)
    return engine


def _step_config(
    cfg: AutoAltConfig,
    provider: str | None,
    model: str | None,
    batch_size: int | None,
    max_retries: int | None = None,
    api_key: str | None = None,
) -> StepConfig:
    try:
        return cfg.step_config(
            provider=provider, model=model, batch_size=batch_size,
            max_retries=max_retries, api_key=api_key,
        )
    except ConfigurationError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command()
def run(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="AI provider."),  # noqa: UP007
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override."),  # noqa: UP007
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Images per step."),  # noqa: UP007
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries per image."),  # noqa: UP007
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key (or set env var)."),  # noqa: UP007
    fresh: bool = typer.Option(False, "--fresh", help="Discard any saved session and start over."),
    force: bool = typer.Option(
        False, "--force", help="Regenerate alt text for all images, even those that have it.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be processed."),
    max_steps: Optional[int] = typer.Option(  # noqa: UP007
        None, "--limit",
        help="Stop after this many steps (batches). Caps batches, not images: "
        "at most limit x batch size images are processed.",
    ),
    max_failed: int = typer.Option(
        3, "--max-failed-steps", help="Halt after this many consecutive all-failed steps.",
    ),
) -> None:
    """Process every image missing alt text (all images with --force), one batch at a time."""
    import asyncio
    import signal
    import threading

    from rich.progress import Progress

    from autoalt.runner import regenerate_all, run_until_complete

    cfg = _config()
    engine = _engine(cfg)
    step_cfg = _step_config(cfg, provider, model, batch_size, max_retries, api_key)

    try:
        if dry_run:
            _show_dry_run(engine, step_cfg, force=force)
            return

        if force:
            console.print("[dim]Regenerating alt text for all images.[/dim]")
        elif fresh:
            engine.start_fresh_session()
            console.print("[dim]Previous session cleared.[/dim]")
        else:
            status = engine.check_session()
            if status.has_session:
                console.print(
                    f"[dim]Resuming session: {status.processed}/{status.session_total} processed, "
                    f"{status.remaining} remaining.[/dim]"
                )
    except AutoAltError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)

    stop = threading.Event()

    def _request_stop(signum, frame):  # type: ignore[no-untyped-def]
        if stop.is_set():
            raise KeyboardInterrupt
        stop.set()
        console.print("[yellow]Stopping after the current batch... (Ctrl+C again to abort)[/yellow]")

    previous = signal.signal(signal.SIGINT, _request_stop)
    try:
        with Progress(console=console) as progress:
            label = "Regenerating alt text..." if force else "Generating alt text..."
            task = progress.add_task(label, total=100)

            def _on_step(result):  # type: ignore[no-untyped-def]
                progress.update(task, completed=result.progress_percent)
                for image_id, error in result.errors:
                    progress.console.print(f"  [yellow]![/yellow] {image_id}: {error}")

            if force:
                loop = regenerate_all(
                    engine, step_cfg, stop=stop, max_steps=max_steps, on_step=_on_step,
                )
            else:
                loop = run_until_complete(
                    engine, step_cfg, stop=stop, max_steps=max_steps,
                    max_failed_steps=max_failed or None, on_step=_on_step,
                )
            summary = asyncio.run(loop)
    except AutoAltError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    finally:
        signal.signal(signal.SIGINT, previous)

    last = summary.last
    if summary.completed:
        console.print(
            f"[green]OK[/green] All images processed. "
            f"{summary.succeeded} alt tag(s) generated in {summary.steps} step(s)."
        )
    elif summary.stopped:
        again = "'autoalt run --force' to start over" if force else "'autoalt run' again to resume"
        console.print(f"[yellow]Stopped.[/yellow] Run {again}.")
    elif last is not None and last.error is not None:
        console.print(f"[red]Error:[/red] {last.error}")
        raise typer.Exit(code=1)
    else:
        console.print(f"[yellow]Halted:[/yellow] {summary.halted_reason}")
        if last is not None:
            console.print(f"[dim]{last.message}[/dim]")


def _show_dry_run(engine, step_cfg: StepConfig, *, force: bool = False) -> None:  # type: ignore[no-untyped-def]
    from autoalt.providers import canonical_name, default_model

    repo = engine.repository
    images = repo.all_ids() if force else repo.list_pending()
    if not images:
        message = "No images found in the library." if force else "No images need alt text."
        console.print(f"[green]{message}[/green]")
        return
    try:
        name = canonical_name(step_cfg.provider)
    except ValueError as exc:
        console.print(f"[red]Provider error:[/red] {exc}")
        raise typer.Exit(code=1)
    model = step_cfg.model or default_model(name)
    limits = engine.policy.limits_for(name, model)
    batch, delay = engine.planner.plan_batch(images, step_cfg.batch_size, limits)

    console.print("DRY RUN - No changes will be made:")
    if force:
        console.print(f"  {len(images)} image(s) would be regenerated")
    else:
        console.print(f"  {len(images)} image(s) without alt text")
    console.print(f"  Provider {name}/{model}: {len(batch)} per step, {delay:g}s between calls")
    for image_id in images[:20]:
        current = repo.alt_text(image_id) if force else ""
        suffix = f' (current: "{current}")' if current else ""
        console.print(f"  - {image_id}{suffix}", markup=False, highlight=False)
    if len(images) > 20:
        console.print(f"  ... and {len(images) - 20} more")


@app.command()
def step(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="AI provider."),  # noqa: UP007
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override."),  # noqa: UP007
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Images per step."),  # noqa: UP007
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key (or set env var)."),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Print the raw step result as JSON."),
) -> None:
    """Run a single processing step and report progress."""
    import asyncio

    cfg = _config()
    engine = _engine(cfg)
    result = asyncio.run(engine.run_step(_step_config(cfg, provider, model, batch_size, api_key=api_key)))

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    elif result.error is not None:
        console.print(f"[red]Error:[/red] {result.error}")
    else:
        status = "[green]Complete[/green]" if result.completed else f"{result.progress_percent:.1f}%"
        console.print(f"{status} {result.message}")
        for image_id, error in result.errors:
            console.print(f"  [yellow]![/yellow] {image_id}: {error}")

    if result.error is not None:
        raise typer.Exit(code=1)


@app.command()
def status() -> None:
    """Show whether an interrupted session can be resumed."""
    cfg = _config()
    engine = _engine(cfg)
    try:
        session = engine.check_session()
    except AutoAltError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)

    if not session.has_session:
        console.print(f"[dim]No active session. {session.remaining} image(s) need alt text.[/dim]")
        return

    table = Table(title="Saved Session")
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Session total", str(session.session_total))
    table.add_row("Processed", str(session.processed))
    table.add_row("Remaining", str(session.remaining))
    console.print(table)
    console.print("[dim]Run 'autoalt run' to resume or 'autoalt run --fresh' to start over.[/dim]")


@app.command()
def reset() -> None:
    """Clear the saved session so the next run starts fresh."""
    cfg = _config()
    _engine(cfg).start_fresh_session()
    console.print("[green]OK[/green] Session cleared.")


@app.command()
def stats(
    fmt: str = typer.Option("table", "--format", "-f", help="table or json."),
) -> None:
    """Show alt text coverage for the image library."""
    cfg = _config()
    try:
        result = _engine(cfg).stats()
    except AutoAltError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)

    if fmt == "json":
        console.print_json(json.dumps({
            "total": result.total,
            "with_alt": result.with_alt,
            "without_alt": result.without_alt,
            "percentage": result.percentage,
        }))
        return

    table = Table(title="Image Alt Text Statistics")
    table.add_column("Metric", style="bold")
    table.add_column("Count")
    table.add_row("Total Images", str(result.total))
    table.add_row("With Alt Text", str(result.with_alt))
    table.add_row("Without Alt Text", str(result.without_alt))
    table.add_row("Coverage Percentage", f"{result.percentage}%")
    console.print(table)

    if result.without_alt > 0:
        console.print("[dim]Run 'autoalt run' to generate missing alt text.[/dim]")


@app.command()
def preview(
    count: int = typer.Option(5, "--count", "-n", help="Number of images to preview."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="AI provider."),  # noqa: UP007
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override."),  # noqa: UP007
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key (or set env var)."),  # noqa: UP007
) -> None:
    """Draft alt text for the first few pending images without saving."""
    import asyncio

    cfg = _config()
    engine = _engine(cfg)
    step_cfg = _step_config(cfg, provider, model, None, api_key=api_key)
    try:
        items = asyncio.run(engine.preview(step_cfg, count))
    except ConfigurationError as exc:
        console.print(f"[red]Provider error:[/red] {exc}")
        raise typer.Exit(code=1)
    except AutoAltError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)

    if not items:
        console.print("[dim]No images need alt text.[/dim]")
        return

    table = Table(title="Alt Text Preview (not saved)")
    table.add_column("Image", style="bold")
    table.add_column("Alt text")
    for item in items:
        text = item.alt_text if item.error is None else f"[red]{item.error}[/red]"
        table.add_row(item.image_id, text)
    console.print(table)


@app.command(name="test-api")
def test_api(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="AI provider."),  # noqa: UP007
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override."),  # noqa: UP007
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key (or set env var)."),  # noqa: UP007
) -> None:
    """Check that the configured provider accepts requests."""
    import asyncio

    cfg = _config()
    engine = _engine(cfg)
    step_cfg = _step_config(cfg, provider, model, None, api_key=api_key)
    console.print(f"[dim]Testing {step_cfg.provider} API connection...[/dim]")
    error = asyncio.run(engine.test_connection(step_cfg))
    if error:
        console.print(f"[red]API connection failed:[/red] {error}")
        raise typer.Exit(code=1)
    console.print("[green]OK[/green] API connection successful!")


@app.command()
def providers() -> None:
    """Show available AI providers and their status."""
    from autoalt.providers import API_KEY_ENV, AVAILABLE_MODELS, list_available

    table = Table(title="AI Providers")
    table.add_column("Provider", style="bold")
    table.add_column("Available")
    table.add_column("Models")
    table.add_column("Notes")

    for name, available in list_available():
        state = "[green]Yes[/green]" if available else "[red]No[/red]"
        models = ", ".join(AVAILABLE_MODELS.get(name, {}))
        table.add_row(name, state, models, f"Needs {API_KEY_ENV[name]} env var")

    console.print(table)


@app.command()
def limits() -> None:
    """Show the per-model rate limits used to size and pace batches."""
    from autoalt.ratelimits import RateLimitPolicy

    table = Table(title="Rate Limits")
    table.add_column("Provider", style="bold")
    table.add_column("Model")
    table.add_column("RPM")
    table.add_column("RPD")
    table.add_column("Delay (s)")
    table.add_column("Max batch")

    for name, model, limit in RateLimitPolicy().entries():
        table.add_row(
            name, model, str(limit.requests_per_minute),
            str(limit.requests_per_day or "-"),
            f"{limit.inter_call_delay_seconds:g}", str(limit.max_batch_size),
        )
    console.print(table)


@app.command()
def logs(
    clear: bool = typer.Option(False, "--clear", help="Delete the stored log lines."),
) -> None:
    """Show recent activity recorded when session.debug_log is enabled."""
    from autoalt import logs as debug_logs

    cfg = _config()
    engine = _engine(cfg)
    if clear:
        debug_logs.clear_logs(engine.store, cfg.session.namespace)
        console.print("[green]OK[/green] Logs cleared.")
        return

    lines = debug_logs.recent_logs(engine.store, cfg.session.namespace)
    if not lines:
        console.print("[dim]No log entries. Enable session.debug_log in autoalt.yaml.[/dim]")
        return
    for line in lines:
        console.print(line, markup=False, highlight=False)


@app.command()
def serve(
    port: int = typer.Option(8080, "--port", "-p", help="Port to serve on."),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to."),
) -> None:
    """Start the JSON API for driving steps over HTTP."""
    try:
        import uvicorn
    except ImportError:
        console.print(
            "[red]Web API requires extra dependencies.[/red]\n"
            "Install them with: [bold]pip install autoalt\\[web\\][/bold]"
        )
        raise typer.Exit(code=1)

    from autoalt.web.app import create_app

    cfg = _config()
    web_app = create_app(cfg, engine=_engine(cfg))

    console.print(f"[dim]Serving API at http://{host}:{port}[/dim]")
    uvicorn.run(web_app, host=host, port=port, log_level="warning")
