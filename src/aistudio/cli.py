from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigError, StudioConfig, load_config_or_default
from .drafts import DraftError, draft_key, load_draft, load_template
from .errors import StudioError
from .events import EventLog
from .models import GradientSpec, Operation, OperationKind, SourceAsset
from .orchestrator import SessionState
from .progress import ProgressUpdate
from .render import CompositorError, render_draft
from .render_cache import RenderCache
from .result_cache import RESULTS_FILENAME, ResultCache
from .service import AIStudio

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _config(config_path: Optional[Path]) -> StudioConfig:
    try:
        return load_config_or_default(config_path)
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2)


def _state_dir(config: StudioConfig, state_dir: Optional[Path]) -> Path:
    return state_dir or config.cache.dir


def _render_cache(state_dir: Path) -> RenderCache:
    return RenderCache(state_dir / "renders", reporter=EventLog(state_dir / "logs" / "events.jsonl"))


def build_operation(
    kind: OperationKind,
    color: Optional[str] = None,
    gradient: Optional[str] = None,
    direction: str = "vertical",
    prompt: Optional[str] = None,
) -> Operation:
    spec = None
    if gradient:
        spec = GradientSpec(tuple(c.strip() for c in gradient.split(",") if c.strip()), direction)
    return Operation(kind=kind, color=color, gradient=spec, prompt=prompt)


@app.command()
def enhance(
    image: Path = typer.Argument(..., exists=True, dir_okay=False),
    op: OperationKind = typer.Option(OperationKind.ENHANCE, "--op", help="Operation to run"),
    color: Optional[str] = typer.Option(None, "--color", help="Solid background #RRGGBB"),
    gradient: Optional[str] = typer.Option(None, "--gradient", help="Comma-separated #RRGGBB stops"),
    direction: str = typer.Option("vertical", "--direction"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Background prompt"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Override default provider"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to studio.toml"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir"),
):
    """Run one operation on an image through a studio session."""
    config = _config(config_path)
    try:
        operation = build_operation(op, color, gradient, direction, prompt)
        source = SourceAsset.from_file(image)
    except StudioError as e:
        console.print(f"[bold red]Invalid input:[/bold red] {e}")
        raise typer.Exit(code=2)

    def show(update: ProgressUpdate) -> None:
        console.print(f"  [cyan]{update.status.value:>10}[/cyan] {update.message}")

    async def run() -> tuple[SessionState, object]:
        async with AIStudio(config, state_dir=_state_dir(config, state_dir), provider_name=provider) as studio:
            session = studio.session(on_progress=show)
            session.select(operation)
            await session.run(source)
            return session.state, session.result if session.state is SessionState.SUCCESS else session.error

    try:
        state, outcome = asyncio.run(run())
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2)

    if state is SessionState.SUCCESS:
        table = Table(title="Result")
        table.add_column("Output", style="green")
        table.add_column("From cache")
        table.add_column("Display")
        table.add_row(
            outcome.uri,
            "yes" if outcome.from_cache else "no",
            json.dumps(outcome.display_metadata) if outcome.display_metadata else "-",
        )
        console.print(table)
        raise typer.Exit(code=0)

    if state is SessionState.CANCELLED:
        console.print("[bold yellow]Cancelled[/bold yellow]")
        raise typer.Exit(code=130)

    console.print(f"[bold red]{outcome.title}[/bold red] {outcome.message}")
    if outcome.detail:
        console.print(f"  {outcome.detail}")
    raise typer.Exit(code=1)


cache_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(cache_app, name="cache")


@cache_app.command("stats")
def cache_stats(
    config_path: Optional[Path] = typer.Option(None, "--config"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir"),
    draft: Optional[str] = typer.Option(None, "--draft", help="Also show one draft's composites"),
):
    config = _config(config_path)
    root = _state_dir(config, state_dir)
    results = ResultCache(root / RESULTS_FILENAME, max_entries=config.cache.result_max_entries)
    renders = _render_cache(root)

    table = Table(title="Caches")
    table.add_column("Cache")
    table.add_column("Entries", justify="right")
    table.add_row("results", str(len(results)))
    table.add_row("renders (global)", str(renders.global_count()))
    if draft:
        themes, total = renders.draft_stats(draft)
        table.add_row(f"renders ({draft})", f"{themes} ({total} bytes)")
    console.print(table)


@cache_app.command("clear")
def cache_clear(
    config_path: Optional[Path] = typer.Option(None, "--config"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir"),
    results_only: bool = typer.Option(False, "--results-only"),
):
    config = _config(config_path)
    root = _state_dir(config, state_dir)
    removed = ResultCache(root / RESULTS_FILENAME).clear()
    console.print(f"Cleared {removed} result cache entries")
    if not results_only:
        _render_cache(root).clear()
        console.print("Cleared render cache")


@app.command("render")
def render_cmd(
    draft_yaml: Path = typer.Argument(..., exists=True, dir_okay=False),
    template_yaml: Path = typer.Option(..., "--template", exists=True, dir_okay=False),
    theme: Optional[str] = typer.Option(None, "--theme"),
    config_path: Optional[Path] = typer.Option(None, "--config"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir"),
):
    """Render a draft composite through the render cache."""
    config = _config(config_path)
    try:
        draft = load_draft(draft_yaml)
        template = load_template(template_yaml)
        outcome = render_draft(
            draft,
            template,
            _render_cache(_state_dir(config, state_dir)),
            theme_id=theme,
            base_dir=draft_yaml.parent,
        )
    except (DraftError, CompositorError) as e:
        console.print(f"[bold red]Render failed:[/bold red] {e}")
        raise typer.Exit(code=1)
    except KeyError as e:
        console.print(f"[bold red]Unknown theme:[/bold red] {e}")
        raise typer.Exit(code=2)

    status = "[yellow]cache hit[/yellow]" if outcome.from_cache else "[green]rendered[/green]"
    console.print(f"{status} {outcome.path}")
    if not outcome.persisted:
        console.print("[yellow]Composite could not be cached; path is transient[/yellow]")


@app.command("render-key")
def render_key_cmd(
    draft_yaml: Path = typer.Argument(..., exists=True, dir_okay=False),
    theme: Optional[str] = typer.Option(None, "--theme"),
):
    """Print the render cache key of a draft."""
    try:
        draft = load_draft(draft_yaml)
    except DraftError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)
    console.print(draft_key(draft, theme))


@app.command("invalidate")
def invalidate_cmd(
    draft_id: str = typer.Argument(...),
    config_path: Optional[Path] = typer.Option(None, "--config"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir"),
):
    """Drop every cached composite of a draft."""
    config = _config(config_path)
    removed = _render_cache(_state_dir(config, state_dir)).invalidate(draft_id)
    console.print(f"Removed {removed} composite(s) for {draft_id}")


if __name__ == "__main__":
    app()
