"""DB.Coach CLI: Typer + Rich terminal interface.

Commands: generate, replay, sections, tables, sessions.
All output is Rich-powered with color-coded panels and tables.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from dbcoach import __version__
from dbcoach.coach import DBCoach
from dbcoach.errors import DBCoachError
from dbcoach.events import EventType, PipelineEvent, PipelineEventEmitter
from dbcoach.keys import load_keys_env
from dbcoach.persistence.export import export_json, export_markdown
from dbcoach.schemas.pipeline import PersistenceBackend, ReplayMode
from dbcoach.schemas.streaming import SchemaFlavor, SessionStatus, TaskState
from dbcoach.sectionizer import er_summary, extract_relationships, schema_stats

# Load API keys from ~/.dbcoach/keys.env and .env on startup
load_keys_env()

console = Console()

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="dbcoach",
    help="Stream LLM-generated database schema designs, then replay and inspect them.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

sessions_app = typer.Typer(
    name="sessions",
    help="Query captured generation sessions.",
    no_args_is_help=True,
)
app.add_typer(sessions_app, name="sessions")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"dbcoach {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logging.",
    ),
) -> None:
    """DB.Coach: streaming database design generation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


# ── Helpers ──────────────────────────────────────────────────────

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a defaults.toml override")
_PERSISTENCE_OPTION = typer.Option(
    None, "--persistence", "-p", help="Durable store: memory, sqlite or supabase",
)


async def _open_coach(
    config_path: Path | None,
    persistence: str | None,
    emitter: PipelineEventEmitter | None = None,
) -> DBCoach:
    backend = PersistenceBackend(persistence) if persistence else None
    return await DBCoach.create(config_path, persistence=backend, emitter=emitter)


def _parse_choice(enum_cls, value: str, label: str):
    """Parse a case-insensitive enum value, exit on error."""
    for member in enum_cls:
        if member.value.lower() == value.lower():
            return member
    choices = ", ".join(m.value for m in enum_cls)
    console.print(f"[red]Invalid {label}:[/red] '{value}'. Choose {choices}.")
    raise typer.Exit(1) from None


def _status_text(status: SessionStatus) -> Text:
    style = {
        SessionStatus.COMPLETED: "green",
        SessionStatus.STREAMING: "yellow",
        SessionStatus.INITIALIZING: "dim",
        SessionStatus.ERROR: "red",
    }.get(status, "")
    return Text(str(status).upper(), style=style)


def _not_found(session_id: str) -> None:
    console.print(f"[red]Session not found:[/red] {session_id}")
    raise typer.Exit(1) from None


class _StreamPrinter:
    """Event listener that prints live or replayed chunks as they arrive."""

    def __init__(self, show_content: bool = True) -> None:
        self._show_content = show_content

    def __call__(self, event: PipelineEvent) -> None:
        data = event.data
        if event.type == EventType.TASK_START:
            console.print()
            console.print(Rule(
                f"[bold cyan]{data.get('title', '')}[/bold cyan] "
                f"[dim]({data.get('agent', '')}, "
                f"{data.get('position', 0) + 1}/{data.get('total_tasks', 0)})[/dim]"
            ))
        elif event.type == EventType.CONTENT_CHUNK and self._show_content:
            if data.get("replace"):
                console.print("\n[yellow]↺ partial output replaced by fallback[/yellow]")
            console.out(data.get("content", ""), end="", highlight=False)
        elif event.type == EventType.TASK_COMPLETE:
            console.print()
            if data.get("fallback"):
                console.print("[yellow]⊘ fallback content used[/yellow]")
            elif data.get("state") == TaskState.FAILED:
                console.print("[red]✗ phase failed[/red]")
            else:
                console.print(f"[green]✓[/green] [dim]{data.get('content_length', 0):,} chars[/dim]")
        elif event.type == EventType.ERROR:
            console.print(f"[red]Error:[/red] {data.get('error', '')}")


# ── dbcoach generate ─────────────────────────────────────────────

@app.command()
def generate(
    prompt: str = typer.Argument(..., help="Natural-language description of the database"),
    flavor: str = typer.Option("SQL", "--flavor", "-f", help="SQL, NoSQL or VectorDB"),
    user: str = typer.Option("anonymous", "--user", "-u", help="Owning user id"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide streamed content"),
    no_fallback: bool = typer.Option(
        False, "--no-fallback", help="Mark failed phases as failed instead of substituting fallback text",
    ),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Generate a database design from a prompt, streaming each phase."""
    schema_flavor = _parse_choice(SchemaFlavor, flavor, "flavor")
    if not prompt.strip():
        console.print("[red]Prompt must not be empty.[/red]")
        raise typer.Exit(1) from None

    emitter = PipelineEventEmitter()
    emitter.add_listener(_StreamPrinter(show_content=not quiet))

    async def _generate():
        coach = await _open_coach(config_path, persistence, emitter)
        async with coach:
            if no_fallback:
                coach.config.fallback_enabled = False
            return await coach.generate(prompt, schema_flavor, user)

    console.print(Panel(
        f"[bold]Prompt:[/bold] {prompt}\n[bold]Flavor:[/bold] {schema_flavor}",
        title="[bold blue]DB.Coach Generation[/bold blue]",
        border_style="blue",
    ))

    try:
        result = asyncio.run(_generate())
    except DBCoachError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    console.print()
    table = Table(title="Generation Summary")
    table.add_column("Phase", style="cyan")
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Chars", justify="right")
    for task in result.tasks:
        if task.used_fallback:
            state = Text("FALLBACK", style="yellow")
        elif task.state == TaskState.COMPLETED:
            state = Text("OK", style="green")
        else:
            state = Text("FAILED", style="red")
        table.add_row(task.title, task.agent, state, f"{len(task.content):,}")
    console.print(table)

    console.print(f"[bold]Session:[/bold] {result.session_id}")
    if result.project_id:
        console.print(f"[bold]Project:[/bold] {result.project_id}")
    console.print(f"[dim]Completed in {result.duration_seconds:.1f}s[/dim]")


# ── dbcoach replay ───────────────────────────────────────────────

@app.command()
def replay(
    session_id: str = typer.Argument(..., help="Streaming session ID"),
    speed: float = typer.Option(None, "--speed", "-s", help="Speed multiplier (default from config)"),
    mode: str = typer.Option("chunk", "--mode", "-m", help="chunk or character"),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Replay a captured session's stream."""
    replay_mode = _parse_choice(ReplayMode, mode, "mode")
    if speed is not None and speed <= 0:
        console.print("[red]Speed must be positive.[/red]")
        raise typer.Exit(1) from None

    emitter = PipelineEventEmitter(keep_history=False)
    emitter.add_listener(_StreamPrinter())

    async def _replay():
        async with await _open_coach(config_path, persistence) as coach:
            engine = await coach.replay(session_id, speed=speed, mode=replay_mode, emitter=emitter)
            if engine is None:
                return None
            return await engine.run_to_completion()

    content = asyncio.run(_replay())
    if content is None:
        _not_found(session_id)

    console.print()
    console.print(f"[dim]Replayed {len(content)} task(s).[/dim]")


# ── dbcoach sections ─────────────────────────────────────────────

@app.command()
def sections(
    session_id: str = typer.Argument(..., help="Streaming session ID"),
    phase: str = typer.Option(None, "--phase", help="Only show this phase key"),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """List the sub-sections of each phase's output."""

    async def _sections():
        async with await _open_coach(config_path, persistence) as coach:
            if await coach.session_data(session_id) is None:
                return None
            return await coach.sections(session_id)

    by_phase = asyncio.run(_sections())
    if by_phase is None:
        _not_found(session_id)

    for key, subsections in by_phase.items():
        if phase and key != phase:
            continue
        table = Table(title=f"Phase: {key}")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Icon", style="dim")
        table.add_column("Chars", justify="right")
        if not subsections:
            console.print(f"[dim]{key}: single section (no sub-tabs)[/dim]")
            continue
        for sub in subsections:
            table.add_row(sub.id, sub.title, sub.icon, f"{len(sub.body):,}")
        console.print(table)


# ── dbcoach tables ───────────────────────────────────────────────

@app.command()
def tables(
    session_id: str = typer.Argument(..., help="Streaming session ID"),
    phase: str = typer.Option("design", "--phase", help="Phase key holding CREATE TABLE statements"),
    er: bool = typer.Option(False, "--er", help="Print a Mermaid ER diagram"),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Show tables, relationships and statistics extracted from a session."""

    async def _tables():
        async with await _open_coach(config_path, persistence) as coach:
            if await coach.session_data(session_id) is None:
                return None
            return await coach.tables(session_id, phase)

    extracted = asyncio.run(_tables())
    if extracted is None:
        _not_found(session_id)
    if not extracted:
        console.print("[dim]No CREATE TABLE statements found.[/dim]")
        return

    for table_def in extracted:
        table = Table(title=f"Table: {table_def.name}")
        table.add_column("Column", style="cyan")
        table.add_column("Type")
        table.add_column("Keys")
        table.add_column("Constraints", style="dim")
        for col in table_def.columns:
            keys = []
            if col.is_primary_key:
                keys.append("PK")
            if col.is_foreign_key:
                keys.append(f"FK → {col.references_table}.{col.references_column}")
            flags = []
            if col.is_required:
                flags.append("NOT NULL")
            if col.is_unique:
                flags.append("UNIQUE")
            table.add_row(col.name, col.type, ", ".join(keys), ", ".join(flags))
        console.print(table)

    relationships = extract_relationships(extracted)
    if relationships:
        rel_table = Table(title="Relationships")
        rel_table.add_column("From", style="cyan")
        rel_table.add_column("To", style="cyan")
        rel_table.add_column("Type")
        for rel in relationships:
            rel_table.add_row(
                f"{rel.from_table}.{rel.from_column}",
                f"{rel.to_table}.{rel.to_column}",
                rel.type,
            )
        console.print(rel_table)

    stats = schema_stats(extracted)
    console.print(Panel(
        f"Tables: {stats.table_count}  Columns: {stats.column_count}  "
        f"PKs: {stats.primary_key_count}  FKs: {stats.foreign_key_count}  "
        f"Avg columns: {stats.avg_columns_per_table:.1f}",
        title="[bold]Schema Statistics[/bold]",
    ))
    if er:
        console.out(er_summary(extracted), highlight=False)


# ── dbcoach sessions ─────────────────────────────────────────────

@sessions_app.command("list")
def sessions_list(
    user: str = typer.Option("anonymous", "--user", "-u", help="Owning user id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max sessions to show"),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Show captured sessions, newest first."""

    async def _list():
        async with await _open_coach(config_path, persistence) as coach:
            return await coach.sessions(user)

    found = asyncio.run(_list())[:limit]
    if not found:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title=f"Sessions ({len(found)} shown)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Prompt", max_width=40)
    table.add_column("Flavor", style="dim")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    table.add_column("Created", style="dim")
    for s in found:
        table.add_row(
            s.id,
            s.prompt[:40],
            str(s.schema_flavor),
            _status_text(s.status),
            str(len(s.tasks)),
            s.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Streaming session ID"),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Show full session details."""

    async def _get():
        async with await _open_coach(config_path, persistence) as coach:
            data = await coach.session_data(session_id)
            metrics = await coach.metrics(session_id) if data else []
            consistent = await coach.store.validate_consistency(session_id) if data else False
            return data, metrics, consistent

    data, metrics, consistent = asyncio.run(_get())
    if data is None:
        _not_found(session_id)

    session = data.session
    meta = Table(title=f"Session: {session.id}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Prompt", session.prompt)
    meta.add_row("Flavor", str(session.schema_flavor))
    meta.add_row("Status", _status_text(session.status))
    meta.add_row("Created", session.created_at.isoformat())
    meta.add_row("Updated", session.updated_at.isoformat())
    if session.project_id:
        meta.add_row("Project", session.project_id)
    meta.add_row("Chunks", f"{len(data.chunks):,}")
    meta.add_row("Insights", f"{len(data.insights):,}")
    meta.add_row("Chunk log", "consistent" if consistent else Text("GAPS", style="red"))
    if session.error_message:
        meta.add_row("Error", session.error_message)
    console.print(meta)

    if session.tasks:
        console.print()
        tasks_table = Table(title="Tasks")
        tasks_table.add_column("Phase", style="cyan")
        tasks_table.add_column("Agent")
        tasks_table.add_column("State")
        tasks_table.add_column("Chunks", justify="right")
        tasks_table.add_column("Chars", justify="right")
        for task in session.tasks:
            state = "fallback" if task.used_fallback else str(task.state)
            tasks_table.add_row(
                task.title,
                task.agent,
                state,
                str(len(data.chunks_for(task.id))),
                f"{len(data.task_content(task.id)):,}",
            )
        console.print(tasks_table)

    if metrics:
        console.print()
        metric_table = Table(title="Content Metrics")
        metric_table.add_column("Metric")
        metric_table.add_column("Value", justify="right")
        for metric in metrics:
            metric_table.add_row(metric.label, str(metric.value))
        console.print(metric_table)


@sessions_app.command("export")
def sessions_export(
    session_id: str = typer.Argument(..., help="Streaming session ID"),
    fmt: str = typer.Option(
        "markdown", "--format", "-f",
        help="Export format: json or markdown",
    ),
    config_path: Path = _CONFIG_OPTION,
    persistence: str = _PERSISTENCE_OPTION,
) -> None:
    """Export a captured session as JSON or Markdown."""
    if fmt not in ("json", "markdown"):
        console.print(f"[red]Invalid format:[/red] '{fmt}'. Choose json or markdown.")
        raise typer.Exit(1) from None

    async def _get():
        async with await _open_coach(config_path, persistence) as coach:
            return await coach.session_data(session_id)

    data = asyncio.run(_get())
    if data is None:
        _not_found(session_id)

    if fmt == "json":
        console.out(export_json(data), highlight=False)
    else:
        console.out(export_markdown(data), highlight=False)
