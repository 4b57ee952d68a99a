"""Attune Command Line Interface.

Inspection commands over the Attune SQLite store: persisted contexts,
their version history and audit log, concept mastery, knowledge gaps,
and reasoning traces.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from attune.context.manager import context_key
from attune.context.models import AuditEntry, ContextState
from attune.core.config import get_settings
from attune.core.errors import AttuneError
from attune.core.logging import configure_logging
from attune.knowledge.engine import KnowledgeGraphEngine, concept_repository_name
from attune.knowledge.models import ConceptNode
from attune.storage.sqlite import SQLiteStore
from attune.thought.models import Intervention, ReasoningTrace

app = typer.Typer(
    name="attune",
    help="Attune - inspect session context, knowledge and reasoning",
    add_completion=False,
)
console = Console()

DbOption = typer.Option(None, "--db", help="SQLite database (default: ATTUNE_DB_PATH)")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Inspect what Attune has stored."""
    configure_logging(logging.DEBUG if verbose else None, quiet=not verbose)


def _get_store(db: Optional[Path]) -> SQLiteStore:
    """Open the configured store."""
    path = db or get_settings().db_path
    if not Path(path).exists():
        console.print(f"[yellow]No database at {path}.[/yellow]")
        raise typer.Exit(1)
    return SQLiteStore(path)


def _format_timestamp(ts: Optional[datetime]) -> str:
    """Format timestamp for display."""
    if not ts:
        return "Never"
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def _load_engine(store: SQLiteStore, user: str) -> KnowledgeGraphEngine:
    repository = store.repository(concept_repository_name(user), ConceptNode)
    engine = KnowledgeGraphEngine(user, get_settings())
    engine.restore(repository.query_sync(lambda node: True))
    return engine


@app.command()
def context(
    session: str = typer.Argument(..., help="Session ID"),
    db: Optional[Path] = DbOption,
):
    """Show the latest persisted context of a session.

    Examples:
        attune context session-1
    """
    store = _get_store(db)
    try:
        state = store.repository("contexts", ContextState, key=context_key).load_sync(session)
    except AttuneError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    finally:
        store.close()

    project, user = state.project_state, state.user_state
    console.print(
        Panel(
            f"Session: {state.session_id}\n"
            f"User: {state.user_id}\n"
            f"Version: {state.version}\n"
            f"Last updated: {_format_timestamp(state.last_updated)}\n"
            f"Focus: {user.focus or '-'}\n"
            f"Adapters: {', '.join(state.active_session.adapters) or '-'}",
            title="Context",
            border_style="blue",
        )
    )

    if state.learning_goals:
        console.print("[bold]Learning Goals:[/bold]")
        for goal in state.learning_goals:
            console.print(f"  • {goal.title} [dim]({goal.status.value}; {', '.join(goal.concepts)})[/dim]")
        console.print()

    if project.errors:
        table = Table(show_header=True, title="Errors")
        table.add_column("Signature", style="cyan")
        table.add_column("Kind")
        table.add_column("Component")
        table.add_column("Seen")
        for error in project.errors:
            table.add_row(error.signature, error.kind.value, error.component or "-", str(error.occurrences))
        console.print(table)


@app.command()
def history(
    session: str = typer.Argument(..., help="Session ID"),
    db: Optional[Path] = DbOption,
):
    """List every persisted version of a session's context."""
    store = _get_store(db)
    try:
        versions = store.repository("contexts", ContextState, key=context_key).history_sync(session)
    finally:
        store.close()

    if not versions:
        console.print(f"[yellow]No persisted context for '{session}'.[/yellow]")
        raise typer.Exit(1)

    table = Table(show_header=True, title=f"History of {session}")
    table.add_column("Version", justify="right")
    table.add_column("Updated", style="dim")
    table.add_column("Focus")
    table.add_column("Errors", justify="right")
    table.add_column("Goals", justify="right")
    for state in versions:
        table.add_row(
            str(state.version),
            _format_timestamp(state.last_updated),
            state.user_state.focus or "-",
            str(len(state.project_state.errors)),
            str(len(state.learning_goals)),
        )
    console.print(table)


@app.command()
def audit(
    session: str = typer.Argument(..., help="Session ID"),
    db: Optional[Path] = DbOption,
):
    """Show the losing writes of overlapping updates."""
    store = _get_store(db)
    try:
        entries = store.repository("audit", AuditEntry).query_sync(lambda e: e.session_id == session)
    finally:
        store.close()

    if not entries:
        console.print("[dim]No conflicts recorded.[/dim]")
        return

    table = Table(show_header=True, title=f"Audit log of {session}")
    table.add_column("Path", style="cyan")
    table.add_column("Loser")
    table.add_column("Lost at", style="dim")
    table.add_column("Winner")
    table.add_column("Won at", style="dim")
    for entry in sorted(entries, key=lambda e: e.recorded_at):
        table.add_row(
            entry.path,
            entry.losing_input_id[:12],
            _format_timestamp(entry.losing_timestamp),
            entry.winning_input_id[:12],
            _format_timestamp(entry.winning_timestamp),
        )
    console.print(table)


@app.command()
def mastery(
    user: str = typer.Argument(..., help="User ID"),
    concepts: Optional[list[str]] = typer.Argument(None, help="Concepts to show (default: all)"),
    db: Optional[Path] = DbOption,
):
    """Show concept mastery for a user.

    Examples:
        attune mastery user-1
        attune mastery user-1 loops closures
    """
    store = _get_store(db)
    try:
        engine = _load_engine(store, user)
    finally:
        store.close()

    ids = concepts or sorted(node.id for node in engine.snapshot())
    if not ids:
        console.print(f"[dim]No concepts observed for '{user}' yet.[/dim]")
        return

    table = Table(show_header=True, title=f"Mastery of {user}")
    table.add_column("Concept", style="cyan")
    table.add_column("Mastery", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Known")
    table.add_column("Confused")
    for concept_id, level in engine.mastery_summary(ids).items():
        table.add_row(
            concept_id,
            f"{level.mastery:.2f}",
            f"{level.confidence:.2f}",
            "yes" if level.known else "no",
            "[red]yes[/red]" if level.confused else "no",
        )
    console.print(table)


@app.command()
def gaps(
    user: str = typer.Argument(..., help="User ID"),
    required: list[str] = typer.Argument(..., help="Required concepts"),
    db: Optional[Path] = DbOption,
):
    """List the gaps behind required concepts, prerequisites first.

    Examples:
        attune gaps user-1 async-iteration
    """
    store = _get_store(db)
    try:
        engine = _load_engine(store, user)
    finally:
        store.close()

    found = engine.identify_gaps(required)
    if not found:
        console.print("[green]No gaps.[/green]")
        return
    console.print(f"[bold]Gaps ({len(found)}):[/bold]")
    for position, concept_id in enumerate(found, start=1):
        level = engine.get_mastery_level(concept_id)
        console.print(f"  {position}. {concept_id} [dim](mastery {level.mastery:.2f})[/dim]")


@app.command()
def traces(
    session: str = typer.Argument(..., help="Session ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of traces to show"),
    intervention: Optional[str] = typer.Option(
        None, "--intervention", "-i", help="Show the trace behind one intervention"
    ),
    db: Optional[Path] = DbOption,
):
    """Show reasoning traces of a session.

    Examples:
        attune traces session-1
        attune traces session-1 -i <intervention-id>
    """
    store = _get_store(db)
    try:
        trace_repository = store.repository("traces", ReasoningTrace)
        if intervention:
            found = store.repository("interventions", Intervention).load_sync(intervention)
            if found.trace_id is None:
                console.print(f"[yellow]Intervention {intervention} has no trace yet.[/yellow]")
                raise typer.Exit(1)
            records = [trace_repository.load_sync(found.trace_id)]
        else:
            records = trace_repository.query_sync(lambda t: t.session_id == session)
    except AttuneError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    finally:
        store.close()

    records = sorted(records, key=lambda t: t.created_at, reverse=True)[:limit]
    if not records:
        console.print("[dim]No traces recorded.[/dim]")
        return

    for trace in records:
        steps = ", ".join(step.kind for step in trace.steps)
        console.print(
            Panel(
                f"{trace.final_decision}\n\n"
                f"[dim]Snapshot v{trace.snapshot_version} | steps: {steps} | "
                f"confidence {trace.confidence:.2f} | {trace.duration_ms:.0f}ms[/dim]",
                title=f"{_format_timestamp(trace.created_at)}  {trace.id[:12]}",
                border_style="blue",
            )
        )


if __name__ == "__main__":
    app()
