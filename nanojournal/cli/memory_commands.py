"""Memory CLI commands for nanojournal."""

import asyncio
from datetime import datetime
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from nanojournal.config.loader import load_config
from nanojournal.memory.errors import PatternMemoryError
from nanojournal.memory.store import PatternStore
from nanojournal.utils.helpers import get_memory_path

console = Console()


def _get_pattern_store() -> Optional[PatternStore]:
    """Open the pattern store for the configured workspace."""
    config = load_config()
    if not config.memory.enabled:
        console.print("[yellow]Memory system is disabled[/yellow]")
        return None

    workspace = config.workspace_path
    get_memory_path(workspace)
    return PatternStore(config.memory, workspace)


def _format_confidence(confidence: float) -> str:
    """Format confidence with color."""
    if confidence >= 0.8:
        return f"[green]{confidence:.2f}[/green]"
    elif confidence >= 0.5:
        return f"[yellow]{confidence:.2f}[/yellow]"
    else:
        return f"[red]{confidence:.2f}[/red]"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


# Memory Commands App
memory_app = typer.Typer(name="memory", help="Pattern memory management commands")


@memory_app.command("status")
def memory_status():
    """Show pattern memory status."""
    store = _get_pattern_store()
    if not store:
        return

    with store:
        stats = store.get_stats()
        stale = store.count_stale()

    console.print("\n[bold]Pattern Memory Status[/bold]")
    console.print(f"Patterns: {stats['patterns']:,}")
    for status, count in sorted(stats["by_status"].items()):
        console.print(f"  {status}: {count:,}")
    console.print(f"Observations: {stats['pattern_observations']:,}")
    console.print(f"Relations: {stats['pattern_relations']:,}")
    console.print(f"Aliases: {stats['pattern_aliases']:,}")
    console.print(f"Entry links: {stats['pattern_entries']:,}")
    console.print(f"Messages awaiting compaction: {stats['pending_messages']:,}")

    if stats["active_by_kind"]:
        table = Table(title="Active patterns by kind")
        table.add_column("Kind", style="cyan")
        table.add_column("Count", justify="right")
        for kind, count in sorted(stats["active_by_kind"].items()):
            table.add_row(kind, str(count))
        console.print(table)

    if stats["without_embedding"]:
        console.print(f"[yellow]{stats['without_embedding']} active patterns have no embedding[/yellow]")
    if stale:
        console.print(f"[yellow]{stale} stale event memories pending review[/yellow]")


@memory_app.command("top")
def memory_top(limit: int = typer.Option(20, "--limit", "-l")):
    """List the strongest active patterns."""
    store = _get_pattern_store()
    if not store:
        return

    with store:
        patterns = store.list_top_by_strength(limit)

    if not patterns:
        console.print("[yellow]No patterns yet[/yellow]")
        return

    table = Table(title=f"Top {len(patterns)} patterns")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Content")
    table.add_column("Strength", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Last seen")

    for p in patterns:
        table.add_row(
            str(p.id),
            p.kind.value,
            p.content[:80],
            f"{p.strength:.2f}",
            f"{p.times_seen}x",
            _format_confidence(p.confidence),
            _format_date(p.last_seen),
        )

    console.print(table)


@memory_app.command("stale")
def memory_stale():
    """Count event memories past their expiry."""
    store = _get_pattern_store()
    if not store:
        return

    with store:
        count = store.count_stale()

    if count:
        console.print(f"[yellow]{count} stale event memories pending review[/yellow]")
        console.print("[dim]Run 'nanojournal memory expire' to deprecate them[/dim]")
    else:
        console.print("[green]No stale event memories[/green]")


@memory_app.command("expire")
def memory_expire(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Deprecate event memories past their expiry."""
    store = _get_pattern_store()
    if not store:
        return

    with store:
        count = store.count_stale()
        if count == 0:
            console.print("[green]Nothing to expire[/green]")
            return

        if not yes and not typer.confirm(f"Deprecate {count} stale event memories?"):
            console.print("[dim]Cancelled[/dim]")
            return

        expired = store.expire_event_patterns()

    logger.info(f"Expired {expired} patterns from CLI")
    console.print(f"[green]Deprecated {expired} patterns[/green]")


@memory_app.command("show")
def memory_show(pattern_id: int):
    """Show a pattern with its evidence, relations, aliases and entry links."""
    store = _get_pattern_store()
    if not store:
        return

    with store:
        pattern = store.get_pattern(pattern_id)
        if pattern is None:
            console.print(f"[red]Pattern {pattern_id} not found[/red]")
            raise typer.Exit(1)

        observations = store.get_observations(pattern_id)
        relations = store.get_relations(pattern_id)
        aliases = store.get_aliases(pattern_id)
        links = store.get_entry_links(pattern_id)

    console.print(f"\n[bold]Pattern {pattern.id}[/bold] [cyan]{pattern.kind.value}[/cyan] ({pattern.status.value})")
    console.print(pattern.content)
    console.print(
        f"strength {pattern.strength:.2f} · seen {pattern.times_seen}x · "
        f"confidence {_format_confidence(pattern.confidence)}"
    )
    console.print(f"first seen {_format_date(pattern.first_seen)} · last seen {_format_date(pattern.last_seen)}")
    if pattern.expires_at:
        console.print(f"expires {_format_date(pattern.expires_at)}")
    if pattern.source_id:
        console.print(f"[dim]source: {pattern.source_id}[/dim]")

    if observations:
        console.print(f"\n[bold]Evidence ({len(observations)})[/bold]")
        for obs in observations:
            roles = ", ".join(obs.evidence_roles)
            console.print(f"  {_format_date(obs.observed_at)} [{roles}] {obs.evidence[:120]}")

    if relations:
        console.print("\n[bold]Relations[/bold]")
        for rel in relations:
            console.print(f"  {rel.from_pattern_id} -{rel.relation.value}-> {rel.to_pattern_id}")

    if aliases:
        console.print("\n[bold]Aliases[/bold]")
        for alias in aliases:
            console.print(f"  {alias.content}")

    if links:
        console.print("\n[bold]Journal entries[/bold]")
        for link in links:
            console.print(f"  {link.entry_uuid} ({link.source.value}, linked {link.times_linked}x)")


@memory_app.command("compact")
def memory_compact(conversation_id: str):
    """Force compaction of a conversation's buffered messages."""
    from nanojournal.memory.service import create_pattern_memory

    config = load_config()
    if not config.memory.enabled:
        console.print("[yellow]Memory system is disabled[/yellow]")
        return

    memory = create_pattern_memory(config.memory, config.workspace_path, provider_config=config.provider)

    try:
        with console.status("[cyan]Compacting...[/cyan]", spinner="dots"):
            note = asyncio.run(memory.force_compact(conversation_id))
    except PatternMemoryError as e:
        console.print(f"[red]Compaction failed: {e}[/red]")
        raise typer.Exit(1)
    finally:
        memory.store.close()

    console.print(f"[green]{note}[/green]")
