from __future__ import annotations

from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .ingest import RunReport, RunState
from .models import PlayerPayload
from .store import PlayerIngestResult, Store


def _state_style(state: RunState) -> str:
    if state == RunState.DONE:
        return "green"
    if state == RunState.ABORTED:
        return "red"
    return "yellow"


def render_run_report(report: RunReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    title = f"INGEST | {report.label}" if report.label else "INGEST"
    if report.dry_run:
        title += " (dry run)"
    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("State", Text(report.state.value, style=_state_style(report.state)))
    if report.account_id is not None:
        table.add_row("Account", str(report.account_id))
    table.add_row("Batches", str(report.batches))
    if report.dry_run:
        table.add_row("Matches validated", str(report.matches_validated))
    else:
        table.add_row("Matches written", str(report.matches_written))
        table.add_row("Participants written", str(report.participants_written))
        if report.matches_already_stored:
            table.add_row("Already stored", str(report.matches_already_stored))
    table.add_row("Skipped (stored)", str(report.skipped_existing))
    table.add_row("Not found", str(len(report.not_found)))
    table.add_row("Failed batches", str(len(report.failed_batches)))
    console.print(table)

    if report.unresolved:
        console.print(f"[yellow]Player not found, skipped:[/yellow] {report.unresolved}")
    if report.not_found:
        shown = ", ".join(str(i) for i in report.not_found[:20])
        more = f" (+{len(report.not_found) - 20} more)" if len(report.not_found) > 20 else ""
        console.print(f"[yellow]Missing match ids:[/yellow] {shown}{more}")
    for failure in report.failed_batches:
        console.print(
            f"[yellow]Batch of {len(failure.match_ids)} ids "
            f"starting at {failure.match_ids[0] if failure.match_ids else '?'} dropped:[/yellow] {failure.reason}"
        )
    if report.cancelled:
        console.print("[yellow]Stopped before the run finished.[/yellow]")
    if report.error is not None:
        console.print(f"[red]Aborted:[/red] {report.error}")


def render_run_reports(reports: Sequence[RunReport], console: Optional[Console] = None) -> None:
    console = console or Console()
    for report in reports:
        render_run_report(report, console)


def render_player(
    payload: PlayerPayload,
    result: Optional[PlayerIngestResult] = None,
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    p = payload.profile
    head = Table(title=f"PLAYER | {p.personaname or payload.account_id}", box=box.ROUNDED, show_header=False)
    head.add_column("Field")
    head.add_column("Value")
    head.add_row("Account id", str(payload.account_id))
    head.add_row("SteamID64", payload.steamid64)
    if p.profileurl:
        head.add_row("Profile", p.profileurl)
    if p.countrycode:
        head.add_row("Country", p.countrycode)
    m = payload.latest_mmr
    if m is not None:
        head.add_row("Rank", f"{m.rank} (division {m.division}, tier {m.division_tier})")
        head.add_row("Score", f"{m.player_score:.1f}" if m.player_score is not None else "-")
        head.add_row("Last ranked match", str(m.match_id))
    else:
        head.add_row("Rank", Text("unavailable", style="yellow"))
    console.print(head)

    if payload.hero_stats:
        heroes = Table(title="Heroes", box=box.ROUNDED)
        heroes.add_column("Hero", justify="right")
        heroes.add_column("Matches", justify="right")
        heroes.add_column("Win%", justify="right")
        heroes.add_column("K/D/A", justify="right")
        for h in sorted(payload.hero_stats, key=lambda h: h.matches_played or 0, reverse=True):
            played = h.matches_played or 0
            winrate = f"{100.0 * (h.wins or 0) / played:.0f}%" if played else "-"
            heroes.add_row(str(h.hero_id), str(played), winrate, f"{h.kills or 0}/{h.deaths or 0}/{h.assists or 0}")
        console.print(heroes)

    if result is None:
        console.print("[yellow]Dry run: nothing saved.[/yellow]")
    else:
        console.print(
            f"[green]Saved.[/green] heroes={result.heroes_upserted} "
            f"hero snapshots={result.hero_history_added} mmr history={result.mmr_history_added}"
        )


def render_counts(store: Store, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="DB | Tables", box=box.ROUNDED)
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    for name, n in store.table_counts().items():
        table.add_row(name, str(n))
    console.print(table)
