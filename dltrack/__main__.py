from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler

from .api import DeadlockClient
from .config import (
    get_config,
    ensure_paths,
    config_path,
    open_config_in_editor,
    get_api_key,
    set_api_key,
)
from .dashboards import render_counts, render_player, render_run_reports
from .errors import DltrackError, ValidationError, exit_code_for
from .fetcher import BatchFetcher
from .history import HistoryBatchFetcher
from .ingest import IngestionCoordinator, RunOptions, RunReport, combined_exit_code, ingest_concurrently
from .players import lookup_player
from .ratelimit import BackoffPolicy, BackoffState
from .sources import PLAYER, MatchIdSource
from .steam import IdentityResolver, SteamWebClient
from .store import Store


app = typer.Typer(add_completion=False, no_args_is_help=True, help="Deadlock stats tracker")
matches_app = typer.Typer(no_args_is_help=True, help="Ingest match records")
app.add_typer(matches_app, name="matches")
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _build_client(cfg: Dict[str, Any]) -> DeadlockClient:
    return DeadlockClient.from_config(cfg)


def _build_resolver(cfg: Dict[str, Any]) -> IdentityResolver:
    return IdentityResolver(steam=SteamWebClient.from_config(cfg))


def _build_backoff(cfg: Dict[str, Any]) -> BackoffState:
    return BackoffState(policy=BackoffPolicy.from_config(cfg))


def _store(cfg: Dict[str, Any]) -> Store:
    return Store(cfg["database"]["path"])


def _fail(e: DltrackError) -> None:
    rprint(f"[red]{type(e).__name__}:[/red] {e}")
    raise typer.Exit(code=exit_code_for(e))


def _parse_ids(values: Optional[List[str]]) -> List[int]:
    ids: List[int] = []
    for value in values or []:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            if not (part.isascii() and part.isdigit()):
                raise ValidationError(f"invalid match id {part!r}")
            ids.append(int(part))
    return ids


def _source_kwargs(
    cfg: Dict[str, Any],
    limit: Optional[int],
    since_id: Optional[int],
    until_id: Optional[int],
    force_refetch: bool,
) -> Dict[str, Any]:
    return {
        "limit": limit if limit is not None else int(cfg["ingest"]["limit"]),
        "since_id": since_id,
        "until_id": until_id,
        "force_refetch": force_refetch,
    }


def _flag(value: Optional[bool], cfg: Dict[str, Any], key: str) -> bool:
    return bool(cfg["ingest"].get(key, True)) if value is None else value


def _finish(reports: List[RunReport]) -> None:
    render_run_reports(reports, console)
    code = combined_exit_code(reports)
    if code:
        raise typer.Exit(code=code)


LIMIT_OPT = typer.Option(None, "--limit", help="Max match ids per run (default from config)")
BATCH_OPT = typer.Option(None, "--batch-size", help="Match ids per request (default from config)")
SINCE_OPT = typer.Option(None, "--since-id", help="Only ids greater than this")
UNTIL_OPT = typer.Option(None, "--until-id", help="Only ids up to and including this")
INFO_OPT = typer.Option(None, "--include-info/--no-include-info", help="Request match info")
PLAYERS_OPT = typer.Option(None, "--include-players/--no-include-players", help="Request participants")
DRY_RUN_OPT = typer.Option(False, "--dry-run", help="Fetch and validate without writing")
REFETCH_OPT = typer.Option(False, "--force-refetch", help="Fetch ids that are already stored")


@app.callback()
def main_callback(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    ensure_paths()
    _setup_logging(verbose)


@app.command()
def auth(
    api_key: Optional[str] = typer.Option(None, help="Deadlock API key (sent as X-API-KEY)"),
    steam_key: Optional[str] = typer.Option(None, help="Steam Web API key for vanity names"),
):
    """Save API keys to the keyring and report which keys are available."""
    if api_key:
        set_api_key(api_key, "api")
        rprint("[green]Saved Deadlock API key to keyring.[/green]")
    if steam_key:
        set_api_key(steam_key, "steam")
        rprint("[green]Saved Steam Web API key to keyring.[/green]")
    cfg = get_config()
    if get_api_key("api", cfg):
        rprint("[green]Deadlock API key present[/green]")
    else:
        rprint("[yellow]No Deadlock API key (optional; set DEADLOCK_API_KEY or pass --api-key).[/yellow]")
    if get_api_key("steam", cfg):
        rprint("[green]Steam Web API key present[/green]")
    else:
        rprint("[yellow]No Steam Web API key; vanity names and /id/ URLs will not resolve.[/yellow]")


@app.command()
def config(
    action: str = typer.Argument("show", help="show|edit|path"),
):
    if action == "show":
        rprint(Path(config_path()).read_text())
    elif action == "path":
        rprint(config_path())
    elif action == "edit":
        opened = open_config_in_editor()
        if not opened:
            rprint("[yellow]Could not open editor. Edit the file manually:[/yellow]")
            rprint(config_path())
    else:
        rprint("[red]Unknown action. Use show|edit|path[/red]")
        raise typer.Exit(code=1)


@app.command()
def migrate():
    """Create the database schema if needed."""
    cfg = get_config()
    store = _store(cfg)
    rprint(f"[green]Schema version {store.get_meta('schema_version')}[/green] at {store.db_path}")
    render_counts(store, console)


@app.command()
def lookup(
    player: str = typer.Argument(..., help="SteamID64, account id, [U:1:N], STEAM_X:Y:Z, vanity or profile URL"),
    as_json: bool = typer.Option(False, "--json", help="Print the fetched payload as JSON"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch without saving"),
):
    """Fetch a player's profile, rank and hero stats."""
    cfg = get_config()
    try:
        payload, result = lookup_player(
            _build_client(cfg),
            _store(cfg),
            _build_resolver(cfg),
            player,
            backoff=_build_backoff(cfg),
            dry_run=dry_run,
        )
    except DltrackError as e:
        _fail(e)
        return
    if as_json:
        typer.echo(json.dumps(payload.to_dict(), indent=2, sort_keys=True))
    else:
        render_player(payload, result, console)


def _run(
    cfg: Dict[str, Any],
    store: Store,
    source: MatchIdSource,
    fetcher: Any,
    batch_size: Optional[int],
    dry_run: bool,
    label: str,
) -> RunReport:
    options = RunOptions.from_config(cfg, batch_size=batch_size, dry_run=dry_run)
    return IngestionCoordinator(store, source, fetcher, options, label=label).run()


def _metadata_fetcher(cfg: Dict[str, Any], include_info: Optional[bool], include_players: Optional[bool]) -> BatchFetcher:
    return BatchFetcher(
        _build_client(cfg),
        _build_backoff(cfg),
        include_info=_flag(include_info, cfg, "include_info"),
        include_players=_flag(include_players, cfg, "include_players"),
    )


@matches_app.command("sync-ids")
def sync_ids(
    ids: Optional[List[str]] = typer.Option(None, "--id", help="Match ids, comma separated or repeated"),
    limit: Optional[int] = LIMIT_OPT,
    batch_size: Optional[int] = BATCH_OPT,
    since_id: Optional[int] = SINCE_OPT,
    until_id: Optional[int] = UNTIL_OPT,
    include_info: Optional[bool] = INFO_OPT,
    include_players: Optional[bool] = PLAYERS_OPT,
    dry_run: bool = DRY_RUN_OPT,
    force_refetch: bool = REFETCH_OPT,
):
    """Ingest an explicit list of match ids."""
    cfg = get_config()
    store = _store(cfg)
    try:
        match_ids = _parse_ids(ids)
        if not match_ids:
            raise ValidationError("at least one --id is required")
        source = MatchIdSource.from_args(
            store, ids=match_ids, **_source_kwargs(cfg, limit, since_id, until_id, force_refetch)
        )
    except DltrackError as e:
        _fail(e)
        return
    fetcher = _metadata_fetcher(cfg, include_info, include_players)
    _finish([_run(cfg, store, source, fetcher, batch_size, dry_run, "ids")])


@matches_app.command("sync-player")
def sync_player(
    players: List[str] = typer.Option(..., "--player", help="Player identifier; repeat for several players"),
    workers: int = typer.Option(4, "--workers", help="Players ingested at the same time"),
    limit: Optional[int] = LIMIT_OPT,
    batch_size: Optional[int] = BATCH_OPT,
    since_id: Optional[int] = SINCE_OPT,
    until_id: Optional[int] = UNTIL_OPT,
    include_info: Optional[bool] = INFO_OPT,
    include_players: Optional[bool] = PLAYERS_OPT,
    dry_run: bool = DRY_RUN_OPT,
    force_refetch: bool = REFETCH_OPT,
):
    """Ingest the matches of players' stored rank history (see `lookup`)."""
    cfg = get_config()
    store = _store(cfg)
    kwargs = _source_kwargs(cfg, limit, since_id, until_id, force_refetch)
    try:
        sources = [
            MatchIdSource.from_args(store, player=p, resolver=_build_resolver(cfg), **kwargs) for p in players
        ]
    except DltrackError as e:
        _fail(e)
        return

    def job(source: MatchIdSource):
        # own client and backoff per player
        fetcher = _metadata_fetcher(cfg, include_info, include_players)
        return lambda: _run(cfg, store, source, fetcher, batch_size, dry_run, source.player or "")

    _finish(ingest_concurrently([job(s) for s in sources], max_workers=workers))


@matches_app.command("sync-range")
def sync_range(
    limit: Optional[int] = LIMIT_OPT,
    batch_size: Optional[int] = BATCH_OPT,
    since_id: Optional[int] = SINCE_OPT,
    until_id: Optional[int] = UNTIL_OPT,
    include_info: Optional[bool] = INFO_OPT,
    include_players: Optional[bool] = PLAYERS_OPT,
    dry_run: bool = DRY_RUN_OPT,
    force_refetch: bool = REFETCH_OPT,
):
    """Probe consecutive match ids after the newest stored one."""
    cfg = get_config()
    store = _store(cfg)
    try:
        source = MatchIdSource.from_args(
            store, probe=True, **_source_kwargs(cfg, limit, since_id, until_id, force_refetch)
        )
    except DltrackError as e:
        _fail(e)
        return
    fetcher = _metadata_fetcher(cfg, include_info, include_players)
    _finish([_run(cfg, store, source, fetcher, batch_size, dry_run, "range")])


@matches_app.command("history")
def history(
    player: str = typer.Option(..., "--player", help="Player identifier"),
    only_stored_history: bool = typer.Option(
        False, "--only-stored-history", help="Only matches the API already has stored"
    ),
    limit: Optional[int] = LIMIT_OPT,
    batch_size: Optional[int] = BATCH_OPT,
    since_id: Optional[int] = SINCE_OPT,
    until_id: Optional[int] = UNTIL_OPT,
    include_info: Optional[bool] = INFO_OPT,
    include_players: Optional[bool] = PLAYERS_OPT,
    dry_run: bool = DRY_RUN_OPT,
    force_refetch: bool = REFETCH_OPT,
):
    """Replay a player's match history into the match tables.

    History rows carry only the player's own line, so each match gets one
    participant per history entry; --include-info/--include-players have
    no effect here.
    """
    cfg = get_config()
    store = _store(cfg)
    try:
        fetcher = HistoryBatchFetcher(
            _build_client(cfg),
            _build_backoff(cfg),
            force_refetch=force_refetch,
            only_stored_history=only_stored_history,
        )
        source = MatchIdSource(
            store,
            PLAYER,
            player=player,
            resolver=_build_resolver(cfg),
            ids_for_account=fetcher.load,
            **_source_kwargs(cfg, limit, since_id, until_id, force_refetch),
        )
    except DltrackError as e:
        _fail(e)
        return
    _finish([_run(cfg, store, source, fetcher, batch_size, dry_run, f"history {player}")])


if __name__ == "__main__":
    app()
