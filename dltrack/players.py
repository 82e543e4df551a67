from __future__ import annotations

import logging
from typing import Optional, Tuple

from .api import DeadlockClient
from .errors import ApiError, NotFoundError, ParseError, TransientNetworkError
from .models import PlayerPayload, latest_mmr_for
from .ratelimit import BackoffState
from .steam import IdentityResolver, account_id_to_steamid64
from .store import PlayerIngestResult, Store


logger = logging.getLogger(__name__)


def lookup_player(
    client: DeadlockClient,
    store: Store,
    resolver: IdentityResolver,
    player: str,
    backoff: Optional[BackoffState] = None,
    dry_run: bool = False,
) -> Tuple[PlayerPayload, Optional[PlayerIngestResult]]:
    """Fetch profile, MMR and hero stats for one player and store them.

    The Steam profile is required; MMR and hero stats are best effort.
    Returns the fetched payload and the write result (``None`` on dry run).
    """
    backoff = backoff or BackoffState()
    account_id = resolver.resolve(player)
    steamid64 = account_id_to_steamid64(account_id)

    try:
        profiles = client.steam_profiles([account_id], backoff)
    except NotFoundError:
        profiles = []
    profile = next((p for p in profiles if p.account_id == account_id), None)
    if profile is None:
        raise NotFoundError(f"no Steam profile for account {account_id}")

    payload = PlayerPayload(account_id=account_id, steamid64=steamid64, profile=profile)

    try:
        entries = [m for m in client.mmr([account_id], backoff) if m.account_id == account_id]
        payload.mmr_history = sorted(entries, key=lambda m: (m.start_time, m.match_id))
        payload.latest_mmr = latest_mmr_for(entries, account_id)
    except (NotFoundError, ApiError, ParseError, TransientNetworkError) as e:
        logger.warning("mmr unavailable for %s: %s", account_id, e)

    try:
        payload.hero_stats = [h for h in client.hero_stats([account_id], backoff) if h.account_id == account_id]
    except (NotFoundError, ApiError, ParseError, TransientNetworkError) as e:
        logger.warning("hero stats unavailable for %s: %s", account_id, e)

    if dry_run:
        logger.info("dry-run: not saving player %s", account_id)
        return payload, None
    result = store.ingest_player(payload)
    logger.info(
        "saved player %s: mmr=%s mmr_history=%s heroes=%s hero_history=%s",
        account_id,
        result.mmr_updated,
        result.mmr_history_added,
        result.heroes_upserted,
        result.hero_history_added,
    )
    return payload, result
