from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence

from .api import DeadlockClient
from .errors import ValidationError
from .fetcher import BatchResult
from .models import MatchHistoryEntry, MatchPlayer, MatchRecord
from .ratelimit import BackoffState


logger = logging.getLogger(__name__)


def group_history(entries: Iterable[MatchHistoryEntry]) -> List[MatchRecord]:
    """Fold history rows into one MatchRecord per match id, newest first.

    Every row becomes one participant. Match-level fields come from the
    first row seen for that match.
    """
    grouped: "OrderedDict[int, List[MatchHistoryEntry]]" = OrderedDict()
    for e in entries:
        grouped.setdefault(e.match_id, []).append(e)
    records: List[MatchRecord] = []
    for match_id, rows in grouped.items():
        first = rows[0]
        players: Dict[int, MatchPlayer] = {}
        for row in rows:
            players.setdefault(row.account_id, row.to_participant())
        records.append(
            MatchRecord(
                match_id=match_id,
                start_time=first.start_time,
                duration_s=first.match_duration_s,
                players=tuple(players.values()),
            )
        )
    records.sort(key=lambda r: (r.start_time or 0, r.match_id), reverse=True)
    return records


class HistoryBatchFetcher:
    """Serves chunks out of one player's match history.

    ``load`` makes the single remote call; ``fetch`` then answers chunks
    from memory, so the coordinator can drive history replay the same way
    it drives metadata batches.
    """

    def __init__(
        self,
        client: DeadlockClient,
        backoff: BackoffState,
        force_refetch: bool = False,
        only_stored_history: bool = False,
    ) -> None:
        if force_refetch and only_stored_history:
            raise ValidationError("--force-refetch and --only-stored-history are mutually exclusive")
        self.client = client
        self.backoff = backoff
        self.force_refetch = force_refetch
        self.only_stored_history = only_stored_history
        self.records: Dict[int, MatchRecord] = {}
        self.batches_requested = 0

    def load(self, account_id: int) -> List[int]:
        entries = self.client.match_history(
            account_id,
            self.backoff,
            force_refetch=self.force_refetch,
            only_stored_history=self.only_stored_history,
        )
        records = group_history(entries)
        self.records = {r.match_id: r for r in records}
        logger.info("history for %s: %s entries in %s matches", account_id, len(entries), len(records))
        return [r.match_id for r in records]

    def fetch(self, chunk: Sequence[int]) -> BatchResult:
        ids = [int(i) for i in chunk]
        self.batches_requested += 1
        found = [self.records[i] for i in ids if i in self.records]
        missing = [i for i in ids if i not in self.records]
        return BatchResult(requested=ids, matches=found, not_found=missing)
