from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from .api import DeadlockClient, send_with_backoff
from .errors import ApiError
from .models import MatchRecord, parse_list
from .ratelimit import BackoffState


logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    requested: List[int]
    matches: List[MatchRecord] = field(default_factory=list)
    not_found: List[int] = field(default_factory=list)


class BatchFetcher:
    """Fetches match metadata one chunk per request.

    Retries and rate-limit waits go through the ``backoff`` state owned by
    the current run. Raises ``RateLimited`` or ``TransientNetworkError``
    once the retry budget is spent and ``ParseError`` for malformed batches.
    """

    def __init__(
        self,
        client: DeadlockClient,
        backoff: BackoffState,
        include_info: bool = True,
        include_players: bool = True,
    ) -> None:
        self.client = client
        self.backoff = backoff
        self.include_info = include_info
        self.include_players = include_players
        self.batches_requested = 0

    def fetch(self, chunk: Sequence[int]) -> BatchResult:
        ids = [int(i) for i in chunk]
        result = BatchResult(requested=ids)
        if not ids:
            return result
        self.batches_requested += 1
        resp = send_with_backoff(
            lambda: self.client.matches_metadata_request(ids, self.include_info, self.include_players),
            self.backoff,
        )
        if resp.status == 404:
            logger.info("no matches found for %s ids starting at %s", len(ids), ids[0])
            result.not_found = ids
            return result
        if not resp.ok:
            raise ApiError(resp.status, resp.text)
        records = parse_list(resp.payload, MatchRecord.from_api, "matches metadata")
        wanted = set(ids)
        by_id = {}
        for rec in records:
            if rec.match_id not in wanted:
                logger.debug("ignoring unrequested match %s", rec.match_id)
                continue
            by_id.setdefault(rec.match_id, rec)
        result.matches = [by_id[i] for i in ids if i in by_id]
        result.not_found = [i for i in ids if i not in by_id]
        return result
