from __future__ import annotations

import itertools
import logging
from typing import Callable, Iterable, Iterator, List, Optional, Set

from .errors import PersistenceError, ValidationError
from .steam import IdentityResolver
from .store import Store


logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 500
DEFAULT_BATCH_SIZE = 100
LOOKUP_ATTEMPTS = 3

EXPLICIT = "explicit"
PLAYER = "player"
RANGE = "range"


class MatchIdSource:
    """Bounded, ordered stream of match ids to fetch.

    Three mutually exclusive modes: an explicit id list, the match ids of a
    player's stored MMR history (or any other per-account provider), and a
    probe over consecutive ids in ``(since_id, until_id]``.
    """

    def __init__(
        self,
        store: Store,
        mode: str,
        ids: Optional[Iterable[int]] = None,
        player: Optional[str] = None,
        resolver: Optional[IdentityResolver] = None,
        ids_for_account: Optional[Callable[[int], Iterable[int]]] = None,
        since_id: Optional[int] = None,
        until_id: Optional[int] = None,
        limit: int = DEFAULT_LIMIT,
        force_refetch: bool = False,
    ) -> None:
        if mode not in (EXPLICIT, PLAYER, RANGE):
            raise ValidationError(f"unknown source mode {mode!r}")
        if limit < 1:
            raise ValidationError("--limit must be at least 1")
        if since_id is not None and since_id < 0:
            raise ValidationError("--since-id must not be negative")
        if since_id is not None and until_id is not None and until_id <= since_id:
            raise ValidationError("--until-id must be greater than --since-id")
        if mode == PLAYER and not player:
            raise ValidationError("a player identifier is required")
        self.store = store
        self.mode = mode
        self.ids = list(ids or [])
        self.player = player
        self.resolver = resolver or IdentityResolver()
        self.ids_for_account = ids_for_account or store.mmr_match_ids
        self.since_id = since_id
        self.until_id = until_id
        self.limit = limit
        self.force_refetch = force_refetch
        self.account_id: Optional[int] = None
        self.skipped_existing = 0

    @classmethod
    def from_args(
        cls,
        store: Store,
        ids: Optional[Iterable[int]] = None,
        player: Optional[str] = None,
        probe: bool = False,
        **kwargs,
    ) -> "MatchIdSource":
        ids = list(ids or [])
        chosen = [name for name, on in (("--id", bool(ids)), ("--player", bool(player)), ("range probe", probe)) if on]
        if len(chosen) > 1:
            raise ValidationError(f"{' and '.join(chosen)} are mutually exclusive")
        if ids:
            return cls(store, EXPLICIT, ids=ids, **kwargs)
        if player:
            return cls(store, PLAYER, player=player, **kwargs)
        return cls(store, RANGE, **kwargs)

    @property
    def needs_resolution(self) -> bool:
        return self.mode == PLAYER and self.account_id is None

    def resolve(self) -> int:
        if self.account_id is None:
            self.account_id = self.resolver.resolve(self.player or "")
            logger.info("resolved %s to account %s", self.player, self.account_id)
        return self.account_id

    def effective_since_id(self) -> int:
        if self.since_id is not None:
            return self.since_id
        if self.mode == RANGE:
            return self.store.max_match_id()
        return 0

    def _in_range(self, match_id: int) -> bool:
        if self.since_id is not None and match_id <= self.since_id:
            return False
        if self.until_id is not None and match_id > self.until_id:
            return False
        return True

    def candidates(self) -> Iterator[int]:
        """Raw candidate ids in order, before skipping stored ones."""
        if self.mode == RANGE:
            start = self.effective_since_id() + 1
            ids: Iterable[int] = itertools.count(start)
            if self.until_id is not None:
                ids = range(start, self.until_id + 1)
            yield from ids
            return
        if self.mode == PLAYER:
            raw: Iterable[int] = self.ids_for_account(self.resolve())
        else:
            raw = self.ids
        seen: Set[int] = set()
        for mid in raw:
            mid = int(mid)
            if mid in seen or not self._in_range(mid):
                continue
            seen.add(mid)
            yield mid

    def _unstored(self, window: List[int]) -> List[int]:
        if self.force_refetch:
            return window
        existing: Set[int] = set()
        for attempt in range(1, LOOKUP_ATTEMPTS + 1):
            try:
                existing = self.store.existing_match_ids(window)
                break
            except PersistenceError as e:
                logger.warning("stored-id lookup failed (attempt %s/%s): %s", attempt, LOOKUP_ATTEMPTS, e)
        else:
            logger.warning("treating %s ids as not stored", len(window))
        self.skipped_existing += len(existing)
        return [mid for mid in window if mid not in existing]

    def chunks(self, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[List[int]]:
        """Chunks of at most ``batch_size`` ids, ``limit`` ids in total.

        Stored ids are looked up one window at a time, right before the chunk
        that needs them is emitted.
        """
        if batch_size < 1:
            raise ValidationError("--batch-size must be at least 1")
        candidates = self.candidates()
        emitted = 0
        pending: List[int] = []
        while emitted + len(pending) < self.limit:
            window = list(itertools.islice(candidates, batch_size))
            if not window:
                break
            for mid in self._unstored(window):
                pending.append(mid)
                if len(pending) == batch_size or emitted + len(pending) >= self.limit:
                    yield pending
                    emitted += len(pending)
                    pending = []
                    if emitted >= self.limit:
                        return
        if pending:
            yield pending
