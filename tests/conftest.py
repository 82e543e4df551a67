from typing import Callable, Dict, List, Optional, Sequence

import pytest

from dltrack.api import ApiResponse
from dltrack.models import MmrEntry, PlayerPayload, SteamProfile
from dltrack.ratelimit import BackoffPolicy, BackoffState
from dltrack.steam import account_id_to_steamid64
from dltrack.store import TABLES, Store


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for name in ("DEADLOCK_API_KEY", "STEAM_WEB_API_KEY", "DEADLOCK_API_BASE", "STEAM_WEB_API_BASE", "DLTRACK_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    saved: Dict[str, str] = {}
    monkeypatch.setattr("dltrack.config.keyring.get_password", lambda service, user: saved.get(user))
    monkeypatch.setattr(
        "dltrack.config.keyring.set_password", lambda service, user, value: saved.__setitem__(user, value)
    )
    return saved


@pytest.fixture
def store(tmp_path):
    return Store(str(tmp_path / "dltrack.db"))


def snapshot(store: Store) -> Dict[str, list]:
    """Every row of every table, for before/after comparisons."""
    with store.connect() as con:
        return {
            t: sorted((tuple(r) for r in con.execute(f"SELECT * FROM {t}")), key=repr)
            for t in (*TABLES, "meta")
        }


def seed_mmr_history(store: Store, account_id: int, match_ids: Sequence[int]) -> None:
    """Store MMR observations, one per match with start_time equal to the match id."""
    store.ingest_player(
        PlayerPayload(
            account_id=account_id,
            steamid64=account_id_to_steamid64(account_id),
            profile=SteamProfile(account_id=account_id),
            mmr_history=[
                MmrEntry(account_id=account_id, match_id=m, start_time=m) for m in match_ids
            ],
        )
    )


def quiet_backoff(max_attempts: int = 4) -> BackoffState:
    sleeps: List[float] = []
    return BackoffState(policy=BackoffPolicy(max_attempts=max_attempts), sleep=sleeps.append)


def player_json(account_id: int, **kw) -> dict:
    base = {"account_id": account_id, "hero_id": 7, "team": 0, "kills": 3, "deaths": 1, "assists": 5}
    base.update(kw)
    return base


def match_json(match_id: int, players: Sequence[int] = (1001, 1002), **kw) -> dict:
    base = {
        "match_id": match_id,
        "start_time": 1_700_000_000 + match_id,
        "duration_s": 1800,
        "winner_team": "team0",
        "info": {"game_mode": 1},
        "players": [player_json(a) for a in players],
    }
    base.update(kw)
    return base


class FakeMetadataClient:
    """Answers matches metadata requests from a dict of known matches.

    ``script`` holds responses (or exceptions) served before falling back to
    the known matches, one per request.
    """

    def __init__(self, known: Optional[Dict[int, dict]] = None, script: Optional[list] = None) -> None:
        self.known = known or {}
        self.script = list(script or [])
        self.calls: List[List[int]] = []

    def matches_metadata_request(self, match_ids, include_info=True, include_players=True) -> ApiResponse:
        ids = list(match_ids)
        self.calls.append(ids)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(ids)
            return item
        found = [self.known[i] for i in ids if i in self.known]
        return ApiResponse(status=200, payload=found)


def known_matches(ids: Sequence[int]) -> Dict[int, dict]:
    return {i: match_json(i) for i in ids}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = "", headers: Optional[dict] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses: Optional[List] = None, handler: Optional[Callable] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.requests: List[dict] = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.requests.append({"url": url, "headers": headers or {}, "params": params or {}})
        if self.handler is not None:
            return self.handler(url, params or {})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item
