from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .config import db_path
from .errors import PersistenceError
from .models import HeroStats, MatchPlayer, MatchRecord, MmrEntry, PlayerPayload, SteamProfile
from .steam import account_id_to_steamid64


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "2"

# SQLite's default host parameter limit is 999
_IN_CHUNK = 500

TABLES = (
    "players",
    "latest_mmr",
    "mmr_history",
    "hero_stats_current",
    "hero_stats_history",
    "matches",
    "match_players",
)


SCHEMA = [
    # meta
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    # players
    """
    CREATE TABLE IF NOT EXISTS players (
        account_id INTEGER PRIMARY KEY,
        steamid64 TEXT UNIQUE NOT NULL CHECK (length(steamid64) = 17),
        personaname TEXT,
        profileurl TEXT,
        avatar TEXT,
        avatarmedium TEXT,
        avatarfull TEXT,
        countrycode TEXT,
        realname TEXT,
        profile_extra TEXT NOT NULL DEFAULT '{}',
        profile_updated_at INTEGER,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # current mmr snapshot
    """
    CREATE TABLE IF NOT EXISTS latest_mmr (
        account_id INTEGER PRIMARY KEY REFERENCES players(account_id) ON DELETE CASCADE,
        match_id INTEGER,
        start_time INTEGER,
        player_score REAL,
        rank INTEGER,
        division INTEGER,
        division_tier INTEGER,
        extra TEXT NOT NULL DEFAULT '{}'
    )
    """,
    # mmr history, insert-only
    """
    CREATE TABLE IF NOT EXISTS mmr_history (
        account_id INTEGER NOT NULL REFERENCES players(account_id) ON DELETE CASCADE,
        start_time INTEGER NOT NULL,
        match_id INTEGER,
        player_score REAL,
        rank INTEGER,
        division INTEGER,
        division_tier INTEGER,
        extra TEXT NOT NULL DEFAULT '{}',
        PRIMARY KEY (account_id, start_time)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mmr_history_account_time ON mmr_history(account_id, start_time DESC)
    """,
    # per-hero aggregates, overwritten in place
    """
    CREATE TABLE IF NOT EXISTS hero_stats_current (
        account_id INTEGER NOT NULL REFERENCES players(account_id) ON DELETE CASCADE,
        hero_id INTEGER NOT NULL,
        matches_played INTEGER,
        wins INTEGER,
        last_played INTEGER,
        time_played INTEGER,
        ending_level REAL,
        kills INTEGER,
        deaths INTEGER,
        assists INTEGER,
        kills_per_min REAL,
        deaths_per_min REAL,
        assists_per_min REAL,
        networth_per_min REAL,
        last_hits_per_min REAL,
        damage_per_min REAL,
        damage_taken_per_min REAL,
        obj_damage_per_min REAL,
        accuracy REAL,
        crit_shot_rate REAL,
        extra TEXT NOT NULL DEFAULT '{}',
        PRIMARY KEY (account_id, hero_id)
    )
    """,
    # hero snapshots, insert-only
    """
    CREATE TABLE IF NOT EXISTS hero_stats_history (
        account_id INTEGER NOT NULL REFERENCES players(account_id) ON DELETE CASCADE,
        hero_id INTEGER NOT NULL,
        last_played INTEGER NOT NULL,
        snapshot_json TEXT NOT NULL,
        PRIMARY KEY (account_id, hero_id, last_played)
    )
    """,
    # matches, immutable once written
    """
    CREATE TABLE IF NOT EXISTS matches (
        match_id INTEGER PRIMARY KEY,
        start_time INTEGER,
        duration_s INTEGER,
        winner_team TEXT,
        average_badge INTEGER,
        region TEXT,
        patch_version TEXT,
        info_json TEXT NOT NULL DEFAULT '{}',
        fetched_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_matches_start_time ON matches(start_time DESC)
    """,
    # participants per match
    """
    CREATE TABLE IF NOT EXISTS match_players (
        match_id INTEGER NOT NULL REFERENCES matches(match_id) ON DELETE CASCADE,
        account_id INTEGER NOT NULL REFERENCES players(account_id) ON DELETE CASCADE,
        hero_id INTEGER,
        team TEXT,
        party_id INTEGER,
        lane TEXT,
        is_victory INTEGER,
        kills INTEGER,
        deaths INTEGER,
        assists INTEGER,
        networth INTEGER,
        damage INTEGER,
        damage_taken INTEGER,
        obj_damage INTEGER,
        last_hits INTEGER,
        accuracy REAL,
        crit_shot_rate REAL,
        extra_json TEXT NOT NULL DEFAULT '{}',
        PRIMARY KEY (match_id, account_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_match_players_account ON match_players(account_id)
    """,
]


HERO_COLUMNS = [
    "matches_played",
    "wins",
    "last_played",
    "time_played",
    "ending_level",
    "kills",
    "deaths",
    "assists",
    "kills_per_min",
    "deaths_per_min",
    "assists_per_min",
    "networth_per_min",
    "last_hits_per_min",
    "damage_per_min",
    "damage_taken_per_min",
    "obj_damage_per_min",
    "accuracy",
    "crit_shot_rate",
]

PARTICIPANT_COLUMNS = [
    "hero_id",
    "team",
    "party_id",
    "lane",
    "is_victory",
    "kills",
    "deaths",
    "assists",
    "networth",
    "damage",
    "damage_taken",
    "obj_damage",
    "last_hits",
    "accuracy",
    "crit_shot_rate",
]


def _json(value: Any) -> str:
    return json.dumps(value or {}, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class PlayerIngestResult:
    mmr_updated: bool = False
    mmr_history_added: int = 0
    heroes_upserted: int = 0
    hero_history_added: int = 0


@dataclass
class MatchWriteResult:
    matches_inserted: int = 0
    matches_existing: int = 0
    participants_inserted: int = 0
    players_created: int = 0

    def add(self, other: "MatchWriteResult") -> None:
        self.matches_inserted += other.matches_inserted
        self.matches_existing += other.matches_existing
        self.participants_inserted += other.participants_inserted
        self.players_created += other.players_created


@dataclass
class Store:
    db_path: str = field(default_factory=db_path)

    def __post_init__(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as con:
            cur = con.cursor()
            for stmt in SCHEMA:
                cur.execute(stmt)
            # ensure schema_version
            cur.execute("INSERT OR IGNORE INTO meta(key,value) VALUES('schema_version',?)", (SCHEMA_VERSION,))
            con.commit()

    @contextmanager
    def connect(self):
        con = sqlite3.connect(self.db_path, timeout=30)
        con.row_factory = sqlite3.Row
        try:
            # WAL so concurrent runs read committed data while another writes
            con.execute("PRAGMA journal_mode=WAL")
            con.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError as e:
            logger.debug("pragma setup skipped: %s", e)
        con.execute("PRAGMA foreign_keys=ON")
        try:
            yield con
        finally:
            con.close()

    # ---- players ----
    def ingest_player(self, payload: PlayerPayload) -> PlayerIngestResult:
        """Profile, MMR and hero stats of one player in a single transaction."""
        res = PlayerIngestResult()
        try:
            with self.connect() as con:
                with con:
                    self._upsert_player(con, payload.account_id, payload.steamid64, payload.profile)
                    if payload.latest_mmr is not None:
                        self._upsert_latest_mmr(con, payload.account_id, payload.latest_mmr)
                        res.mmr_updated = True
                    history = list(payload.mmr_history)
                    if payload.latest_mmr is not None:
                        history.append(payload.latest_mmr)
                    for m in history:
                        if self._append_mmr_history(con, payload.account_id, m):
                            res.mmr_history_added += 1
                    for h in payload.hero_stats:
                        self._upsert_hero_current(con, payload.account_id, h)
                        res.heroes_upserted += 1
                        if self._append_hero_history(con, payload.account_id, h):
                            res.hero_history_added += 1
        except sqlite3.Error as e:
            raise PersistenceError(f"saving player {payload.account_id} failed: {e}") from e
        return res

    def _upsert_player(self, con: sqlite3.Connection, account_id: int, steamid64: str, p: SteamProfile) -> None:
        con.execute(
            """
            INSERT INTO players(account_id, steamid64, personaname, profileurl, avatar, avatarmedium, avatarfull,
                                countrycode, realname, profile_extra, profile_updated_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(account_id) DO UPDATE SET
                steamid64=excluded.steamid64,
                personaname=excluded.personaname,
                profileurl=excluded.profileurl,
                avatar=excluded.avatar,
                avatarmedium=excluded.avatarmedium,
                avatarfull=excluded.avatarfull,
                countrycode=excluded.countrycode,
                realname=excluded.realname,
                profile_extra=json_patch(players.profile_extra, excluded.profile_extra),
                profile_updated_at=COALESCE(
                    MAX(players.profile_updated_at, excluded.profile_updated_at),
                    players.profile_updated_at,
                    excluded.profile_updated_at
                )
            """,
            (
                account_id,
                steamid64,
                p.personaname,
                p.profileurl,
                p.avatar,
                p.avatarmedium,
                p.avatarfull,
                p.countrycode,
                p.realname,
                _json(p.extra),
                p.last_updated,
            ),
        )

    def _ensure_player_stub(self, con: sqlite3.Connection, account_id: int) -> bool:
        cur = con.execute(
            "INSERT INTO players(account_id, steamid64) VALUES(?,?) ON CONFLICT(account_id) DO NOTHING",
            (account_id, account_id_to_steamid64(account_id)),
        )
        return cur.rowcount == 1

    def _upsert_latest_mmr(self, con: sqlite3.Connection, account_id: int, m: MmrEntry) -> None:
        con.execute(
            """
            INSERT INTO latest_mmr(account_id, match_id, start_time, player_score, rank, division, division_tier, extra)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(account_id) DO UPDATE SET
                match_id=excluded.match_id,
                start_time=excluded.start_time,
                player_score=excluded.player_score,
                rank=excluded.rank,
                division=excluded.division,
                division_tier=excluded.division_tier,
                extra=excluded.extra
            """,
            (account_id, m.match_id, m.start_time, m.player_score, m.rank, m.division, m.division_tier, _json(m.extra)),
        )

    def _append_mmr_history(self, con: sqlite3.Connection, account_id: int, m: MmrEntry) -> bool:
        cur = con.execute(
            """
            INSERT INTO mmr_history(account_id, start_time, match_id, player_score, rank, division, division_tier, extra)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(account_id, start_time) DO NOTHING
            """,
            (account_id, m.start_time, m.match_id, m.player_score, m.rank, m.division, m.division_tier, _json(m.extra)),
        )
        return cur.rowcount == 1

    def _upsert_hero_current(self, con: sqlite3.Connection, account_id: int, h: HeroStats) -> None:
        keys = ["account_id", "hero_id", *HERO_COLUMNS, "extra"]
        values = [account_id, h.hero_id, *[getattr(h, k) for k in HERO_COLUMNS], _json(h.extra)]
        updates = ",\n".join(f"{k}=excluded.{k}" for k in [*HERO_COLUMNS, "extra"])
        con.execute(
            f"""
            INSERT INTO hero_stats_current({','.join(keys)})
            VALUES({','.join(['?'] * len(keys))})
            ON CONFLICT(account_id, hero_id) DO UPDATE SET
                {updates}
            """,
            values,
        )

    def _append_hero_history(self, con: sqlite3.Connection, account_id: int, h: HeroStats) -> bool:
        # only when last_played moves past every stored snapshot of this hero
        if h.last_played is None:
            return False
        cur = con.execute(
            """
            INSERT INTO hero_stats_history(account_id, hero_id, last_played, snapshot_json)
            SELECT ?,?,?,?
            WHERE NOT EXISTS (
                SELECT 1 FROM hero_stats_history
                WHERE account_id=? AND hero_id=? AND last_played>=?
            )
            """,
            (account_id, h.hero_id, h.last_played, _json(h.snapshot()), account_id, h.hero_id, h.last_played),
        )
        return cur.rowcount == 1

    # ---- matches ----
    def write_matches(self, records: Sequence[MatchRecord]) -> MatchWriteResult:
        """Write a batch of matches with their participants atomically.

        Matches and participants are insert-only: rows that already exist are
        left untouched. If anything fails the whole batch rolls back.
        """
        out = MatchWriteResult()
        if not records:
            return out
        try:
            with self.connect() as con:
                with con:
                    for rec in records:
                        self._write_match(con, rec, out)
        except sqlite3.Error as e:
            raise PersistenceError(f"writing {len(records)} matches failed: {e}") from e
        return out

    def _write_match(self, con: sqlite3.Connection, m: MatchRecord, out: MatchWriteResult) -> None:
        cur = con.execute(
            """
            INSERT INTO matches(match_id, start_time, duration_s, winner_team, average_badge, region, patch_version, info_json)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(match_id) DO NOTHING
            """,
            (m.match_id, m.start_time, m.duration_s, m.winner_team, m.average_badge, m.region, m.patch_version, _json(m.info)),
        )
        if cur.rowcount == 1:
            out.matches_inserted += 1
        else:
            out.matches_existing += 1
        for p in m.players:
            if self._ensure_player_stub(con, p.account_id):
                out.players_created += 1
            if self._insert_participant(con, m.match_id, p):
                out.participants_inserted += 1

    def _insert_participant(self, con: sqlite3.Connection, match_id: int, p: MatchPlayer) -> bool:
        keys = ["match_id", "account_id", *PARTICIPANT_COLUMNS, "extra_json"]
        values = [match_id, p.account_id, *[getattr(p, k) for k in PARTICIPANT_COLUMNS], _json(p.extra)]
        cur = con.execute(
            f"""
            INSERT INTO match_players({','.join(keys)}) VALUES({','.join(['?'] * len(keys))})
            ON CONFLICT(match_id, account_id) DO NOTHING
            """,
            values,
        )
        return cur.rowcount == 1

    # Queries
    @contextmanager
    def _query(self, what: str):
        try:
            with self.connect() as con:
                yield con
        except sqlite3.Error as e:
            raise PersistenceError(f"{what} failed: {e}") from e

    def existing_match_ids(self, match_ids: Iterable[int]) -> Set[int]:
        ids = [int(i) for i in match_ids]
        found: Set[int] = set()
        with self._query("stored match lookup") as con:
            for i in range(0, len(ids), _IN_CHUNK):
                part = ids[i : i + _IN_CHUNK]
                rows = con.execute(
                    f"SELECT match_id FROM matches WHERE match_id IN ({','.join(['?'] * len(part))})",
                    part,
                ).fetchall()
                found.update(r[0] for r in rows)
        return found

    def max_match_id(self) -> int:
        with self._query("max match id") as con:
            row = con.execute("SELECT COALESCE(MAX(match_id), 0) FROM matches").fetchone()
        return int(row[0])

    def mmr_match_ids(self, account_id: int) -> List[int]:
        """Match ids of a player's stored MMR history, newest first."""
        with self._query(f"mmr history of {account_id}") as con:
            rows = con.execute(
                """
                SELECT match_id FROM mmr_history
                WHERE account_id=? AND match_id IS NOT NULL
                ORDER BY start_time DESC, match_id DESC
                """,
                (account_id,),
            ).fetchall()
        return [int(r[0]) for r in rows]

    def get_player(self, account_id: int) -> Optional[sqlite3.Row]:
        with self._query(f"player {account_id}") as con:
            return con.execute("SELECT * FROM players WHERE account_id=?", (account_id,)).fetchone()

    def match_participants(self, match_id: int) -> List[sqlite3.Row]:
        with self._query(f"participants of {match_id}") as con:
            rows = con.execute(
                "SELECT * FROM match_players WHERE match_id=? ORDER BY account_id", (match_id,)
            ).fetchall()
        return list(rows)

    def table_counts(self) -> Dict[str, int]:
        with self._query("table counts") as con:
            return {t: int(con.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]) for t in TABLES}

    def get_meta(self, key: str) -> Optional[str]:
        with self._query(f"meta {key}") as con:
            row = con.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            return row[0] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._query(f"meta {key}") as con:
            con.execute(
                "INSERT INTO meta(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            con.commit()
