from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dateutil import parser as dateparser

from .errors import ParseError


ACCOUNT_ID_MAX = 2**32 - 1
_INT_RE = re.compile(r"-?[0-9]+")


def _int(payload: Mapping[str, Any], key: str) -> int:
    value = _opt_int(payload, key)
    if value is None:
        raise ParseError(f"missing required field {key!r}")
    return value


def _opt_int(payload: Mapping[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"field {key!r}: expected integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
        return int(value.strip())
    raise ParseError(f"field {key!r}: expected integer, got {type(value).__name__}")


def _opt_float(payload: Mapping[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"field {key!r}: expected number, got {type(value).__name__}")
    return float(value)


def _opt_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value)
    raise ParseError(f"field {key!r}: expected string, got {type(value).__name__}")


def _opt_bool(payload: Mapping[str, Any], key: str) -> Optional[bool]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise ParseError(f"field {key!r}: expected bool, got {type(value).__name__}")


def _opt_mapping(payload: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"field {key!r}: expected object, got {type(value).__name__}")
    return dict(value)


def _extra(payload: Mapping[str, Any], known: Iterable[str]) -> Dict[str, Any]:
    known = set(known)
    return {k: v for k, v in payload.items() if k not in known}


def _epoch(value: Any) -> Optional[int]:
    """Epoch seconds from an int, a numeric string or an ISO date string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ParseError(f"timestamp {value!r} is not finite")
        return int(value)
    s = str(value).strip()
    if not s:
        return None
    if _INT_RE.fullmatch(s):
        return int(s)
    try:
        dt = dateparser.parse(s)
    except (ValueError, OverflowError):
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _require_object(payload: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, dict):
        raise ParseError(f"{what}: expected object, got {type(payload).__name__}")
    return payload


def parse_list(payload: Any, parse, what: str) -> List[Any]:
    if not isinstance(payload, list):
        raise ParseError(f"{what}: expected list, got {type(payload).__name__}")
    return [parse(item) for item in payload]


def _field_names(cls) -> List[str]:
    return [f.name for f in fields(cls)]


@dataclass(frozen=True)
class SteamProfile:
    account_id: int
    personaname: Optional[str] = None
    profileurl: Optional[str] = None
    avatar: Optional[str] = None
    avatarmedium: Optional[str] = None
    avatarfull: Optional[str] = None
    countrycode: Optional[str] = None
    realname: Optional[str] = None
    last_updated: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Any) -> "SteamProfile":
        p = _require_object(payload, "steam profile")
        return cls(
            account_id=_int(p, "account_id"),
            personaname=_opt_str(p, "personaname"),
            profileurl=_opt_str(p, "profileurl"),
            avatar=_opt_str(p, "avatar"),
            avatarmedium=_opt_str(p, "avatarmedium"),
            avatarfull=_opt_str(p, "avatarfull"),
            countrycode=_opt_str(p, "countrycode"),
            realname=_opt_str(p, "realname"),
            last_updated=_epoch(p.get("last_updated")),
            extra=_extra(p, _field_names(cls)),
        )


@dataclass(frozen=True)
class MmrEntry:
    account_id: int
    match_id: int
    start_time: int
    player_score: Optional[float] = None
    rank: Optional[int] = None
    division: Optional[int] = None
    division_tier: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Any) -> "MmrEntry":
        p = _require_object(payload, "mmr entry")
        return cls(
            account_id=_int(p, "account_id"),
            match_id=_int(p, "match_id"),
            start_time=_int(p, "start_time"),
            player_score=_opt_float(p, "player_score"),
            rank=_opt_int(p, "rank"),
            division=_opt_int(p, "division"),
            division_tier=_opt_int(p, "division_tier"),
            extra=_extra(p, _field_names(cls)),
        )


HERO_STAT_INT_FIELDS = (
    "matches_played",
    "wins",
    "last_played",
    "time_played",
    "kills",
    "deaths",
    "assists",
)

HERO_STAT_FLOAT_FIELDS = (
    "ending_level",
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
)


@dataclass(frozen=True)
class HeroStats:
    account_id: int
    hero_id: int
    matches_played: Optional[int] = None
    wins: Optional[int] = None
    last_played: Optional[int] = None
    time_played: Optional[int] = None
    ending_level: Optional[float] = None
    kills: Optional[int] = None
    deaths: Optional[int] = None
    assists: Optional[int] = None
    kills_per_min: Optional[float] = None
    deaths_per_min: Optional[float] = None
    assists_per_min: Optional[float] = None
    networth_per_min: Optional[float] = None
    last_hits_per_min: Optional[float] = None
    damage_per_min: Optional[float] = None
    damage_taken_per_min: Optional[float] = None
    obj_damage_per_min: Optional[float] = None
    accuracy: Optional[float] = None
    crit_shot_rate: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Any) -> "HeroStats":
        p = _require_object(payload, "hero stats")
        values: Dict[str, Any] = {k: _opt_int(p, k) for k in HERO_STAT_INT_FIELDS}
        values.update({k: _opt_float(p, k) for k in HERO_STAT_FLOAT_FIELDS})
        return cls(
            account_id=_int(p, "account_id"),
            hero_id=_int(p, "hero_id"),
            extra=_extra(p, _field_names(cls)),
            **values,
        )

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MatchPlayer:
    account_id: int
    hero_id: Optional[int] = None
    team: Optional[str] = None
    party_id: Optional[int] = None
    lane: Optional[str] = None
    is_victory: Optional[bool] = None
    kills: Optional[int] = None
    deaths: Optional[int] = None
    assists: Optional[int] = None
    networth: Optional[int] = None
    damage: Optional[int] = None
    damage_taken: Optional[int] = None
    obj_damage: Optional[int] = None
    last_hits: Optional[int] = None
    accuracy: Optional[float] = None
    crit_shot_rate: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Any) -> "MatchPlayer":
        p = _require_object(payload, "match player")
        # nested "extra" plus any keys we do not map
        extra = _opt_mapping(p, "extra")
        extra.update(_extra(p, _field_names(cls)))
        return cls(
            account_id=_int(p, "account_id"),
            hero_id=_opt_int(p, "hero_id"),
            team=_opt_str(p, "team"),
            party_id=_opt_int(p, "party_id"),
            lane=_opt_str(p, "lane"),
            is_victory=_opt_bool(p, "is_victory"),
            kills=_opt_int(p, "kills"),
            deaths=_opt_int(p, "deaths"),
            assists=_opt_int(p, "assists"),
            networth=_opt_int(p, "networth"),
            damage=_opt_int(p, "damage"),
            damage_taken=_opt_int(p, "damage_taken"),
            obj_damage=_opt_int(p, "obj_damage"),
            last_hits=_opt_int(p, "last_hits"),
            accuracy=_opt_float(p, "accuracy"),
            crit_shot_rate=_opt_float(p, "crit_shot_rate"),
            extra=extra,
        )


@dataclass(frozen=True)
class MatchRecord:
    match_id: int
    start_time: Optional[int] = None
    duration_s: Optional[int] = None
    winner_team: Optional[str] = None
    average_badge: Optional[int] = None
    region: Optional[str] = None
    patch_version: Optional[str] = None
    info: Dict[str, Any] = field(default_factory=dict)
    players: Tuple[MatchPlayer, ...] = ()

    @classmethod
    def from_api(cls, payload: Any) -> "MatchRecord":
        p = _require_object(payload, "match metadata")
        players_raw = p.get("players")
        players: Tuple[MatchPlayer, ...] = ()
        if players_raw is not None:
            players = tuple(parse_list(players_raw, MatchPlayer.from_api, "match players"))
        return cls(
            match_id=_int(p, "match_id"),
            start_time=_opt_int(p, "start_time"),
            duration_s=_opt_int(p, "duration_s"),
            winner_team=_opt_str(p, "winner_team"),
            average_badge=_opt_int(p, "average_badge"),
            region=_opt_str(p, "region"),
            patch_version=_opt_str(p, "patch_version"),
            info=_opt_mapping(p, "info"),
            players=players,
        )


def validate_match(record: MatchRecord) -> None:
    """Check the invariants a match must satisfy before it may be written."""
    if record.match_id <= 0:
        raise ParseError(f"match {record.match_id}: match_id must be positive")
    seen = set()
    for player in record.players:
        if not 0 < player.account_id <= ACCOUNT_ID_MAX:
            raise ParseError(f"match {record.match_id}: account_id {player.account_id} out of range")
        if player.account_id in seen:
            raise ParseError(f"match {record.match_id}: duplicate participant {player.account_id}")
        seen.add(player.account_id)


@dataclass(frozen=True)
class MatchHistoryEntry:
    account_id: int
    match_id: int
    hero_id: Optional[int] = None
    hero_level: Optional[int] = None
    start_time: Optional[int] = None
    game_mode: Optional[int] = None
    match_mode: Optional[int] = None
    player_team: Optional[int] = None
    player_kills: Optional[int] = None
    player_deaths: Optional[int] = None
    player_assists: Optional[int] = None
    denies: Optional[int] = None
    net_worth: Optional[int] = None
    last_hits: Optional[int] = None
    match_duration_s: Optional[int] = None
    match_result: Optional[int] = None
    objectives_mask_team0: Optional[int] = None
    objectives_mask_team1: Optional[int] = None

    @classmethod
    def from_api(cls, payload: Any) -> "MatchHistoryEntry":
        p = _require_object(payload, "match history entry")
        names = [n for n in _field_names(cls) if n not in ("account_id", "match_id")]
        return cls(
            account_id=_int(p, "account_id"),
            match_id=_int(p, "match_id"),
            **{n: _opt_int(p, n) for n in names},
        )

    def to_participant(self) -> MatchPlayer:
        extra = {
            "denies": self.denies,
            "game_mode": self.game_mode,
            "match_mode": self.match_mode,
            "match_result": self.match_result,
            "objectives_mask_team0": self.objectives_mask_team0,
            "objectives_mask_team1": self.objectives_mask_team1,
            "hero_level": self.hero_level,
        }
        return MatchPlayer(
            account_id=self.account_id,
            hero_id=self.hero_id,
            team=f"team{self.player_team}" if self.player_team is not None else None,
            kills=self.player_kills,
            deaths=self.player_deaths,
            assists=self.player_assists,
            networth=self.net_worth,
            last_hits=self.last_hits,
            extra=extra,
        )


@dataclass
class PlayerPayload:
    """Everything a player lookup fetched for one account."""

    account_id: int
    steamid64: str
    profile: SteamProfile
    latest_mmr: Optional[MmrEntry] = None
    mmr_history: List[MmrEntry] = field(default_factory=list)
    hero_stats: List[HeroStats] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def latest_mmr_for(entries: Iterable[MmrEntry], account_id: int) -> Optional[MmrEntry]:
    mine = [m for m in entries if m.account_id == account_id]
    if not mine:
        return None
    return max(mine, key=lambda m: (m.start_time, m.match_id))
