"""Steam identifier normalization.

Every player identifier accepted by dltrack ends up as a 32-bit account id:

- steamid64: 17 digits, ``account_id + 76561197960265728``
- id3: ``[U:1:N]`` or a bare account number ``N``
- Steam2: ``STEAM_X:Y:Z`` with ``account_id = Z * 2 + Y``
- vanity names and ``steamcommunity.com`` URLs, resolved through the
  Steam Web API
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from .api import BAD_REQUEST_ERRORS, USER_AGENT, ApiResponse, send_with_backoff
from .config import get_api_key
from .errors import ApiError, NotFoundError, ParseError, TransientNetworkError, ValidationError
from .models import ACCOUNT_ID_MAX
from .ratelimit import BackoffState, parse_retry_after


logger = logging.getLogger(__name__)

STEAMID64_OFFSET = 76561197960265728

VANITY_NO_MATCH = 42

_STEAMID64_RE = re.compile(r"[0-9]{17}")
_ID3_RE = re.compile(r"\[[a-z]:[0-9]+:([0-9]+)\]", re.IGNORECASE)
_STEAM2_RE = re.compile(r"STEAM_[0-9]+:([0-9]+):([0-9]+)", re.IGNORECASE)
_ACCOUNT_ID_RE = re.compile(r"[0-9]+")
_VANITY_RE = re.compile(r"[A-Za-z0-9_-]+")
_COMMUNITY_HOSTS = {"steamcommunity.com", "www.steamcommunity.com"}


def is_steamid64(value: str) -> bool:
    return bool(_STEAMID64_RE.fullmatch(value))


def validate_steamid64(value: str) -> None:
    if not is_steamid64(value):
        raise ValidationError(f"invalid SteamID64 {value!r}: expected exactly 17 digits")
    account_id = int(value) - STEAMID64_OFFSET
    if not 0 < account_id <= ACCOUNT_ID_MAX:
        raise ValidationError(f"invalid SteamID64 {value!r}: outside the individual account range")


def steamid64_to_account_id(value: str) -> int:
    validate_steamid64(value)
    return int(value) - STEAMID64_OFFSET


def account_id_to_steamid64(account_id: int) -> str:
    if not 0 < int(account_id) <= ACCOUNT_ID_MAX:
        raise ValidationError(f"invalid account id {account_id!r}")
    return str(STEAMID64_OFFSET + int(account_id))


def _checked_account_id(n: int, raw: str) -> int:
    if not 0 < n <= ACCOUNT_ID_MAX:
        raise ValidationError(f"account id out of range in {raw!r}")
    return n


def parse_id3_or_account_id(value: str) -> int:
    """Account id from ``[U:1:N]``, ``STEAM_X:Y:Z`` or a bare number."""
    s = value.strip()
    m = _ID3_RE.fullmatch(s)
    if m:
        return _checked_account_id(int(m.group(1)), s)
    m = _STEAM2_RE.fullmatch(s)
    if m:
        y, z = int(m.group(1)), int(m.group(2))
        if y > 1:
            raise ValidationError(f"invalid Steam2 id {s!r}")
        return _checked_account_id(z * 2 + y, s)
    if _ACCOUNT_ID_RE.fullmatch(s):
        return _checked_account_id(int(s), s)
    raise ValidationError(f"not an id3 or account id: {s!r}")


@dataclass
class SteamWebClient:
    base_url: str = "https://api.steampowered.com"
    api_key: Optional[str] = None
    timeout_s: float = 10
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SteamWebClient":
        steam = cfg.get("steam", {})
        return cls(
            base_url=steam.get("base_url") or cls.base_url,
            api_key=get_api_key("steam", cfg),
            timeout_s=float(steam.get("timeout_s", cls.timeout_s)),
        )

    def _request(self, vanity: str) -> ApiResponse:
        url = f"{self.base_url.rstrip('/')}/ISteamUser/ResolveVanityURL/v1/"
        try:
            resp = self.session.get(
                url,
                params={"key": self.api_key, "vanityurl": vanity},
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout_s,
            )
        except BAD_REQUEST_ERRORS as e:
            raise ValidationError(f"vanity lookup: bad request URL: {e}") from e
        except requests.RequestException as e:
            raise TransientNetworkError(f"vanity lookup failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            return ApiResponse(
                status=resp.status_code,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                text=resp.text[:200] if resp.text else "",
            )
        try:
            return ApiResponse(status=resp.status_code, payload=resp.json())
        except ValueError as e:
            raise ParseError("vanity lookup: response is not JSON") from e

    def resolve_vanity(self, vanity: str, backoff: Optional[BackoffState] = None) -> str:
        """SteamID64 for a vanity name."""
        if not self.api_key:
            raise ValidationError("STEAM_WEB_API_KEY is required to resolve vanity names")
        resp = send_with_backoff(lambda: self._request(vanity), backoff or BackoffState())
        if not resp.ok:
            raise ApiError(resp.status, f"Steam vanity resolve failed: {resp.text}")
        body = resp.payload.get("response") if isinstance(resp.payload, dict) else None
        if not isinstance(body, dict):
            raise ParseError("vanity lookup: missing 'response' object")
        success = body.get("success")
        message = body.get("message") or ""
        if success == VANITY_NO_MATCH:
            raise NotFoundError(f"vanity {vanity!r}: {message or 'No match'}")
        if success != 1:
            raise ValidationError(f"vanity {vanity!r} could not be resolved: {message or success}")
        steamids = body.get("steamids")
        if isinstance(steamids, list) and len(steamids) > 1:
            raise ValidationError(f"vanity {vanity!r} is ambiguous ({len(steamids)} matches)")
        steamid = body.get("steamid") or (steamids[0] if steamids else None)
        if not steamid:
            raise NotFoundError(f"vanity {vanity!r}: {message or 'No match'}")
        return str(steamid)


@dataclass
class IdentityResolver:
    """Turns any supported player identifier into a canonical account id."""

    steam: Optional[SteamWebClient] = None

    def resolve(self, value: str) -> int:
        s = str(value).strip()
        if not s:
            raise ValidationError("empty player identifier")
        if "://" in s or s.lower().startswith(("steamcommunity.com", "www.steamcommunity.com")):
            return self._resolve_url(s)
        if is_steamid64(s):
            return steamid64_to_account_id(s)
        if _ACCOUNT_ID_RE.fullmatch(s) or s.startswith("[") or s.upper().startswith("STEAM_"):
            return parse_id3_or_account_id(s)
        if "/" in s or ":" in s:
            raise ValidationError(f"unrecognised player identifier {s!r}")
        return self._resolve_vanity(s)

    def resolve_steamid64(self, value: str) -> str:
        return account_id_to_steamid64(self.resolve(value))

    def _resolve_url(self, raw: str) -> int:
        url = urlparse(raw if "://" in raw else f"https://{raw}")
        if (url.hostname or "").lower() not in _COMMUNITY_HOSTS:
            raise ValidationError(f"invalid Steam community URL {raw!r}")
        segs = [seg for seg in url.path.split("/") if seg]
        if len(segs) >= 2 and segs[0] == "profiles":
            return steamid64_to_account_id(segs[1])
        if len(segs) >= 2 and segs[0] == "id":
            return self._resolve_vanity(segs[1])
        raise ValidationError(f"invalid Steam community URL {raw!r}")

    def _resolve_vanity(self, name: str) -> int:
        if not _VANITY_RE.fullmatch(name):
            raise ValidationError(f"unrecognised player identifier {name!r}")
        if self.steam is None:
            raise ValidationError("vanity names need a Steam Web API client")
        steamid = self.steam.resolve_vanity(name)
        logger.debug("vanity %s -> %s", name, steamid)
        return steamid64_to_account_id(steamid)
