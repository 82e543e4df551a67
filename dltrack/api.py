from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .config import get_api_key
from .errors import ApiError, NotFoundError, ParseError, RateLimited, TransientNetworkError, ValidationError
from .models import HeroStats, MatchHistoryEntry, MmrEntry, SteamProfile, parse_list
from .ratelimit import BackoffState, parse_retry_after


logger = logging.getLogger(__name__)

USER_AGENT = "dltrack/0.1"

# malformed base URLs; retrying cannot help
BAD_REQUEST_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
)


@dataclass
class ApiResponse:
    status: int
    payload: Any = None
    retry_after: Optional[float] = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def send_with_backoff(send: Callable[[], ApiResponse], backoff: BackoffState) -> ApiResponse:
    """Issue ``send`` until it returns a non-retryable response.

    429 and 5xx responses and transient network errors are retried up to
    ``backoff.policy.max_attempts`` attempts in total. Anything else is
    returned to the caller for classification.
    """
    max_attempts = max(backoff.policy.max_attempts, 1)
    attempt = 0
    while True:
        attempt += 1
        backoff.before_request()
        try:
            resp = send()
        except TransientNetworkError as e:
            if attempt >= max_attempts:
                raise
            backoff.pause(attempt, reason=str(e))
            continue
        if resp.status == 429:
            backoff.rate_limited += 1
            if attempt >= max_attempts:
                msg = f"rate limited after {attempt} attempts"
                if resp.text:
                    msg += f": {resp.text}"
                raise RateLimited(msg, retry_after=resp.retry_after)
            backoff.pause(attempt, resp.retry_after, reason="HTTP 429")
            continue
        if resp.status >= 500:
            if attempt >= max_attempts:
                raise TransientNetworkError(f"HTTP {resp.status} after {attempt} attempts")
            backoff.pause(attempt, reason=f"HTTP {resp.status}")
            continue
        return resp


def _join_ids(ids: Iterable[int]) -> str:
    return ",".join(str(int(i)) for i in ids)


@dataclass
class DeadlockClient:
    base_url: str = "https://api.deadlock-api.com"
    api_key: Optional[str] = None
    timeout_s: float = 15
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "DeadlockClient":
        api = cfg.get("api", {})
        return cls(
            base_url=api.get("base_url") or cls.base_url,
            api_key=get_api_key("api", cfg),
            timeout_s=float(api.get("timeout_s", cls.timeout_s)),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def request(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Single GET; HTTP statuses are returned, never raised."""
        url = self._url(path)
        try:
            resp = self.session.get(url, headers=self._headers(), params=params, timeout=self.timeout_s)
        except BAD_REQUEST_ERRORS as e:
            raise ValidationError(f"GET {path}: bad request URL: {e}") from e
        except requests.RequestException as e:
            raise TransientNetworkError(f"GET {path} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            return ApiResponse(
                status=resp.status_code,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                text=resp.text[:200] if resp.text else "",
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise ParseError(f"GET {path}: response is not JSON") from e
        return ApiResponse(status=resp.status_code, payload=payload)

    def get_json(self, path: str, params: Optional[Dict[str, Any]], backoff: BackoffState) -> Any:
        resp = send_with_backoff(lambda: self.request(path, params), backoff)
        if resp.status == 404:
            raise NotFoundError(f"{path}: not found")
        if not resp.ok:
            raise ApiError(resp.status, resp.text)
        return resp.payload

    # Players
    def steam_profiles(self, account_ids: Iterable[int], backoff: BackoffState) -> List[SteamProfile]:
        payload = self.get_json("/v1/players/steam", {"account_ids": _join_ids(account_ids)}, backoff)
        return parse_list(payload, SteamProfile.from_api, "steam profiles")

    def mmr(self, account_ids: Iterable[int], backoff: BackoffState) -> List[MmrEntry]:
        payload = self.get_json("/v1/players/mmr", {"account_ids": _join_ids(account_ids)}, backoff)
        return parse_list(payload, MmrEntry.from_api, "mmr")

    def hero_stats(self, account_ids: Iterable[int], backoff: BackoffState) -> List[HeroStats]:
        payload = self.get_json("/v1/players/hero-stats", {"account_ids": _join_ids(account_ids)}, backoff)
        return parse_list(payload, HeroStats.from_api, "hero stats")

    def match_history(
        self,
        account_id: int,
        backoff: BackoffState,
        force_refetch: bool = False,
        only_stored_history: bool = False,
    ) -> List[MatchHistoryEntry]:
        params: Dict[str, Any] = {}
        if force_refetch:
            params["force_refetch"] = "true"
        if only_stored_history:
            params["only_stored_history"] = "true"
        payload = self.get_json(f"/v1/players/{int(account_id)}/match-history", params, backoff)
        return parse_list(payload, MatchHistoryEntry.from_api, "match history")

    # Matches
    def matches_metadata_request(
        self, match_ids: Iterable[int], include_info: bool = True, include_players: bool = True
    ) -> ApiResponse:
        params: Dict[str, Any] = {"match_ids": _join_ids(match_ids)}
        if include_info:
            params["include_info"] = "true"
        if include_players:
            params["include_players"] = "true"
        return self.request("/v1/matches/metadata", params)
