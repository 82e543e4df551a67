import pytest
import requests

from dltrack.errors import NotFoundError, ValidationError
from dltrack.steam import (
    IdentityResolver,
    SteamWebClient,
    account_id_to_steamid64,
    parse_id3_or_account_id,
    steamid64_to_account_id,
    validate_steamid64,
)

from conftest import FakeResponse, FakeSession, quiet_backoff


def test_id3_converts_both_ways():
    r = IdentityResolver()
    assert r.resolve("[U:1:388674065]") == 388674065
    assert account_id_to_steamid64(388674065) == "76561198348939793"
    assert r.resolve_steamid64("[U:1:388674065]") == "76561198348939793"


def test_steamid64_and_account_round_trip():
    assert steamid64_to_account_id("76561198348939793") == 388674065
    for account_id in (1, 388674065, 2**32 - 1):
        assert steamid64_to_account_id(account_id_to_steamid64(account_id)) == account_id


def test_steamid64_validation():
    with pytest.raises(ValidationError):
        validate_steamid64("7656119834893979")  # 16 digits
    with pytest.raises(ValidationError):
        validate_steamid64("76561197960265728")  # account 0
    with pytest.raises(ValidationError):
        validate_steamid64("7656119834893979x")
    with pytest.raises(ValidationError):
        account_id_to_steamid64(0)


def test_other_id_formats():
    assert parse_id3_or_account_id("388674065") == 388674065
    assert parse_id3_or_account_id("STEAM_0:1:194337032") == 388674065
    assert parse_id3_or_account_id("STEAM_1:1:194337032") == 388674065
    with pytest.raises(ValidationError):
        parse_id3_or_account_id("[U:1:0]")
    with pytest.raises(ValidationError):
        parse_id3_or_account_id(str(2**32))


def test_resolver_accepts_profile_urls():
    r = IdentityResolver()
    assert r.resolve("https://steamcommunity.com/profiles/76561198348939793/") == 388674065
    assert r.resolve("steamcommunity.com/profiles/76561198348939793") == 388674065


def test_resolver_rejects_bad_input():
    r = IdentityResolver()
    for bad in ("", "https://example.com/profiles/76561198348939793", "https://steamcommunity.com/groups/x", "a/b"):
        with pytest.raises(ValidationError):
            r.resolve(bad)


def test_vanity_needs_steam_client():
    with pytest.raises(ValidationError):
        IdentityResolver().resolve("gabelogannewell")


def _steam(session, key="k"):
    return SteamWebClient(base_url="https://steam.test", api_key=key, session=session)


def test_vanity_resolves_through_web_api():
    body = {"response": {"success": 1, "steamid": "76561198348939793"}}
    session = FakeSession([FakeResponse(200, body)])
    r = IdentityResolver(steam=_steam(session))
    assert r.resolve("https://steamcommunity.com/id/somebody") == 388674065
    req = session.requests[0]
    assert req["url"] == "https://steam.test/ISteamUser/ResolveVanityURL/v1/"
    assert req["params"] == {"key": "k", "vanityurl": "somebody"}


def test_vanity_no_match_is_not_found():
    body = {"response": {"success": 42, "message": "No match"}}
    client = _steam(FakeSession([FakeResponse(200, body)]))
    with pytest.raises(NotFoundError):
        client.resolve_vanity("nobody-here", quiet_backoff())


def test_vanity_ambiguous_is_validation_error():
    body = {"response": {"success": 1, "steamids": ["76561198348939793", "76561198000000001"]}}
    client = _steam(FakeSession([FakeResponse(200, body)]))
    with pytest.raises(ValidationError):
        client.resolve_vanity("twins", quiet_backoff())


def test_vanity_without_key():
    with pytest.raises(ValidationError):
        _steam(FakeSession(), key=None).resolve_vanity("x")


def test_vanity_retries_connection_errors():
    body = {"response": {"success": 1, "steamid": "76561198348939793"}}
    session = FakeSession([requests.ConnectionError("reset"), FakeResponse(200, body)])
    backoff = quiet_backoff()
    assert _steam(session).resolve_vanity("somebody", backoff) == "76561198348939793"
    assert backoff.retries == 1


def test_non_ascii_digits_are_rejected():
    r = IdentityResolver(steam=_steam(FakeSession()))
    for bad in ("²", "३८८६७४०६५", "[U:1:３]", "7656119834893979３"):
        with pytest.raises(ValidationError):
            r.resolve(bad)
    with pytest.raises(ValidationError):
        parse_id3_or_account_id("²")


def test_vanity_retries_broken_bodies():
    body = {"response": {"success": 1, "steamid": "76561198348939793"}}
    reset = requests.exceptions.ChunkedEncodingError("connection reset mid-body")
    session = FakeSession([reset, FakeResponse(200, body)])
    backoff = quiet_backoff()
    assert _steam(session).resolve_vanity("somebody", backoff) == "76561198348939793"
    assert backoff.retries == 1
