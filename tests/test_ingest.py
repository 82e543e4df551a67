import math
import threading

import requests

from dltrack.api import ApiResponse, DeadlockClient
from dltrack.errors import (
    EXIT_RATE_LIMITED,
    NotFoundError,
    PersistenceError,
    RateLimited,
    TransientNetworkError,
    ValidationError,
)
from dltrack.fetcher import BatchFetcher
from dltrack.ingest import IngestionCoordinator, RunOptions, RunState, combined_exit_code, ingest_concurrently
from dltrack.sources import EXPLICIT, PLAYER, RANGE, MatchIdSource
from dltrack.steam import IdentityResolver

from conftest import (
    FakeMetadataClient,
    FakeResponse,
    FakeSession,
    known_matches,
    match_json,
    player_json,
    quiet_backoff,
    snapshot,
)


def _run(store, source, client, **opts):
    fetcher = BatchFetcher(client, quiet_backoff())
    return IngestionCoordinator(store, source, fetcher, RunOptions(**opts)).run()


def test_explicit_ids_with_one_missing(store):
    client = FakeMetadataClient(known_matches([100, 101]))
    src = MatchIdSource(store, EXPLICIT, ids=[100, 101, 999999999999])
    report = _run(store, src, client)
    assert report.state == RunState.DONE
    assert report.exit_code == 0
    assert report.matches_written == 2
    assert report.not_found == [999999999999]
    assert store.existing_match_ids([100, 101, 999999999999]) == {100, 101}


def test_range_probe_makes_two_batches(store):
    client = FakeMetadataClient(known_matches(range(501, 511)))
    src = MatchIdSource(store, RANGE, since_id=500, until_id=510, limit=10)
    report = _run(store, src, client, batch_size=5)
    assert client.calls == [[501, 502, 503, 504, 505], [506, 507, 508, 509, 510]]
    assert report.batches == 2
    assert report.matches_written == 10


def test_rate_limit_aborts_without_writes(store):
    client = FakeMetadataClient(script=[ApiResponse(429, retry_after=1.0)] * 10)
    src = MatchIdSource(store, EXPLICIT, ids=[1, 2, 3])
    report = _run(store, src, client)
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, RateLimited)
    assert report.exit_code == EXIT_RATE_LIMITED == 29
    assert store.table_counts()["matches"] == 0


def test_dry_run_leaves_tables_unchanged(store):
    client = FakeMetadataClient(known_matches([1, 2, 3]))
    before = snapshot(store)
    src = MatchIdSource(store, EXPLICIT, ids=[1, 2, 3])
    report = _run(store, src, client, dry_run=True)
    assert report.state == RunState.DONE
    assert report.matches_validated == 3
    assert report.matches_written == 0
    assert snapshot(store) == before


def test_second_run_writes_nothing_new(store):
    client = FakeMetadataClient(known_matches([1, 2, 3]))
    _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3]), client)
    before = snapshot(store)
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3]), client)
    assert report.skipped_existing == 3
    assert report.batches == 0
    assert snapshot(store) == before

    forced = _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3], force_refetch=True), client)
    assert forced.matches_written == 0
    assert forced.matches_already_stored == 3
    assert snapshot(store) == before


def test_fetch_count_is_bounded(store):
    client = FakeMetadataClient(known_matches(range(1, 200)))
    limit, batch_size = 23, 5
    report = _run(store, MatchIdSource(store, RANGE, since_id=0, limit=limit), client, batch_size=batch_size)
    assert len(client.calls) <= math.ceil(limit / batch_size)
    assert report.matches_written == limit


def test_single_network_failure_is_not_fatal(store):
    client = FakeMetadataClient(
        known_matches([1, 2, 3, 4]),
        script=[TransientNetworkError("reset")] * 4,
    )
    src = MatchIdSource(store, EXPLICIT, ids=[1, 2, 3, 4])
    report = _run(store, src, client, batch_size=2)
    assert report.state == RunState.DONE
    assert len(report.failed_batches) == 1
    assert report.failed_batches[0].match_ids == [1, 2]
    assert store.existing_match_ids([1, 2, 3, 4]) == {3, 4}


def test_consecutive_network_failures_abort(store):
    client = FakeMetadataClient(script=[TransientNetworkError("down")] * 100)
    src = MatchIdSource(store, EXPLICIT, ids=list(range(1, 11)))
    report = _run(store, src, client, batch_size=2, max_consecutive_failures=3)
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, TransientNetworkError)
    assert report.batches == 3
    assert report.exit_code == 1


def test_parse_error_drops_batch_and_resets_streak(store):
    bad = ApiResponse(200, payload={"oops": True})
    script = [TransientNetworkError("x")] * 4 + [TransientNetworkError("x")] * 4 + [bad]
    script += [TransientNetworkError("x")] * 4 + [TransientNetworkError("x")] * 4
    client = FakeMetadataClient(known_matches(range(1, 20)), script=script)
    src = MatchIdSource(store, EXPLICIT, ids=list(range(1, 13)))
    report = _run(store, src, client, batch_size=2, max_consecutive_failures=3)
    # fail, fail, parse error, fail, fail, then a good batch
    assert report.state == RunState.DONE
    assert len(report.failed_batches) == 5
    assert store.existing_match_ids(range(1, 13)) == {11, 12}


def test_invalid_record_drops_only_its_batch(store):
    known = known_matches([1, 3])
    known[2] = match_json(2, players=(1001, 1001))
    client = FakeMetadataClient(known)
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3]), client, batch_size=1)
    assert report.state == RunState.DONE
    assert len(report.failed_batches) == 1
    assert store.existing_match_ids([1, 2, 3]) == {1, 3}


def test_unknown_player_ends_done_with_no_work(store):
    class Missing(IdentityResolver):
        def resolve(self, value):
            raise NotFoundError("No match")

    client = FakeMetadataClient()
    src = MatchIdSource(store, PLAYER, player="ghost", resolver=Missing())
    report = _run(store, src, client)
    assert report.states == [RunState.START, RunState.RESOLVING, RunState.DONE]
    assert report.unresolved == "ghost"
    assert client.calls == []
    assert report.exit_code == 0


def test_bad_identifier_aborts(store):
    src = MatchIdSource(store, PLAYER, player="https://example.com/x")
    report = _run(store, src, FakeMetadataClient())
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, ValidationError)


def test_state_trail(store):
    client = FakeMetadataClient(known_matches([1]))
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1]), client)
    assert report.states == [RunState.START, RunState.FETCHING, RunState.PERSISTING, RunState.DONE]
    assert store.get_meta("last_ingest_at") is not None


def test_stop_is_checked_between_chunks(store):
    client = FakeMetadataClient(known_matches(range(1, 7)))
    src = MatchIdSource(store, EXPLICIT, ids=list(range(1, 7)))
    fetcher = BatchFetcher(client, quiet_backoff())
    coordinator = IngestionCoordinator(
        store, src, fetcher, RunOptions(batch_size=2), should_stop=lambda: len(client.calls) >= 1
    )
    report = coordinator.run()
    assert report.cancelled
    assert report.state == RunState.DONE
    assert len(client.calls) == 1


def test_players_run_concurrently(store):
    seen_threads = set()
    lock = threading.Lock()

    def job(ids):
        def run():
            with lock:
                seen_threads.add(threading.current_thread().name)
            client = FakeMetadataClient(known_matches(ids))
            return _run(store, MatchIdSource(store, EXPLICIT, ids=ids), client)

        return run

    reports = ingest_concurrently([job([1, 2]), job([3, 4]), job([5])], max_workers=3)
    assert [r.matches_written for r in reports] == [2, 2, 1]
    assert store.table_counts()["matches"] == 5
    assert combined_exit_code(reports) == 0
    assert all(name.startswith("dltrack-ingest") for name in seen_threads)


def test_dry_run_state_trail(store):
    client = FakeMetadataClient(known_matches([1]))
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1]), client, dry_run=True)
    assert report.states == [RunState.START, RunState.FETCHING, RunState.VALIDATING, RunState.DONE]
    assert store.get_meta("last_ingest_at") is None


def test_broken_response_body_is_a_network_failure(store):
    reset = requests.exceptions.ChunkedEncodingError("connection reset mid-body")
    session = FakeSession([reset] * 4 + [FakeResponse(200, [match_json(3), match_json(4)])])
    client = DeadlockClient(base_url="https://api.test", session=session)
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3, 4]), client, batch_size=2)
    assert report.state == RunState.DONE
    assert [f.match_ids for f in report.failed_batches] == [[1, 2]]
    assert store.existing_match_ids([1, 2, 3, 4]) == {3, 4}


def test_repeated_broken_bodies_abort(store):
    reset = requests.exceptions.ChunkedEncodingError("connection reset mid-body")
    client = DeadlockClient(base_url="https://api.test", session=FakeSession([reset] * 8))
    src = MatchIdSource(store, EXPLICIT, ids=[1, 2, 3, 4])
    report = _run(store, src, client, batch_size=2, max_consecutive_failures=2)
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, TransientNetworkError)
    assert report.exit_code == 1


def test_malformed_integer_drops_only_its_batch(store):
    known = known_matches([1, 3])
    known[2] = match_json(2)
    known[2]["players"] = [player_json(1001, kills="--5"), player_json(1002, deaths="²")]
    client = FakeMetadataClient(known)
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1, 2, 3]), client, batch_size=1)
    assert report.state == RunState.DONE
    assert [f.match_ids for f in report.failed_batches] == [[2]]
    assert store.existing_match_ids([1, 2, 3]) == {1, 3}


def test_unreadable_store_aborts_range_run(store, tmp_path):
    store.db_path = str(tmp_path)
    client = FakeMetadataClient(known_matches([1, 2]))
    report = _run(store, MatchIdSource(store, RANGE, limit=2), client)
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, PersistenceError)
    assert report.exit_code == 1
    assert client.calls == []


def test_failed_bookkeeping_aborts(store, monkeypatch):
    def locked(key, value):
        raise PersistenceError(f"meta {key} failed: database is locked")

    monkeypatch.setattr(store, "set_meta", locked)
    client = FakeMetadataClient(known_matches([1]))
    report = _run(store, MatchIdSource(store, EXPLICIT, ids=[1]), client)
    assert report.state == RunState.ABORTED
    assert isinstance(report.error, PersistenceError)
    assert report.matches_written == 1
