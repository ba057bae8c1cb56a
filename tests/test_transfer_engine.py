"""Tests for the transfer engine"""

from datetime import timedelta

import pytest

from clients.spotify import SpotifyClient
from conftest import FakeDestination, FakeResponse, FakeSource, grant, make_tracks, spotify_item
from core.credentials import CredentialManager
from core.models import (
    AuthError, Provider, TransferRequest, TransferStatus, UpstreamError,
    UpstreamUnavailable, utcnow,
)
from core.store import MemoryStore
from core.transfer_engine import CHECKPOINT_EVERY, NO_MATCH_REASON, TransferEngine


class RecordingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.updates = []

    def update_job(self, job_id, **fields):
        self.updates.append(fields)
        return super().update_job(job_id, **fields)


class ListDispatcher:
    def __init__(self):
        self.requests = []

    def enqueue(self, request):
        self.requests.append(request)


def make_engine(store, source, destination, sleep, dispatcher=None):
    return TransferEngine(jobs=store, failures=store, source=source, destination=destination,
                          dispatcher=dispatcher, sleep=sleep, track_delay=0.8)


def spotify_destination(credentials, spotify_api, sleep, matched):
    for i in matched:
        spotify_api.search_results[f"Song {i} Artist {i}"] = [spotify_item(f"spotify:track:{i}")]
    return SpotifyClient(credentials, session=spotify_api, sleep=sleep)


class TestSubmit:

    def test_creates_pending_job_and_enqueues(self, store, sleep):
        dispatcher = ListDispatcher()
        destination = FakeDestination()
        engine = make_engine(store, FakeSource(make_tracks(3)), destination, sleep, dispatcher)

        job = engine.submit("u1", "PL1", "Road Trip")

        assert job.status == TransferStatus.PENDING
        assert (job.total_tracks, job.processed_tracks, job.failed_count) == (0, 0, 0)
        assert dispatcher.requests == [TransferRequest(job.id, "PL1", "Road Trip")]
        assert destination.searched == []
        assert store.get_job(job.id).status == TransferStatus.PENDING

    def test_default_playlist_name(self, store, sleep):
        engine = make_engine(store, FakeSource(), FakeDestination(), sleep)

        job = engine.submit("u1", "PL1", "")

        assert job.source_playlist_name == "Untitled Playlist"

    def test_handle_runs_the_request(self, store, sleep):
        dispatcher = ListDispatcher()
        engine = make_engine(store, FakeSource(make_tracks(1)),
                             FakeDestination(matches={"Song 1": "spotify:track:1"}), sleep, dispatcher)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.handle(dispatcher.requests[0])

        assert store.get_job(job.id).status == TransferStatus.COMPLETED


class TestRun:

    def test_twelve_tracks_ten_matched(self, connected_store, spotify_api, sleep):
        refreshers = {Provider.SPOTIFY: lambda token: pytest.fail("unexpected refresh")}
        destination = spotify_destination(CredentialManager(connected_store, refreshers),
                                          spotify_api, sleep, matched=range(1, 11))
        engine = make_engine(connected_store, FakeSource(make_tracks(12)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        view = engine.get_status(job.id)
        assert view.job.status == TransferStatus.COMPLETED
        assert view.job.total_tracks == 12
        assert view.job.processed_tracks == 12
        assert view.job.failed_count == 2
        assert [(f.title, f.reason) for f in view.failed_tracks] == [
            ("Song 11", NO_MATCH_REASON), ("Song 12", NO_MATCH_REASON),
        ]
        playlist_id = view.job.destination_playlist_id
        assert spotify_api.added[playlist_id] == [[f"spotify:track:{i}" for i in range(1, 11)]]
        assert view.matched == 10
        assert view.job.processed_tracks == view.job.failed_count + view.matched
        assert sleep.calls.count(0.8) == 12

    def test_checkpoints_every_five_tracks(self, sleep):
        store = RecordingStore()
        destination = FakeDestination(matches={f"Song {i}": f"uri{i}" for i in range(1, 13) if i % 4})
        engine = make_engine(store, FakeSource(make_tracks(12)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        checkpoints = [u for u in store.updates if "status" not in u and "processed_tracks" in u]
        assert checkpoints == [
            {"processed_tracks": 5, "failed_count": 1},
            {"processed_tracks": 10, "failed_count": 2},
        ]
        assert store.updates[-1] == {"status": TransferStatus.COMPLETED,
                                     "processed_tracks": 12, "failed_count": 3}
        assert CHECKPOINT_EVERY == 5

    def test_listing_failure_fails_job(self, store, sleep):
        destination = FakeDestination()
        engine = make_engine(store, FakeSource(error=UpstreamUnavailable("page 3 failed")),
                             destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        view = engine.get_status(job.id)
        assert view.job.status == TransferStatus.FAILED
        assert view.job.total_tracks == 0
        assert view.failed_tracks == []
        assert destination.searched == []

    def test_playlist_failure_fails_job(self, store, sleep):
        destination = FakeDestination(playlist_error=UpstreamUnavailable("create failed"))
        engine = make_engine(store, FakeSource(make_tracks(4)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        job = store.get_job(job.id)
        assert job.status == TransferStatus.FAILED
        assert job.total_tracks == 4
        assert job.processed_tracks == 0
        assert destination.searched == []

    def test_append_failure_fails_job(self, store, sleep):
        class BrokenAppend(FakeDestination):
            def append_tracks(self, session, playlist_id, uris):
                raise UpstreamError("HTTP 500")

        engine = make_engine(store, FakeSource(make_tracks(2)),
                             BrokenAppend(matches={"Song 1": "uri1"}), sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        assert store.get_job(job.id).status == TransferStatus.FAILED

    def test_store_failure_while_failing_job_is_logged(self, sleep, caplog):
        class DiskFullStore(MemoryStore):
            def update_job(self, job_id, **fields):
                if self.get_job(job_id).status == TransferStatus.IN_PROGRESS:
                    raise OSError("No space left on device")
                return super().update_job(job_id, **fields)

        store = DiskFullStore()
        engine = make_engine(store, FakeSource(make_tracks(2)), FakeDestination(), sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        assert store.get_job(job.id).status == TransferStatus.IN_PROGRESS
        assert f"Could not mark transfer {job.id} as failed" in caplog.text

    def test_track_errors_do_not_abort(self, store, sleep):
        destination = FakeDestination(
            matches={"Song 1": "uri1", "Song 4": "uri4"},
            errors={"Song 2": UpstreamError("HTTP 502"), "Song 3": AuthError("")},
        )
        engine = make_engine(store, FakeSource(make_tracks(4)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        view = engine.get_status(job.id)
        assert view.job.status == TransferStatus.COMPLETED
        assert [f.reason for f in view.failed_tracks] == ["HTTP 502", "Processing error"]
        assert destination.appended == [("dest-playlist", ["uri1", "uri4"])]

    def test_no_matches_skips_append(self, store, sleep):
        destination = FakeDestination()
        engine = make_engine(store, FakeSource(make_tracks(3)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        view = engine.get_status(job.id)
        assert view.job.status == TransferStatus.COMPLETED
        assert view.job.failed_count == 3
        assert destination.appended == []

    def test_empty_playlist_completes(self, store, sleep):
        engine = make_engine(store, FakeSource([]), FakeDestination(), sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        job = store.get_job(job.id)
        assert job.status == TransferStatus.COMPLETED
        assert job.processed_tracks == job.total_tracks == 0

    def test_unknown_job_is_ignored(self, store, sleep):
        destination = FakeDestination()
        engine = make_engine(store, FakeSource(make_tracks(2)), destination, sleep)

        engine.run("missing", "PL1", "Road Trip")

        assert destination.searched == []

    def test_finished_job_is_not_rerun(self, store, sleep):
        destination = FakeDestination(matches={"Song 1": "uri1"})
        engine = make_engine(store, FakeSource(make_tracks(1)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")
        engine.run(job.id, "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        assert store.get_job(job.id).status == TransferStatus.COMPLETED
        assert destination.searched == ["Song 1"]

    def test_throttled_search_counts_as_failed(self, connected_store, spotify_api, sleep):
        destination = SpotifyClient(CredentialManager(connected_store, {}), session=spotify_api, sleep=sleep)
        throttled = FakeResponse(429, {}, {"Retry-After": "1"})
        success = FakeResponse(data={"tracks": {"items": [spotify_item("spotify:track:1")]}})
        spotify_api.search_script = [throttled, throttled, throttled, success]
        engine = make_engine(connected_store, FakeSource(make_tracks(1)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        view = engine.get_status(job.id)
        assert view.job.status == TransferStatus.COMPLETED
        assert view.job.failed_count == 1
        assert view.failed_tracks[0].reason == NO_MATCH_REASON
        assert spotify_api.added == {}

    def test_expiring_credential_refreshed_before_first_call(self, store, spotify_api, sleep):
        store.upsert_credential("u1", Provider.SPOTIFY, "old-token", "original-refresh",
                                utcnow() + timedelta(minutes=2))
        calls_at_refresh = []

        def refresher(refresh_token):
            calls_at_refresh.append(len(spotify_api.calls))
            return grant("fresh-token", refresh_token=None)

        destination = spotify_destination(CredentialManager(store, {Provider.SPOTIFY: refresher}),
                                          spotify_api, sleep, matched=[1])
        engine = make_engine(store, FakeSource(make_tracks(1)), destination, sleep)
        job = engine.submit("u1", "PL1", "Road Trip")

        engine.run(job.id, "PL1", "Road Trip")

        assert calls_at_refresh == [0]
        cred = store.get_credential("u1", Provider.SPOTIFY)
        assert cred.access_token == "fresh-token"
        assert cred.refresh_token == "original-refresh"
        assert store.get_job(job.id).status == TransferStatus.COMPLETED


def test_list_transfers_newest_first(store, sleep):
    engine = make_engine(store, FakeSource(), FakeDestination(), sleep)
    first = engine.submit("u1", "PL1", "One")
    second = engine.submit("u1", "PL2", "Two")
    engine.submit("u2", "PL3", "Other user")

    assert [j.id for j in engine.list_transfers("u1")] == [second.id, first.id]


def test_get_status_unknown(store, sleep):
    assert make_engine(store, FakeSource(), FakeDestination(), sleep).get_status("nope") is None
