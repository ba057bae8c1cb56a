"""Test configuration and fixtures"""

import json
import tempfile
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse

import pytest

from clients.spotify import API_URL
from core.credentials import CredentialManager
from core.models import Provider, SourceTrack, TokenGrant, TrackMatch, SpotifySession, utcnow
from core.store import MemoryStore


class FakeResponse:
    def __init__(self, status_code=200, data=None, headers=None):
        self.status_code = status_code
        self._data = data
        self.headers = headers or {}
        self.content = json.dumps(data).encode() if data is not None else b""
        self.text = self.content.decode()

    def json(self):
        return self._data


class FakeSpotifyApi:
    """
    Stands in for requests.Session against the Spotify Web API.

    Keeps playlists in memory. Search answers come from `search_results`
    (query -> list of items) unless a response is queued in `search_script`.
    """

    def __init__(self, user_id="spotify-user"):
        self.user_id = user_id
        self.playlists = []
        self.added = {}
        self.search_results = {}
        self.search_script = []
        self.fail_playlist_listing = False
        self.fail_playlist_create = False
        self.calls = []

    def add_playlist(self, name, owner=None, playlist_id=None):
        playlist_id = playlist_id or f"pl{len(self.playlists) + 1}"
        self.playlists.append({"id": playlist_id, "name": name,
                               "owner": {"id": owner or self.user_id}})
        return playlist_id

    def calls_to(self, method, path):
        return [c for c in self.calls if c[0] == method and c[1] == path]

    def request(self, method, url, headers=None, timeout=None, params=None, json=None):
        path = urlparse(url).path[len(urlparse(API_URL).path):]
        self.calls.append((method, path, params, json))

        if method == "GET" and path == "/me":
            return FakeResponse(data={"id": self.user_id})
        if method == "GET" and path == "/search":
            if self.search_script:
                return self.search_script.pop(0)
            items = self.search_results.get(params["q"], [])
            return FakeResponse(data={"tracks": {"items": items[:params.get("limit", 20)]}})
        if method == "GET" and path == "/me/playlists":
            if self.fail_playlist_listing:
                return FakeResponse(500, {"error": {"status": 500}})
            offset, limit = params["offset"], params["limit"]
            page = self.playlists[offset:offset + limit]
            more = offset + limit < len(self.playlists)
            return FakeResponse(data={"items": page, "next": "more" if more else None})
        if method == "POST" and path.startswith("/users/"):
            if self.fail_playlist_create:
                return FakeResponse(500, {"error": {"status": 500}})
            playlist_id = self.add_playlist(json["name"])
            return FakeResponse(201, {"id": playlist_id, "name": json["name"]})
        if method == "POST" and path.startswith("/playlists/"):
            playlist_id = path.split("/")[2]
            self.added.setdefault(playlist_id, []).append(list(json["uris"]))
            return FakeResponse(201, {"snapshot_id": "snap"})
        return FakeResponse(404, {"error": {"status": 404}})


def spotify_item(uri, name="Song", artist="Artist"):
    return {"uri": uri, "id": uri.split(":")[-1], "name": name, "artists": [{"name": artist}]}


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeSource:
    def __init__(self, tracks=None, error=None):
        self.tracks = tracks or []
        self.error = error

    def list_playlists(self, user_id):
        return []

    def list_playlist_tracks(self, user_id, playlist_id):
        if self.error:
            raise self.error
        return list(self.tracks)


class FakeDestination:
    """Matches tracks whose title is in `matches`; raises for titles in `errors`."""

    def __init__(self, matches=None, errors=None, playlist_error=None):
        self.matches = matches or {}
        self.errors = errors or {}
        self.playlist_error = playlist_error
        self.appended = []
        self.searched = []

    def authenticate(self, user_id):
        return SpotifySession(user_id=user_id, access_token="token")

    def search_track(self, session, title, artist):
        self.searched.append(title)
        if title in self.errors:
            raise self.errors[title]
        uri = self.matches.get(title)
        return TrackMatch(uri=uri, track_id=uri, name=title) if uri else None

    def ensure_playlist(self, session, name, description):
        if self.playlist_error:
            raise self.playlist_error
        return "dest-playlist"

    def append_tracks(self, session, playlist_id, uris):
        self.appended.append((playlist_id, list(uris)))


def make_tracks(count):
    return [SourceTrack(title=f"Song {i}", artist=f"Artist {i}",
                        raw_title=f"Artist {i} - Song {i}", source_item_id=f"item{i}")
            for i in range(1, count + 1)]


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def connected_store(store):
    """Store with long-lived Google and Spotify credentials for user u1."""
    expires = utcnow() + timedelta(hours=1)
    store.upsert_credential("u1", Provider.GOOGLE, "google-token", "google-refresh", expires)
    store.upsert_credential("u1", Provider.SPOTIFY, "spotify-token", "spotify-refresh", expires)
    return store


@pytest.fixture
def credentials(connected_store):
    def refuse(refresh_token):
        raise AssertionError("unexpected refresh")
    return CredentialManager(connected_store, {Provider.GOOGLE: refuse, Provider.SPOTIFY: refuse})


@pytest.fixture
def spotify_api():
    return FakeSpotifyApi()


def grant(access_token, refresh_token=None, minutes=60):
    return TokenGrant(access_token=access_token, refresh_token=refresh_token,
                      expires_at=utcnow() + timedelta(minutes=minutes))
