"""
Spotify Web API Client (transfer destination)

Searches tracks through a cascade of queries, finds or creates the target
playlist and appends tracks in batches. Only search retries on throttling;
playlist calls fail fast.
"""

import logging
import math
import re
import time
from typing import Callable, Iterator, Sequence

import requests

from core.credentials import CredentialManager
from core.models import (
    AuthError, Provider, RateLimited, SpotifySession, TrackMatch,
    UpstreamError, UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.spotify.com/v1"
MAX_SEARCH_ATTEMPTS = 3
MAX_RETRY_WAIT = 10.0
DEFAULT_RETRY_WAIT = 1.0
ADD_BATCH_SIZE = 100
PLAYLIST_PAGE_SIZE = 50

_PIPE_SUFFIX = re.compile(r"\|.*$")
_ENCLOSED = re.compile(r"\([^()]*\)|\[[^\[\]]*\]|\{[^{}]*\}|【[^【】]*】")
_FEATURING = re.compile(r"\s+(?:feat|ft|featuring)\b\.?.*$", re.IGNORECASE)
_TOPIC = re.compile(r"\s*-\s*topic\b", re.IGNORECASE)
_DECORATIONS = re.compile(
    r"\b(?:official\s+(?:music\s+|lyrics?\s+)?(?:video|audio)|lyric\s+video"
    r"|lyrics|visuali[sz]er|hd|hq|4k)\b",
    re.IGNORECASE,
)
_MENTION = re.compile(r"@\w+")
_VEVO = re.compile(r"\s*vevo$", re.IGNORECASE)
_EDGE_CHARS = " -–—|:,"


def _clean_once(title: str) -> str:
    title = _PIPE_SUFFIX.sub("", title)
    title = _ENCLOSED.sub(" ", title)
    title = _FEATURING.sub("", title)
    title = _TOPIC.sub("", title)
    title = _DECORATIONS.sub(" ", title)
    title = _MENTION.sub(" ", title)
    title = " ".join(title.split())
    return title.strip(_EDGE_CHARS)


def clean_title(title: str) -> str:
    """Strip video decorations from a title. Idempotent."""
    cleaned = _clean_once(title)
    while cleaned != title:
        title, cleaned = cleaned, _clean_once(cleaned)
    return cleaned


def clean_artist(artist: str) -> str:
    artist = _TOPIC.sub("", artist)
    artist = _VEVO.sub("", artist)
    artist = artist.replace("@", " ")
    return " ".join(artist.split()).strip(_EDGE_CHARS)


def build_queries(title: str, artist: str) -> list[str]:
    """Search queries from most to least specific; none has an empty field."""
    track = clean_title(title) or " ".join(title.split())
    artist = clean_artist(artist or "")

    queries = []
    if track and artist:
        queries.append(f"{track} {artist}")
        queries.append(f"track:{track} artist:{artist}")
    if track:
        queries.append(f"track:{track}")
    return queries


def retry_wait(retry_after: float | None) -> float:
    """Seconds to wait after a throttling response, capped at MAX_RETRY_WAIT."""
    if retry_after is None or not math.isfinite(retry_after) or retry_after <= 0:
        return DEFAULT_RETRY_WAIT
    return min(float(retry_after), MAX_RETRY_WAIT)


def chunked(items: Sequence[str], size: int) -> Iterator[list[str]]:
    if size <= 0:
        raise ValueError("size must be positive")
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def _retry_after(response: requests.Response) -> float | None:
    try:
        value = float(response.headers.get("Retry-After", ""))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _to_match(item: dict) -> TrackMatch:
    return TrackMatch(
        uri=item["uri"],
        track_id=item.get("id", ""),
        name=item.get("name", ""),
        artists=[a.get("name", "") for a in item.get("artists", [])],
    )


class SpotifyClient:
    """Destination catalog client for Spotify."""

    def __init__(self, credentials: CredentialManager,
                 session: requests.Session | None = None,
                 sleep: Callable[[float], None] = time.sleep,
                 search_delay: float = 0.25, timeout: float = 15.0):
        self._credentials = credentials
        self._http = session or requests.Session()
        self._sleep = sleep
        self._search_delay = search_delay
        self._timeout = timeout

    def authenticate(self, user_id: str) -> SpotifySession:
        cred = self._credentials.get_valid(user_id, Provider.SPOTIFY)
        return SpotifySession(user_id=user_id, access_token=cred.access_token)

    def _request(self, session: SpotifySession, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._http.request(
                method,
                f"{API_URL}{path}",
                headers={"Authorization": f"Bearer {session.access_token}"},
                timeout=self._timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise UpstreamError(f"{method} {path} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited(f"Throttled on {method} {path}", retry_after=_retry_after(response))
        if response.status_code == 401:
            raise AuthError(f"Spotify rejected access token for user {session.user_id}")
        if response.status_code >= 400:
            logger.error(f"Spotify error {response.status_code} on {method} {path}: {response.text[:200]}")
            raise UpstreamError(f"{method} {path} returned HTTP {response.status_code}",
                                status=response.status_code)

        if not response.content:
            return {}
        return response.json()

    # Search

    def search_track(self, session: SpotifySession, title: str, artist: str) -> TrackMatch | None:
        """Return the first hit of the query cascade, or None."""
        for i, query in enumerate(build_queries(title, artist)):
            if i:
                self._sleep(self._search_delay)
            try:
                items = self._search(session, query)
            except RateLimited:
                logger.warning(f"Retry budget exhausted searching '{title}' by '{artist}', giving up")
                return None
            if items:
                match = _to_match(items[0])
                logger.debug(f"Matched '{title}' with query '{query}': {match.uri}")
                return match

        logger.debug(f"No match for '{title}' by '{artist}'")
        return None

    def _search(self, session: SpotifySession, query: str) -> list[dict]:
        """Run one search query, retrying throttled attempts up to MAX_SEARCH_ATTEMPTS."""
        for attempt in range(1, MAX_SEARCH_ATTEMPTS + 1):
            try:
                data = self._request(session, "GET", "/search",
                                     params={"q": query, "type": "track", "limit": 1})
                return data.get("tracks", {}).get("items", [])
            except RateLimited as e:
                if attempt == MAX_SEARCH_ATTEMPTS:
                    raise
                wait = retry_wait(e.retry_after)
                logger.warning(f"Rate limited on search, waiting {wait:.1f}s "
                               f"(attempt {attempt}/{MAX_SEARCH_ATTEMPTS})")
                self._sleep(wait)
        return []

    # Playlists

    def ensure_playlist(self, session: SpotifySession, name: str, description: str) -> str:
        """Reuse the user's playlist called `name`, or create it."""
        owner_id = self._current_user_id(session)
        try:
            existing = self._find_owned_playlist(session, owner_id, name)
        except UpstreamError as e:
            return self._create_after_failed_lookup(session, owner_id, name, description, e)

        if existing:
            logger.info(f"Playlist '{name}' already exists for user {session.user_id}, using it")
            return existing
        return self._create_playlist(session, owner_id, name, description)

    def _current_user_id(self, session: SpotifySession) -> str:
        try:
            return self._request(session, "GET", "/me")["id"]
        except UpstreamError as e:
            raise UpstreamUnavailable(f"Could not load Spotify profile: {e}", status=e.status) from e

    def _find_owned_playlist(self, session: SpotifySession, owner_id: str, name: str) -> str | None:
        offset = 0
        while True:
            page = self._request(session, "GET", "/me/playlists",
                                 params={"limit": PLAYLIST_PAGE_SIZE, "offset": offset})
            for item in page.get("items", []):
                if item.get("name") == name and item.get("owner", {}).get("id") == owner_id:
                    return item["id"]
            if not page.get("next"):
                return None
            offset += PLAYLIST_PAGE_SIZE

    def _create_after_failed_lookup(self, session: SpotifySession, owner_id: str, name: str,
                                    description: str, error: Exception) -> str:
        """Playlist lookup failed: create anyway, accepting a possible duplicate."""
        logger.warning(f"Could not list playlists for user {session.user_id} ({error}), "
                       f"creating '{name}' without reuse check")
        return self._create_playlist(session, owner_id, name, description)

    def _create_playlist(self, session: SpotifySession, owner_id: str, name: str,
                         description: str) -> str:
        logger.info(f"Creating playlist '{name}' for Spotify user '{owner_id}'")
        try:
            playlist = self._request(session, "POST", f"/users/{owner_id}/playlists",
                                     json={"name": name, "description": description,
                                           "public": False})
        except UpstreamError as e:
            raise UpstreamUnavailable(f"Could not create playlist '{name}': {e}",
                                      status=e.status) from e
        return playlist["id"]

    def append_tracks(self, session: SpotifySession, playlist_id: str, uris: Sequence[str]) -> None:
        """Add tracks in order, at most ADD_BATCH_SIZE per request."""
        for batch in chunked(uris, ADD_BATCH_SIZE):
            self._request(session, "POST", f"/playlists/{playlist_id}/tracks", json={"uris": batch})
            logger.info(f"Added {len(batch)} tracks to playlist {playlist_id}")
