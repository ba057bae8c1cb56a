"""
YouTube Data API v3 Client (transfer source)

Reads the user's playlists and playlist entries, turning each video title
into a (title, artist) pair. Listing fails fast: any page error aborts the
whole listing.
"""

import logging
from typing import Any, Callable

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.credentials import CredentialManager
from core.models import Provider, SourcePlaylist, SourceTrack, UpstreamUnavailable

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
TITLE_SEPARATOR = " - "
# Titles YouTube substitutes for entries that are no longer playable
REMOVED_TITLES = {"Deleted video", "Private video"}

ServiceFactory = Callable[[str], Any]


def build_service(access_token: str) -> Any:
    """Build a YouTube API service for a bearer token."""
    credentials = Credentials(token=access_token)
    return build("youtube", "v3", credentials=credentials, cache_discovery=False)


def parse_title(raw_title: str, channel: str = "") -> tuple[str, str]:
    """
    Split a video title into (title, artist).

    "Artist - Song" gives artist "Artist" and title "Song"; further
    separators stay in the title. Without a separator the channel is the
    artist and the title is kept as is.
    """
    if TITLE_SEPARATOR in raw_title:
        first, *rest = raw_title.split(TITLE_SEPARATOR)
        return TITLE_SEPARATOR.join(rest).strip(), first.strip()
    return raw_title, channel or ""


class YouTubeClient:
    """Source catalog client for YouTube playlists."""

    def __init__(self, credentials: CredentialManager,
                 service_factory: ServiceFactory = build_service):
        self._credentials = credentials
        self._service_factory = service_factory

    def _service(self, user_id: str) -> Any:
        cred = self._credentials.get_valid(user_id, Provider.GOOGLE)
        return self._service_factory(cred.access_token)

    def _pages(self, fetch_page: Callable[[str | None], dict], what: str):
        """Yield response pages until no nextPageToken is returned."""
        page_token = None
        while True:
            try:
                response = fetch_page(page_token)
            except HttpError as e:
                status = e.resp.status if e.resp else 0
                logger.error(f"Error fetching page of {what}: HTTP {status}")
                raise UpstreamUnavailable(f"Failed to fetch {what}: {e}", status=status) from e
            except Exception as e:
                logger.error(f"Error fetching page of {what}: {e}")
                raise UpstreamUnavailable(f"Failed to fetch {what}: {e}") from e

            yield response

            page_token = response.get("nextPageToken")
            if not page_token:
                break

    def list_playlists(self, user_id: str) -> list[SourcePlaylist]:
        """List the user's own playlists."""
        service = self._service(user_id)

        def do_list(page_token):
            return service.playlists().list(
                part="snippet,contentDetails",
                mine=True,
                maxResults=PAGE_SIZE,
                pageToken=page_token
            ).execute()

        playlists = []
        for response in self._pages(do_list, "playlists"):
            for item in response.get("items", []):
                snippet = item.get("snippet", {})
                thumbnail = snippet.get("thumbnails", {}).get("default", {}).get("url")
                playlists.append(SourcePlaylist(
                    id=item.get("id", ""),
                    title=snippet.get("title") or "Untitled",
                    thumbnail=thumbnail,
                    track_count=item.get("contentDetails", {}).get("itemCount", 0),
                ))

        logger.info(f"Found {len(playlists)} YouTube playlists for user {user_id}")
        return playlists

    def list_playlist_tracks(self, user_id: str, playlist_id: str) -> list[SourceTrack]:
        """Get all playable entries of a playlist, in playlist order."""
        service = self._service(user_id)

        def do_list(page_token):
            return service.playlistItems().list(
                part="snippet,contentDetails",
                playlistId=playlist_id,
                maxResults=PAGE_SIZE,
                pageToken=page_token
            ).execute()

        tracks = []
        for response in self._pages(do_list, f"playlist {playlist_id}"):
            for item in response.get("items", []):
                track = self._extract_track(item)
                if track:
                    tracks.append(track)

        logger.info(f"Retrieved {len(tracks)} tracks from YouTube playlist {playlist_id}")
        return tracks

    def _extract_track(self, item: dict) -> SourceTrack | None:
        """Extract SourceTrack from API response, None for unusable entries."""
        snippet = item.get("snippet", {})
        raw_title = snippet.get("title") or ""
        channel = snippet.get("videoOwnerChannelTitle") or ""

        title, artist = parse_title(raw_title, channel)
        if not title or title in REMOVED_TITLES:
            return None

        return SourceTrack(
            title=title,
            artist=artist,
            raw_title=raw_title,
            source_item_id=item.get("id", ""),
            video_id=item.get("contentDetails", {}).get("videoId", ""),
            channel=channel,
        )
