"""
Token refreshers for Google (YouTube) and Spotify.

The authorization-code exchange happens elsewhere; these only trade a
refresh token for a new access token.
"""

import json
import logging
from datetime import timedelta, timezone

import requests
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from core.config import Settings
from core.models import AuthError, TokenGrant, UpstreamError, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPES = ["https://www.googleapis.com/auth/youtube.readonly"]
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"


def load_google_client(settings: Settings) -> tuple[str, str]:
    """Load OAuth client credentials from settings or client_secrets.json."""
    if settings.google_client_id and settings.google_client_secret:
        return settings.google_client_id, settings.google_client_secret

    secrets_file = settings.data_dir / "client_secrets.json"
    if secrets_file.exists():
        try:
            secrets = json.loads(secrets_file.read_text())
            creds = secrets.get("installed") or secrets.get("web")
            if creds:
                return creds["client_id"], creds["client_secret"]
        except (ValueError, KeyError) as e:
            logger.warning(f"Failed to parse {secrets_file}: {e}")

    raise AuthError(
        "Google OAuth client not configured. Set GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET "
        "or provide client_secrets.json"
    )


class GoogleTokenRefresher:
    """Refreshes YouTube access tokens through google-auth."""

    def __init__(self, client_id: str, client_secret: str):
        self._client_id = client_id
        self._client_secret = client_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleTokenRefresher":
        return cls(*load_google_client(settings))

    def __call__(self, refresh_token: str) -> TokenGrant:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=GOOGLE_SCOPES,
        )
        credentials.refresh(Request())

        # google-auth reports expiry as naive UTC
        expiry = credentials.expiry
        expires_at = expiry.replace(tzinfo=timezone.utc) if expiry else utcnow() + timedelta(hours=1)
        rotated = credentials.refresh_token if credentials.refresh_token != refresh_token else None
        return TokenGrant(access_token=credentials.token, expires_at=expires_at,
                          refresh_token=rotated)


class SpotifyTokenRefresher:
    """Refreshes Spotify access tokens against the accounts service."""

    def __init__(self, client_id: str, client_secret: str,
                 session: requests.Session | None = None, timeout: float = 15.0):
        if not client_id or not client_secret:
            raise AuthError("Spotify OAuth client not configured. Set SPOTIFY_CLIENT_ID/SPOTIFY_CLIENT_SECRET")
        self._client_id = client_id
        self._client_secret = client_secret
        self._session = session or requests.Session()
        self._timeout = timeout

    def __call__(self, refresh_token: str) -> TokenGrant:
        try:
            response = self._session.post(
                SPOTIFY_TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self._client_id, self._client_secret),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Spotify token endpoint unreachable: {e}") from e

        if response.status_code in (400, 401):
            raise AuthError(f"Spotify rejected refresh token: {response.text[:200]}")
        if response.status_code != 200:
            raise UpstreamError(f"Spotify token refresh failed: HTTP {response.status_code}",
                                status=response.status_code)

        body = response.json()
        return TokenGrant(
            access_token=body["access_token"],
            expires_at=utcnow() + timedelta(seconds=int(body.get("expires_in", 3600))),
            refresh_token=body.get("refresh_token") or None,
        )
