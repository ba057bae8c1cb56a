"""Data models and errors for playlist transfers."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferError(Exception):
    """Base class for transfer errors."""
    pass


class AuthError(TransferError):
    """No usable credential for a provider."""
    pass


class UpstreamError(TransferError):
    """A provider API call failed."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class UpstreamUnavailable(UpstreamError):
    """Listing or playlist setup failed. Fatal to a transfer, never retried."""
    pass


class RateLimited(UpstreamError):
    """Provider answered with a throttling response (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class InvalidTransition(TransferError):
    """Illegal job status change."""
    pass


class ConfigError(TransferError):
    pass


class Provider(str, Enum):
    GOOGLE = "google"
    SPOTIFY = "spotify"


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED)


# PENDING is the only initial state; terminal states have no exits.
ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.IN_PROGRESS},
    TransferStatus.IN_PROGRESS: {TransferStatus.COMPLETED, TransferStatus.FAILED},
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
}


def check_transition(current: TransferStatus, target: TransferStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move transfer from {current.value} to {target.value}")


@dataclass
class Credential:
    """OAuth credential for one (user, provider) pair."""
    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str | None
    expires_at: datetime

    def seconds_left(self, now: datetime | None = None) -> float:
        return (self.expires_at - (now or utcnow())).total_seconds()


@dataclass
class TokenGrant:
    """Result of a token refresh. refresh_token is None when not rotated."""
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass
class TransferJob:
    """Persisted progress record of one playlist transfer."""
    id: str
    user_id: str
    source_playlist_id: str
    source_playlist_name: str
    status: TransferStatus = TransferStatus.PENDING
    total_tracks: int = 0
    processed_tracks: int = 0
    failed_count: int = 0
    destination_playlist_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self, **changes) -> "TransferJob":
        return replace(self, **changes)


@dataclass(frozen=True)
class FailedTrack:
    """A source track that could not be transferred."""
    job_id: str
    title: str
    artist: str
    reason: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SourcePlaylist:
    id: str
    title: str
    thumbnail: str | None
    track_count: int


@dataclass
class SourceTrack:
    """A track read from the source playlist."""
    title: str
    artist: str
    raw_title: str
    source_item_id: str
    video_id: str = ""
    channel: str = ""


@dataclass
class TrackMatch:
    """A destination track found by search."""
    uri: str
    track_id: str
    name: str
    artists: List[str] = field(default_factory=list)


@dataclass
class SpotifySession:
    user_id: str
    access_token: str


@dataclass(frozen=True)
class TransferRequest:
    """Work item handed from submit to a worker."""
    job_id: str
    source_playlist_id: str
    source_playlist_name: str


@dataclass
class TransferStatusView:
    """A job together with its failed tracks."""
    job: TransferJob
    failed_tracks: List[FailedTrack]

    @property
    def matched(self) -> int:
        return self.job.processed_tracks - self.job.failed_count
